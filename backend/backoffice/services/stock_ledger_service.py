# Overview: Service-layer operations for the stock ledger; the single primitive every stock counter change goes through.

# backend/backoffice/services/stock_ledger_service.py

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, update

from ..extensions import db
from ..models import Product, ProductVariant, StockMovement
from ..models.stock import (
    MOVEMENT_TYPES,
    MOVEMENT_INBOUND,
    MOVEMENT_MANUAL_ADJUSTMENT,
    MOVEMENT_SAMPLE_OUT,
    MOVEMENT_SAMPLE_RETURN,
)
from ..validation import (
    ConflictError,
    ConsistencyError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    normalize_option,
    optional_str,
    require_int,
    require_non_negative_int,
    require_positive_int,
)
from .concurrency import run_in_transaction
"""
Stock Ledger Invariants (authoritative)

Counters:
- ProductVariant.physical_stock and ProductVariant.allocated_stock are only
  ever changed by apply_stock_change().
- apply_stock_change() issues ONE guarded UPDATE with server-side
  arithmetic (col = col + :delta). Guards live in the WHERE clause, so two
  concurrent requests can never both pass a check against a stale value.

Ledger:
- Every non-zero physical_delta appends exactly one StockMovement in the
  same transaction as the counter update.
- Reservations (allocated_delta only) write no ledger row.
- initial_stock + SUM(quantity_delta) == physical_stock for every variant.

Transactions:
- apply_stock_change() only flushes. Callers compose it with their own
  order/line updates and commit the whole unit via run_in_transaction().
- Top-level operations in this module (receive, adjust, samples) commit.
"""


class StockChangedError(ConflictError):
    """The compare-and-set value no longer matches; re-read and retry."""


@dataclass
class StockChange:
    variant: ProductVariant
    movement: StockMovement | None


# =============================================================================
# LOOKUPS
# =============================================================================

def create_product(
    *,
    code: str,
    name: str,
    price: int = 0,
    variants: list[dict] | None = None,
    stock: int | None = None,
) -> Product:
    """
    Create a product with its variant inventory records.

    Each variant dict may carry color, size and stock (the opening on-hand
    count). A product without variants gets one implicit variant holding
    `stock`. Opening stock is the ledger baseline (initial_stock), so no
    movement row is written for it.
    """
    code = optional_str(code, "code", max_length=64)
    name = optional_str(name, "name")
    if not code or not name:
        raise ValidationError("code and name are required")
    if db.session.query(Product).filter_by(code=code).first():
        raise ValidationError(f"Product code {code} already exists")

    product = Product(code=code, name=name, price=require_non_negative_int(price, "price"))
    db.session.add(product)
    db.session.flush()

    specs = variants or [{"color": "", "size": "", "stock": stock or 0}]
    seen = set()
    for spec in specs:
        color = normalize_option(spec.get("color"))
        size = normalize_option(spec.get("size"))
        if (color, size) in seen:
            raise ValidationError(f"Duplicate variant {color}/{size}")
        seen.add((color, size))
        opening = require_non_negative_int(spec.get("stock", 0), "stock")
        db.session.add(
            ProductVariant(
                product_id=product.id,
                color=color,
                size=size,
                physical_stock=opening,
                allocated_stock=0,
                initial_stock=opening,
            )
        )
    db.session.flush()
    db.session.expire(product, ["variants"])
    return product


def find_variant(product_id: int, color: str | None = None, size: str | None = None) -> ProductVariant:
    variant = db.session.query(ProductVariant).filter_by(
        product_id=product_id,
        color=normalize_option(color),
        size=normalize_option(size),
    ).first()
    if variant is None:
        raise NotFoundError(f"Variant {product_id} ({color or '-'}/{size or '-'}) not found")
    return variant


def get_variant(variant_id: int) -> ProductVariant:
    variant = db.session.get(ProductVariant, variant_id)
    if variant is None:
        raise NotFoundError(f"Variant {variant_id} not found")
    return variant


def get_or_create_variant(product_id: int, color: str | None = None, size: str | None = None) -> ProductVariant:
    """Fetch a variant, creating an empty one (0 on hand) if the option is new."""
    if db.session.get(Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found")
    try:
        return find_variant(product_id, color, size)
    except NotFoundError:
        variant = ProductVariant(
            product_id=product_id,
            color=normalize_option(color),
            size=normalize_option(size),
            physical_stock=0,
            allocated_stock=0,
            initial_stock=0,
        )
        db.session.add(variant)
        db.session.flush()
        return variant


# =============================================================================
# THE PRIMITIVE
# =============================================================================

def apply_stock_change(
    *,
    variant_id: int,
    physical_delta: int = 0,
    allocated_delta: int = 0,
    movement_type: str | None = None,
    reference_id: str | int | None = None,
    reference_type: str | None = None,
    notes: str | None = None,
    require_available: bool = False,
    allow_negative_physical: bool | None = None,
    expected_physical: int | None = None,
) -> StockChange:
    """
    Apply signed deltas to a variant's (physical_stock, allocated_stock) pair.

    Guards (all evaluated by the database inside the UPDATE):
    - allocated_stock + allocated_delta >= 0 when reservations shrink
    - allocated_stock + allocated_delta <= physical_stock + physical_delta
      when require_available is set (a new reservation or a sample taken
      from unreserved stock)
    - physical_stock + physical_delta >= 0 when on-hand shrinks, unless
      negative stock is allowed
    - physical_stock == expected_physical when given (compare-and-set for
      audits driven by an absolute count)

    Raises:
        NotFoundError: variant does not exist
        InsufficientStockError: an availability / on-hand guard failed
        ConsistencyError: allocated_stock would go negative (drift)
    """
    if physical_delta == 0 and allocated_delta == 0:
        raise ValidationError("Stock change must move at least one counter")
    if physical_delta != 0:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement type: {movement_type}")
    if allow_negative_physical is None:
        allow_negative_physical = bool(current_app.config.get("ALLOW_NEGATIVE_PHYSICAL_STOCK", False))

    physical_col = ProductVariant.physical_stock
    allocated_col = ProductVariant.allocated_stock

    conditions = [ProductVariant.id == variant_id]
    if allocated_delta < 0:
        conditions.append(allocated_col + allocated_delta >= 0)
    if physical_delta < 0 and not allow_negative_physical:
        conditions.append(physical_col + physical_delta >= 0)
    if require_available:
        conditions.append((physical_col + physical_delta) - (allocated_col + allocated_delta) >= 0)
    if expected_physical is not None:
        conditions.append(physical_col == expected_physical)

    stmt = (
        update(ProductVariant)
        .where(*conditions)
        .values(
            physical_stock=physical_col + physical_delta,
            allocated_stock=allocated_col + allocated_delta,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    if result.rowcount != 1:
        _raise_guard_failure(variant_id, physical_delta, allocated_delta, require_available, expected_physical)

    # Reload so callers see the committed-in-transaction counters
    variant = db.session.get(ProductVariant, variant_id, populate_existing=True)

    movement = None
    if physical_delta != 0:
        movement = StockMovement(
            variant_id=variant.id,
            product_id=variant.product_id,
            color=variant.color,
            size=variant.size,
            quantity_delta=physical_delta,
            movement_type=movement_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            reference_type=reference_type,
            balance_after=variant.physical_stock,
            notes=(notes or "")[:255] or None,
        )
        db.session.add(movement)
        db.session.flush()

    if variant.physical_stock < 0:
        current_app.logger.warning(
            "Negative physical stock on variant %s (%s): %s",
            variant.id, variant.label, variant.physical_stock,
        )

    return StockChange(variant=variant, movement=movement)


def _raise_guard_failure(
    variant_id: int,
    physical_delta: int,
    allocated_delta: int,
    require_available: bool,
    expected_physical: int | None,
):
    variant = db.session.get(ProductVariant, variant_id, populate_existing=True)
    if variant is None:
        raise NotFoundError(f"Variant {variant_id} not found")

    if expected_physical is not None and variant.physical_stock != expected_physical:
        raise StockChangedError(
            f"Variant {variant_id} ({variant.label}) changed from {expected_physical} "
            f"to {variant.physical_stock} on hand while it was being counted"
        )

    if allocated_delta < 0 and variant.allocated_stock + allocated_delta < 0:
        raise ConsistencyError(
            f"Variant {variant_id} ({variant.label}) has {variant.allocated_stock} allocated, "
            f"cannot release {-allocated_delta}; run a sync check",
            report={"variant_id": variant_id, "allocated_stock": variant.allocated_stock},
        )
    if require_available:
        available = variant.physical_stock - variant.allocated_stock
        requested = allocated_delta - physical_delta
        raise InsufficientStockError(
            f"Variant {variant_id} ({variant.label}) has {available} available, requested {requested}",
            requested=requested,
            available=available,
        )
    raise InsufficientStockError(
        f"Variant {variant_id} ({variant.label}) has {variant.physical_stock} on hand, "
        f"cannot remove {-physical_delta}",
        requested=-physical_delta,
        available=variant.physical_stock,
    )


# =============================================================================
# DIRECT MOVEMENTS
# =============================================================================

def receive_stock(
    *,
    product_id: int,
    color: str | None,
    size: str | None,
    quantity,
    reason: str | None,
) -> StockChange:
    """Manual inbound receipt: on-hand rises by quantity."""
    quantity = require_positive_int(quantity, "quantity")
    reason = optional_str(reason, "reason")
    if not reason:
        raise ValidationError("reason is required for inbound stock")

    def _op():
        variant = get_or_create_variant(product_id, color, size)
        return apply_stock_change(
            variant_id=variant.id,
            physical_delta=quantity,
            movement_type=MOVEMENT_INBOUND,
            reference_type="manual",
            notes=f"Inbound ({variant.label}) - {reason}",
        )

    change = run_in_transaction(_op)
    current_app.logger.info(
        "Received %s units into variant %s (%s)", quantity, change.variant.id, change.variant.label
    )
    return change


def adjust_stock(
    *,
    product_id: int,
    color: str | None,
    size: str | None,
    delta,
    reason: str | None,
) -> StockChange:
    """Signed manual correction. Cannot drive on-hand negative unless configured to."""
    delta = require_int(delta, "delta")
    if delta == 0:
        raise ValidationError("delta must not be 0")
    reason = optional_str(reason, "reason")
    if not reason:
        raise ValidationError("reason is required for manual adjustments")

    def _op():
        variant = find_variant(product_id, color, size)
        return apply_stock_change(
            variant_id=variant.id,
            physical_delta=delta,
            movement_type=MOVEMENT_MANUAL_ADJUSTMENT,
            reference_type="manual",
            notes=reason,
        )

    change = run_in_transaction(_op)
    current_app.logger.info(
        "Manual adjustment %+d on variant %s (%s): %s", delta, change.variant.id, change.variant.label, reason
    )
    return change


def sample_out(
    *,
    product_id: int,
    color: str | None,
    size: str | None,
    quantity,
    reference_id: str | None = None,
    notes: str | None = None,
) -> StockChange:
    """Samples leave the warehouse from unreserved stock only."""
    quantity = require_positive_int(quantity, "quantity")

    def _op():
        variant = find_variant(product_id, color, size)
        return apply_stock_change(
            variant_id=variant.id,
            physical_delta=-quantity,
            movement_type=MOVEMENT_SAMPLE_OUT,
            reference_id=reference_id,
            reference_type="sample",
            notes=notes or "Sample out",
            require_available=True,
        )

    return run_in_transaction(_op)


def sample_return(
    *,
    product_id: int,
    color: str | None,
    size: str | None,
    quantity,
    reference_id: str | None = None,
    notes: str | None = None,
) -> StockChange:
    quantity = require_positive_int(quantity, "quantity")

    def _op():
        variant = find_variant(product_id, color, size)
        return apply_stock_change(
            variant_id=variant.id,
            physical_delta=quantity,
            movement_type=MOVEMENT_SAMPLE_RETURN,
            reference_id=reference_id,
            reference_type="sample",
            notes=notes or "Sample returned",
        )

    return run_in_transaction(_op)


# =============================================================================
# HISTORY
# =============================================================================

def ledger_sum(variant_id: int) -> int:
    total = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity_delta), 0)
    ).filter(StockMovement.variant_id == variant_id).scalar()
    return int(total or 0)


def list_movements(
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    movement_type: str | None = None,
    reference_id: str | None = None,
    page: int = 1,
    limit: int | None = None,
) -> dict:
    """Newest-first page of stock ledger rows with pagination metadata."""
    if limit is None:
        limit = int(current_app.config.get("MOVEMENT_PAGE_SIZE", 50))
    page = require_positive_int(page, "page")
    limit = require_positive_int(limit, "limit")
    if movement_type is not None and movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}")

    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if variant_id is not None:
        q = q.filter(StockMovement.variant_id == variant_id)
    if movement_type is not None:
        q = q.filter(StockMovement.movement_type == movement_type)
    if reference_id is not None:
        q = q.filter(StockMovement.reference_id == str(reference_id))

    total = q.count()
    rows = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }
