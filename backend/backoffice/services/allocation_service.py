# Overview: Service-layer operations for allocation; reserves available stock against short order lines.

# backend/backoffice/services/allocation_service.py
"""
Inventory allocation engine.

WHY: Wholesale orders are taken before stock arrives. Reserving stock per
order line in a fixed priority order decides who ships first when a variant
is oversubscribed, without moving anything physically.

ALGORITHM:
1. Select short lines (quantity > shipped + allocated) on orders whose
   status is eligible, ordered by priority key:
   - fifo:     order.created_at, order.id, line.id
   - priority: customer.priority_level (NULL last), customer_type rank,
               order.total_amount desc, then the fifo key
2. For each line, in that order, in its own transaction:
   available = physical_stock - allocated_stock  (re-read, never cached)
   granted   = min(available, remaining)
   reserve `granted` with a guarded UPDATE on the variant and the line.
3. Lines with granted < remaining are reported as short.

INVARIANTS:
- No stock ledger row is written: allocation only reserves.
- Re-running with unchanged stock changes nothing (idempotent).
- Two lines on the same variant are applied strictly one after another,
  each against the latest committed allocated_stock.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import case, func, update

from ..extensions import db
from ..models import Customer, Order, OrderLine, ProductVariant
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
)
from ..validation import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import apply_stock_change


ALLOCATION_MODE_FIFO = "fifo"
ALLOCATION_MODE_PRIORITY = "priority"
ALLOCATION_MODES = (ALLOCATION_MODE_FIFO, ALLOCATION_MODE_PRIORITY)

CUSTOMER_TYPE_RANK = {
    "main_distributor": 1,
    "distributor": 2,
    "retailer": 3,
}
UNRANKED_PRIORITY = 999

# A concurrent request can take the units we just measured; re-read and retry
_RESERVE_ATTEMPTS = 3


@dataclass
class AllocationResult:
    mode: str
    lines_considered: int = 0
    allocated_lines: int = 0
    allocated_units: int = 0
    short_lines: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def shortfall_units(self) -> int:
        return sum(item["shortfall"] for item in self.short_lines)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "lines_considered": self.lines_considered,
            "allocated_lines": self.allocated_lines,
            "allocated_units": self.allocated_units,
            "short_count": len(self.short_lines),
            "shortfall_units": self.shortfall_units,
            "short_lines": self.short_lines,
            "errors": self.errors,
        }


def eligible_statuses() -> tuple[str, ...]:
    return tuple(current_app.config["ALLOCATION_ELIGIBLE_STATUSES"])


# =============================================================================
# CANDIDATE SELECTION
# =============================================================================

def _candidate_line_ids(mode: str, product_id: int | None, order_ids: list[int] | None) -> list[int]:
    q = (
        db.session.query(OrderLine.id)
        .join(Order, Order.id == OrderLine.order_id)
        .join(ProductVariant, ProductVariant.id == OrderLine.variant_id)
        .filter(
            Order.status.in_(eligible_statuses()),
            OrderLine.quantity > OrderLine.shipped_quantity + OrderLine.allocated_quantity,
        )
    )
    if product_id is not None:
        q = q.filter(ProductVariant.product_id == product_id)
    if order_ids:
        q = q.filter(Order.id.in_(order_ids))

    fifo_key = (Order.created_at.asc(), Order.id.asc(), OrderLine.id.asc())

    if mode == ALLOCATION_MODE_PRIORITY:
        type_rank = case(
            *[(Customer.customer_type == name, rank) for name, rank in CUSTOMER_TYPE_RANK.items()],
            else_=len(CUSTOMER_TYPE_RANK) + 1,
        )
        q = q.outerjoin(Customer, Customer.id == Order.customer_id).order_by(
            func.coalesce(Customer.priority_level, UNRANKED_PRIORITY).asc(),
            type_rank.asc(),
            Order.total_amount.desc(),
            *fifo_key,
        )
    else:
        q = q.order_by(*fifo_key)

    return [row.id for row in q.all()]


# =============================================================================
# PER-LINE RESERVATION
# =============================================================================

def _reserve_line(line_id: int) -> dict:
    """
    Reserve as much as possible for one line. Runs inside one transaction.

    Returns a dict describing what happened; granted may be 0.
    """
    line = lock_for_update(
        db.session.query(OrderLine).filter_by(id=line_id)
    ).populate_existing().first()
    if line is None:
        raise NotFoundError(f"Order line {line_id} not found")
    order = db.session.get(Order, line.order_id, populate_existing=True)

    outcome = {
        "line_id": line.id,
        "order_id": order.id,
        "order_number": order.order_number,
        "variant_id": line.variant_id,
        "requested": line.unreserved_quantity,
        "granted": 0,
    }
    if order.status not in eligible_statuses() or line.unreserved_quantity <= 0:
        # Another request moved this line on since candidates were selected
        outcome["requested"] = 0
        return outcome

    variant = lock_for_update(
        db.session.query(ProductVariant).filter_by(id=line.variant_id)
    ).populate_existing().first()
    granted = min(max(variant.available_stock, 0), line.unreserved_quantity)
    if granted <= 0:
        return outcome

    apply_stock_change(
        variant_id=variant.id,
        allocated_delta=granted,
        require_available=True,
    )

    result = db.session.execute(
        update(OrderLine)
        .where(
            OrderLine.id == line.id,
            OrderLine.allocated_quantity + OrderLine.shipped_quantity + granted <= OrderLine.quantity,
        )
        .values(allocated_quantity=OrderLine.allocated_quantity + granted)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Order line {line.id} changed during allocation")

    if order.status == ORDER_STATUS_PENDING:
        order.status = ORDER_STATUS_PROCESSING

    outcome["granted"] = granted
    return outcome


def _reserve_line_with_retry(line_id: int) -> dict:
    last_exc = None
    for _ in range(_RESERVE_ATTEMPTS):
        try:
            return run_in_transaction(lambda: _reserve_line(line_id))
        except InsufficientStockError as exc:
            # Stock moved between our read and the guarded update
            last_exc = exc
    raise last_exc


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def allocate(
    *,
    product_id: int | None = None,
    mode: str = ALLOCATION_MODE_FIFO,
    order_ids: list[int] | None = None,
) -> AllocationResult:
    """
    Run the allocation engine over every eligible short line.

    Never raises for lack of stock: shortfalls are reported per line.
    Unexpected per-line failures are recorded in `errors` and the pass
    continues with the next line.
    """
    if mode not in ALLOCATION_MODES:
        raise ValidationError(f"Invalid allocation mode: {mode}")

    line_ids = _candidate_line_ids(mode, product_id, order_ids)
    result = AllocationResult(mode=mode, lines_considered=len(line_ids))

    for line_id in line_ids:
        try:
            outcome = _reserve_line_with_retry(line_id)
        except (ConflictError, NotFoundError) as exc:
            current_app.logger.warning("Allocation skipped line %s: %s", line_id, exc)
            result.errors.append({"line_id": line_id, "error": str(exc)})
            continue

        if outcome["requested"] <= 0:
            continue
        if outcome["granted"] > 0:
            result.allocated_lines += 1
            result.allocated_units += outcome["granted"]
        shortfall = outcome["requested"] - outcome["granted"]
        if shortfall > 0:
            result.short_lines.append({**outcome, "shortfall": shortfall})

    current_app.logger.info(
        "Allocation pass (%s): %s lines, %s units reserved, %s short",
        mode, result.lines_considered, result.allocated_units, len(result.short_lines),
    )
    return result


def release_line_allocation(line: OrderLine) -> int:
    """
    Return a line's reserved units to available stock. Caller owns the transaction.

    Returns the number of units released.
    """
    reserved = line.allocated_quantity
    if reserved <= 0:
        return 0

    result = db.session.execute(
        update(OrderLine)
        .where(OrderLine.id == line.id, OrderLine.allocated_quantity == reserved)
        .values(allocated_quantity=0)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Order line {line.id} changed while releasing its allocation")

    apply_stock_change(variant_id=line.variant_id, allocated_delta=-reserved)
    db.session.refresh(line)
    return reserved


def release_order_allocation(order_id: int) -> int:
    """Release every reservation held by an order; returns units released."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return sum(release_line_allocation(line) for line in order.lines)

    released = run_in_transaction(_op)
    if released:
        current_app.logger.info("Released %s reserved units from order %s", released, order_id)
    return released


def reset_and_reallocate(*, product_id: int | None = None) -> dict:
    """
    Drop every reservation on eligible orders, then run a fresh FIFO pass.

    Shipped quantities are untouched; only reservations are rebuilt.
    """
    q = (
        db.session.query(OrderLine.id)
        .join(Order, Order.id == OrderLine.order_id)
        .join(ProductVariant, ProductVariant.id == OrderLine.variant_id)
        .filter(Order.status.in_(eligible_statuses()), OrderLine.allocated_quantity > 0)
    )
    if product_id is not None:
        q = q.filter(ProductVariant.product_id == product_id)
    line_ids = [row.id for row in q.order_by(OrderLine.id).all()]

    released_units = 0
    for line_id in line_ids:
        def _op(line_id=line_id):
            line = lock_for_update(
                db.session.query(OrderLine).filter_by(id=line_id)
            ).populate_existing().first()
            return release_line_allocation(line) if line else 0
        released_units += run_in_transaction(_op)

    current_app.logger.info(
        "Reset %s reservations (%s units) before reallocation", len(line_ids), released_units
    )
    allocation = allocate(product_id=product_id, mode=ALLOCATION_MODE_FIFO)
    return {
        "released_lines": len(line_ids),
        "released_units": released_units,
        "allocation": allocation.to_dict(),
    }


def allocation_summary(product_id: int) -> list[dict]:
    """Per-variant ordered / reserved / shipped totals for one product."""
    variants = (
        db.session.query(ProductVariant)
        .filter_by(product_id=product_id)
        .order_by(ProductVariant.id)
        .all()
    )
    if not variants:
        raise NotFoundError(f"Product {product_id} has no variants")

    rows = (
        db.session.query(
            OrderLine.variant_id,
            func.coalesce(func.sum(OrderLine.quantity), 0).label("ordered"),
            func.coalesce(func.sum(OrderLine.allocated_quantity), 0).label("allocated"),
            func.coalesce(func.sum(OrderLine.shipped_quantity), 0).label("shipped"),
        )
        .join(Order, Order.id == OrderLine.order_id)
        .filter(
            OrderLine.variant_id.in_([v.id for v in variants]),
            Order.status != ORDER_STATUS_CANCELLED,
        )
        .group_by(OrderLine.variant_id)
        .all()
    )
    totals = {row.variant_id: row for row in rows}

    summary = []
    for variant in variants:
        row = totals.get(variant.id)
        ordered = int(row.ordered) if row else 0
        allocated = int(row.allocated) if row else 0
        shipped = int(row.shipped) if row else 0
        summary.append({
            **variant.to_dict(),
            "total_ordered": ordered,
            "total_allocated": allocated,
            "total_shipped": shipped,
            "pending_allocation": max(0, ordered - shipped - allocated),
        })
    return summary
