# Overview: Service-layer operations for reconciliation; detects and repairs drift in stored stock counters.

# backend/backoffice/services/reconciliation_service.py
"""
Reconciliation and physical audit.

WHY: allocated_stock is a stored counter that should always equal the sum
of live reservations, and physical_stock should always equal what is on
the shelf. Bugs, manual database edits, and interrupted batch jobs break
both. This module reports the drift and, only when asked, repairs it
through the same ledger-writing primitive used by shipment.

CHECKS:
- Allocation drift: live_allocated = SUM(line.allocated_quantity) over
  non-cancelled orders; needs_fix = live_allocated != stored allocated_stock.
  Repair modes: "precise" (set to live_allocated) or "reset" (set to 0).
- Physical audit: difference = actual - stored physical. A non-zero
  difference writes an audit ledger row and sets physical to actual.
  Driven by an absolute count, so re-running with the same count is a no-op.
- Ledger check: initial_stock + SUM(ledger deltas) must equal physical_stock.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderLine, Product, ProductVariant
from ..models.orders import ORDER_STATUS_CANCELLED
from ..models.stock import MOVEMENT_AUDIT
from ..validation import (
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ValidationError,
    require_int,
    require_list,
    require_non_negative_int,
)
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import (
    StockChangedError,
    apply_stock_change,
    find_variant,
    get_variant,
    ledger_sum,
)


FIX_MODE_PRECISE = "precise"
FIX_MODE_RESET = "reset"
FIX_MODES = (FIX_MODE_PRECISE, FIX_MODE_RESET)

_AUDIT_ATTEMPTS = 3


@dataclass
class AuditResult:
    items_checked: int = 0
    corrections: list[dict] = field(default_factory=list)
    alerts: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "items_checked": self.items_checked,
            "discrepancies": len(self.corrections),
            "corrections": self.corrections,
            "alerts": self.alerts,
            "failed_count": len(self.errors),
            "errors": self.errors,
        }


# =============================================================================
# ALLOCATION DRIFT
# =============================================================================

def _line_totals(variant_id: int) -> dict:
    row = (
        db.session.query(
            func.coalesce(func.sum(OrderLine.quantity), 0).label("ordered"),
            func.coalesce(func.sum(OrderLine.allocated_quantity), 0).label("allocated"),
            func.coalesce(func.sum(OrderLine.shipped_quantity), 0).label("shipped"),
        )
        .join(Order, Order.id == OrderLine.order_id)
        .filter(OrderLine.variant_id == variant_id, Order.status != ORDER_STATUS_CANCELLED)
        .one()
    )
    return {
        "ordered": int(row.ordered),
        "allocated": int(row.allocated),
        "shipped": int(row.shipped),
    }


def _drift_report(variant: ProductVariant) -> dict:
    totals = _line_totals(variant.id)
    live_allocated = totals["allocated"]
    product = variant.product
    return {
        "product": {"id": product.id, "name": product.name, "code": product.code},
        "option": {"variant_id": variant.id, "color": variant.color, "size": variant.size},
        "stock": {
            "physical": variant.physical_stock,
            "allocated_in_db": variant.allocated_stock,
            "allocated_from_orders": live_allocated,
            "available_calculated": variant.physical_stock - variant.allocated_stock,
            "available_real": variant.physical_stock - live_allocated,
        },
        "orders": {
            "total_ordered": totals["ordered"],
            "total_allocated": live_allocated,
            "total_shipped": totals["shipped"],
            "pending_allocation": totals["ordered"] - totals["shipped"] - live_allocated,
        },
        "sync": {
            "is_synced": live_allocated == variant.allocated_stock,
            "difference": live_allocated - variant.allocated_stock,
            "needs_fix": live_allocated != variant.allocated_stock,
        },
    }


def sync_check(product_id: int, color: str | None = None, size: str | None = None) -> dict:
    """Read-only drift report for one variant."""
    return _drift_report(find_variant(product_id, color, size))


def scan_allocation_drift(product_id: int | None = None) -> list[dict]:
    """Drift reports for every variant whose stored allocation disagrees with its lines."""
    q = db.session.query(ProductVariant)
    if product_id is not None:
        q = q.filter(ProductVariant.product_id == product_id)
    drifted = []
    for variant in q.order_by(ProductVariant.id).all():
        report = _drift_report(variant)
        if report["sync"]["needs_fix"]:
            drifted.append(report)
    return drifted


def fix_allocation_drift(
    product_id: int,
    color: str | None = None,
    size: str | None = None,
    *,
    mode: str = FIX_MODE_PRECISE,
) -> dict:
    """
    Repair allocated_stock for one variant.

    precise: set to the live sum of line reservations.
    reset:   set to 0 (lines keep their allocated_quantity; follow with a
             reset-and-reallocate to rebuild both sides).
    """
    if mode not in FIX_MODES:
        raise ValidationError(f"Invalid fix mode: {mode}")

    def _op():
        variant = lock_for_update(
            db.session.query(ProductVariant).filter_by(id=find_variant(product_id, color, size).id)
        ).populate_existing().first()
        before = variant.allocated_stock
        target = _line_totals(variant.id)["allocated"] if mode == FIX_MODE_PRECISE else 0
        if target != before:
            apply_stock_change(variant_id=variant.id, allocated_delta=target - before)
        return variant.id, before, target

    variant_id, before, target = run_in_transaction(_op)
    changed = before != target
    if changed:
        current_app.logger.warning(
            "Allocation drift fix (%s) on variant %s: allocated_stock %s -> %s",
            mode, variant_id, before, target,
        )
    report = _drift_report(get_variant(variant_id))
    return {
        "mode": mode,
        "variant_id": variant_id,
        "allocated_before": before,
        "allocated_after": target,
        "changed": changed,
        "report": report,
    }


# =============================================================================
# PHYSICAL AUDIT
# =============================================================================

def _resolve_count(item: dict, index: int) -> tuple[ProductVariant, int]:
    if not isinstance(item, dict):
        raise ValidationError(f"actual_counts[{index}] must be an object")
    actual = require_non_negative_int(item.get("actual"), f"actual_counts[{index}].actual")
    if item.get("variant_id") is not None:
        variant = get_variant(require_int(item["variant_id"], f"actual_counts[{index}].variant_id"))
    else:
        product_id = require_int(item.get("product_id"), f"actual_counts[{index}].product_id")
        variant = find_variant(product_id, item.get("color"), item.get("size"))
    return variant, actual


def _audit_variant(variant_id: int, actual: int, note: str | None) -> dict | None:
    variant = lock_for_update(
        db.session.query(ProductVariant).filter_by(id=variant_id)
    ).populate_existing().first()
    system_stock = variant.physical_stock
    difference = actual - system_stock
    if difference == 0:
        return None

    change = apply_stock_change(
        variant_id=variant.id,
        physical_delta=difference,
        movement_type=MOVEMENT_AUDIT,
        reference_type="audit",
        notes=note or f"Physical count {actual} (system {system_stock})",
        expected_physical=system_stock,
        allow_negative_physical=True,
    )
    product = db.session.get(Product, variant.product_id)
    return {
        "variant_id": variant.id,
        "product_id": product.id,
        "product_code": product.code,
        "product_name": product.name,
        "color": variant.color,
        "size": variant.size,
        "system_stock": system_stock,
        "actual_stock": actual,
        "difference": difference,
        "allocated_stock": change.variant.allocated_stock,
        "oversubscribed": actual < change.variant.allocated_stock,
        "movement_id": change.movement.id,
    }


def physical_audit(actual_counts, *, note: str | None = None) -> AuditResult:
    """
    Apply externally counted on-hand quantities.

    Each count is applied in its own transaction. Bad items are reported
    and skipped. A count below the reserved quantity is applied anyway and
    raised as an `oversubscribed` alert, since the shelf is the truth.
    """
    items = require_list(actual_counts, "actual_counts")
    result = AuditResult()

    for index, item in enumerate(items):
        try:
            variant, actual = _resolve_count(item, index)
        except (ValidationError, NotFoundError) as exc:
            result.errors.append({"index": index, "error": str(exc)})
            continue

        result.items_checked += 1
        correction = None
        for attempt in range(_AUDIT_ATTEMPTS):
            try:
                correction = run_in_transaction(lambda: _audit_variant(variant.id, actual, note))
                break
            except StockChangedError as exc:
                if attempt >= _AUDIT_ATTEMPTS - 1:
                    result.errors.append({"index": index, "variant_id": variant.id, "error": str(exc)})
            except ConflictError as exc:
                result.errors.append({"index": index, "variant_id": variant.id, "error": str(exc)})
                break

        if correction is None:
            continue
        result.corrections.append(correction)
        current_app.logger.info(
            "Audit correction on variant %s: %s -> %s (%+d)",
            correction["variant_id"], correction["system_stock"],
            correction["actual_stock"], correction["difference"],
        )
        if correction["oversubscribed"]:
            result.alerts.append({
                "variant_id": correction["variant_id"],
                "physical_stock": correction["actual_stock"],
                "allocated_stock": correction["allocated_stock"],
                "message": "Counted stock is below reserved stock; reallocation required",
            })
            current_app.logger.warning(
                "Variant %s oversubscribed after audit: %s on hand, %s reserved",
                correction["variant_id"], correction["actual_stock"], correction["allocated_stock"],
            )

    return result


# =============================================================================
# LEDGER CHECK
# =============================================================================

def verify_stock_ledger(variant_id: int, *, strict: bool = False) -> dict:
    """
    Compare physical_stock with initial_stock + SUM(ledger deltas).

    Raises ConsistencyError on mismatch when strict, otherwise reports it.
    """
    variant = get_variant(variant_id)
    total = ledger_sum(variant.id)
    expected = variant.initial_stock + total
    report = {
        "variant_id": variant.id,
        "initial_stock": variant.initial_stock,
        "ledger_sum": total,
        "expected_physical": expected,
        "physical_stock": variant.physical_stock,
        "drift": variant.physical_stock - expected,
        "consistent": expected == variant.physical_stock,
    }
    if not report["consistent"]:
        current_app.logger.warning(
            "Stock ledger mismatch on variant %s: physical %s, ledger says %s",
            variant.id, variant.physical_stock, expected,
        )
        if strict:
            raise ConsistencyError(
                f"Variant {variant.id} physical stock {variant.physical_stock} "
                f"does not match ledger ({expected})",
                report=report,
            )
    return report
