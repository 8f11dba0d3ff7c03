# Overview: Service-layer operations for shipments, cancellations and returns.

# backend/backoffice/services/shipment_service.py
"""
Shipment state machine.

WHY: Shipping is the moment a reservation becomes a physical movement.
It has to happen exactly once per unit, even when the same request is
retried or two operators ship the same order at once.

SHIP(line, q), one transaction per line:
1. q must be <= line.allocated_quantity (only reserved units ship).
2. line:    allocated -= q, shipped += q  (guarded UPDATE, WHERE allocated >= q)
   variant: physical  -= q, allocated -= q (guarded UPDATE)
3. stock ledger: quantity_delta = -q, movement_type = shipment,
   reference = order number
4. order status: shipped when every unit shipped, else partial_shipped.

Idempotency: once a reservation is consumed, step 1 fails for a repeated
call, so the same request can never decrement stock twice.

ORDER STATUS FLOW:
pending -> processing (first reservation) -> partial_shipped -> shipped
                                                   -> partial_returned / returned
A return on a partial_shipped order leaves it partial_shipped: its
remaining reservations still ship and allocation keeps topping it up.
cancelled: only from pending / confirmed / processing with nothing shipped.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Order, OrderLine
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PARTIAL_RETURNED,
    ORDER_STATUS_PARTIAL_SHIPPED,
    ORDER_STATUS_RETURNED,
    ORDER_STATUS_SHIPPED,
    PRE_SHIPMENT_STATUSES,
)
from ..models.stock import MOVEMENT_RETURN, MOVEMENT_SHIPMENT
from ..models.statements import STATEMENT_TYPE_RETURN
from ..time_utils import utcnow
from ..validation import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_str,
    require_int,
    require_list,
    require_positive_int,
)
from . import statement_service
from .allocation_service import release_line_allocation
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import apply_stock_change


SHIPPABLE_STATUSES = PRE_SHIPMENT_STATUSES + (ORDER_STATUS_PARTIAL_SHIPPED,)
RETURNABLE_STATUSES = (ORDER_STATUS_SHIPPED, ORDER_STATUS_PARTIAL_SHIPPED, ORDER_STATUS_PARTIAL_RETURNED)


@dataclass
class ShipmentResult:
    order_id: int
    order_status: str | None = None
    shipped_lines: int = 0
    shipped_units: int = 0
    failed_count: int = 0
    results: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_status": self.order_status,
            "shipped_lines": self.shipped_lines,
            "shipped_units": self.shipped_units,
            "failed_count": self.failed_count,
            "results": self.results,
            "errors": self.errors,
        }


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def refresh_order_status(order: Order) -> str:
    """Recompute shipped / partial_shipped from line totals."""
    db.session.refresh(order)
    for line in order.lines:
        db.session.refresh(line)

    total_quantity = sum(line.quantity for line in order.lines)
    total_shipped = sum(line.shipped_quantity for line in order.lines)

    if total_quantity > 0 and total_shipped >= total_quantity:
        if order.status != ORDER_STATUS_SHIPPED:
            order.status = ORDER_STATUS_SHIPPED
            order.shipped_at = utcnow()
    elif total_shipped > 0 and order.status in SHIPPABLE_STATUSES:
        order.status = ORDER_STATUS_PARTIAL_SHIPPED
    return order.status


# =============================================================================
# SHIPPING
# =============================================================================

def _parse_ship_items(items) -> list[tuple[int, int]]:
    items = require_list(items, "items")
    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        parsed.append((
            require_int(item.get("line_id"), f"items[{index}].line_id"),
            require_positive_int(item.get("quantity"), f"items[{index}].quantity"),
        ))
    return parsed


def _ship_line(order_id: int, line_id: int, quantity: int) -> dict:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.status not in SHIPPABLE_STATUSES:
        raise ConflictError(f"Order {order.order_number} is {order.status}")

    line = db.session.get(OrderLine, line_id, populate_existing=True)
    if line is None or line.order_id != order.id:
        raise NotFoundError(f"Line {line_id} not found on order {order.order_number}")
    if quantity > line.allocated_quantity:
        raise AlreadyProcessedError(
            f"Line {line_id}: ship quantity {quantity} exceeds reserved {line.allocated_quantity}"
        )

    result = db.session.execute(
        update(OrderLine)
        .where(OrderLine.id == line.id, OrderLine.allocated_quantity >= quantity)
        .values(
            allocated_quantity=OrderLine.allocated_quantity - quantity,
            shipped_quantity=OrderLine.shipped_quantity + quantity,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError(f"Line {line_id}: reservation already consumed")

    change = apply_stock_change(
        variant_id=line.variant_id,
        physical_delta=-quantity,
        allocated_delta=-quantity,
        movement_type=MOVEMENT_SHIPMENT,
        reference_id=order.order_number,
        reference_type="order",
        notes=f"Shipped {quantity} on line {line.id}",
    )

    status = refresh_order_status(order)
    return {
        "line_id": line.id,
        "shipped": quantity,
        "shipped_quantity": line.shipped_quantity,
        "allocated_quantity": line.allocated_quantity,
        "remaining": line.unshipped_quantity,
        "movement_id": change.movement.id,
        "order_status": status,
    }


def ship(order_id: int, items) -> ShipmentResult:
    """
    Ship reserved units line by line.

    Each line commits on its own; a rejected line (unreserved quantity,
    unknown line, cancelled order) is reported and the rest still ship.
    """
    parsed = _parse_ship_items(items)
    get_order(order_id)

    result = ShipmentResult(order_id=order_id)
    for line_id, quantity in parsed:
        try:
            outcome = run_in_transaction(lambda: _ship_line(order_id, line_id, quantity))
        except (ConflictError, NotFoundError, ValidationError) as exc:
            current_app.logger.warning("Ship rejected for order %s line %s: %s", order_id, line_id, exc)
            result.failed_count += 1
            result.errors.append({"line_id": line_id, "quantity": quantity, "error": str(exc)})
            continue
        result.shipped_lines += 1
        result.shipped_units += outcome["shipped"]
        result.results.append(outcome)

    result.order_status = db.session.get(Order, order_id, populate_existing=True).status
    if result.shipped_units:
        current_app.logger.info(
            "Order %s shipped %s units (%s)", order_id, result.shipped_units, result.order_status
        )
    return result


def ship_all_allocated(order_id: int) -> ShipmentResult:
    """Ship every currently reserved unit on an order."""
    order = get_order(order_id)
    items = [
        {"line_id": line.id, "quantity": line.allocated_quantity}
        for line in order.lines
        if line.allocated_quantity > 0
    ]
    if not items:
        result = ShipmentResult(order_id=order_id, order_status=order.status)
        result.errors.append({"error": "No reserved units to ship"})
        return result
    return ship(order_id, items)


def bulk_ship(order_ids) -> dict:
    order_ids = [require_int(value, "order_ids[]") for value in require_list(order_ids, "order_ids")]
    results = []
    errors = []
    for order_id in dict.fromkeys(order_ids):
        try:
            results.append(ship_all_allocated(order_id).to_dict())
        except NotFoundError as exc:
            errors.append({"order_id": order_id, "error": str(exc)})
    return {
        "orders": results,
        "shipped_orders": sum(1 for r in results if r["shipped_units"] > 0),
        "shipped_units": sum(r["shipped_units"] for r in results),
        "failed_count": len(errors) + sum(r["failed_count"] for r in results),
        "errors": errors,
    }


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(order_id: int, reason: str | None = None) -> Order:
    """Cancel before anything shipped; every reservation goes back to available."""
    reason = optional_str(reason, "reason")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status not in PRE_SHIPMENT_STATUSES:
            raise ConflictError(f"Order {order.order_number} cannot be cancelled from {order.status}")
        if any(line.shipped_quantity > 0 for line in order.lines):
            raise ConflictError(f"Order {order.order_number} already has shipped units")

        released = sum(release_line_allocation(line) for line in order.lines)
        order.status = ORDER_STATUS_CANCELLED
        order.cancelled_at = utcnow()
        order.cancellation_reason = reason
        return order, released

    order, released = run_in_transaction(_op)
    current_app.logger.info("Cancelled order %s, released %s reserved units", order.order_number, released)
    return order


# =============================================================================
# RETURNS
# =============================================================================

def _parse_return_items(items) -> list[dict]:
    items = require_list(items, "items")
    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        restock = item.get("restock", True)
        if not isinstance(restock, bool):
            raise ValidationError(f"items[{index}].restock must be a boolean")
        parsed.append({
            "line_id": require_int(item.get("line_id"), f"items[{index}].line_id"),
            "quantity": require_positive_int(item.get("quantity"), f"items[{index}].quantity"),
            "restock": restock,
        })
    return parsed


def return_order_lines(order_id: int, items, reason: str | None = None) -> dict:
    """
    Take shipped units back.

    The whole return is one transaction: returned quantities, the stock
    ledger rows (movement_type=return, positive delta) for restocked units,
    the new order status, and a pending return statement for the credit.
    """
    parsed = _parse_return_items(items)
    reason = optional_str(reason, "reason")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status not in RETURNABLE_STATUSES:
            raise ConflictError(f"Order {order.order_number} cannot be returned from {order.status}")

        lines = {line.id: line for line in order.lines}
        statement_items = []
        restocked_units = 0
        for item in parsed:
            line = lines.get(item["line_id"])
            if line is None:
                raise NotFoundError(f"Line {item['line_id']} not found on order {order.order_number}")
            returnable = line.shipped_quantity - line.returned_quantity
            if item["quantity"] > returnable:
                raise ValidationError(
                    f"Line {line.id}: return quantity {item['quantity']} exceeds returnable {returnable}"
                )

            result = db.session.execute(
                update(OrderLine)
                .where(
                    OrderLine.id == line.id,
                    OrderLine.returned_quantity + item["quantity"] <= OrderLine.shipped_quantity,
                )
                .values(returned_quantity=OrderLine.returned_quantity + item["quantity"])
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyProcessedError(f"Line {line.id}: units already returned")

            if item["restock"]:
                apply_stock_change(
                    variant_id=line.variant_id,
                    physical_delta=item["quantity"],
                    movement_type=MOVEMENT_RETURN,
                    reference_id=order.order_number,
                    reference_type="order_return",
                    notes=f"Returned {item['quantity']} on line {line.id}" + (f" - {reason}" if reason else ""),
                )
                restocked_units += item["quantity"]

            variant = line.variant
            statement_items.append({
                "product_id": variant.product_id,
                "product_name": variant.product.name,
                "color": variant.color,
                "size": variant.size,
                "quantity": item["quantity"],
                "unit_price": line.unit_price,
            })

        for line in order.lines:
            db.session.refresh(line)
        # Units still to ship keep the order shippable and allocation-eligible
        if not any(line.shipped_quantity < line.quantity for line in order.lines):
            total_shipped = sum(line.shipped_quantity for line in order.lines)
            total_returned = sum(line.returned_quantity for line in order.lines)
            order.status = (
                ORDER_STATUS_RETURNED if total_returned >= total_shipped else ORDER_STATUS_PARTIAL_RETURNED
            )

        statement = statement_service.build_statement(
            statement_type=STATEMENT_TYPE_RETURN,
            company_name=order.customer.company_name if order.customer else None,
            customer_id=order.customer_id,
            order_id=order.id,
            items=statement_items,
            reason=reason,
        )
        return {
            "order": order.to_dict(),
            "statement": statement.to_dict(),
            "returned_units": sum(item["quantity"] for item in parsed),
            "restocked_units": restocked_units,
        }

    outcome = statement_service.run_with_number_retry(_op)
    current_app.logger.info(
        "Order %s returned %s units (%s restocked), statement %s",
        order_id, outcome["returned_units"], outcome["restocked_units"],
        outcome["statement"]["statement_number"],
    )
    return outcome
