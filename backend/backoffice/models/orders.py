from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_CONFIRMED = "confirmed"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_PARTIAL_SHIPPED = "partial_shipped"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_RETURNED = "returned"
ORDER_STATUS_PARTIAL_RETURNED = "partial_returned"
ORDER_STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_PARTIAL_SHIPPED,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_RETURNED,
    ORDER_STATUS_PARTIAL_RETURNED,
    ORDER_STATUS_CANCELLED,
)

# Nothing has physically left the warehouse yet
PRE_SHIPMENT_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PROCESSING,
)


class Order(db.Model):
    """
    Customer order.

    created_at is the FIFO key for allocation: the oldest order is served
    first, ties broken by id.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # purchase or sample
    order_type = db.Column(db.String(16), nullable=False, default="purchase")
    status = db.Column(db.String(32), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    total_amount = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        lazy=True,
        order_by="OrderLine.id",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "order_type": self.order_type,
            "status": self.status,
            "total_amount": self.total_amount,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    One requested variant on an order.

    QUANTITIES (all clamped to quantity):
    - allocated_quantity: units currently reserved, not yet shipped
    - shipped_quantity: units physically dispatched (only the shipment service raises it)
    - returned_quantity: shipped units that came back (never exceeds shipped_quantity)

    Units still needing a reservation: quantity - shipped_quantity - allocated_quantity.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        db.CheckConstraint(
            "allocated_quantity >= 0 AND shipped_quantity >= 0 "
            "AND allocated_quantity + shipped_quantity <= quantity",
            name="ck_order_lines_quantities",
        ),
        db.CheckConstraint(
            "returned_quantity >= 0 AND returned_quantity <= shipped_quantity",
            name="ck_order_lines_returned",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    allocated_quantity = db.Column(db.Integer, nullable=False, default=0)
    shipped_quantity = db.Column(db.Integer, nullable=False, default=0)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_price = db.Column(db.Integer, nullable=False, default=0)

    order = db.relationship("Order", back_populates="lines")
    variant = db.relationship("ProductVariant")

    @property
    def unreserved_quantity(self) -> int:
        return max(0, self.quantity - self.shipped_quantity - self.allocated_quantity)

    @property
    def unshipped_quantity(self) -> int:
        return max(0, self.quantity - self.shipped_quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "allocated_quantity": self.allocated_quantity,
            "shipped_quantity": self.shipped_quantity,
            "returned_quantity": self.returned_quantity,
            "unreserved_quantity": self.unreserved_quantity,
            "unit_price": self.unit_price,
        }
