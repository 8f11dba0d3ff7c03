from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


STATEMENT_TYPE_DEDUCTION = "deduction"
STATEMENT_TYPE_RETURN = "return"

STATEMENT_STATUS_PENDING = "pending"
STATEMENT_STATUS_COMPLETED = "completed"
STATEMENT_STATUS_REFUNDED = "refunded"
STATEMENT_STATUS_REJECTED = "rejected"


class Statement(db.Model):
    """
    Deduction or return statement.

    LIFECYCLE:
    - deduction: pending -> completed (mileage_deducted=True)
    - return:    pending -> refunded  (refunded=True)
    - either:    pending -> rejected

    The status column together with the per-type flag is the idempotency
    guard: processing issues a conditional UPDATE that only matches a
    pending row whose flag is still false, so a statement mutates the
    mileage ledger at most once.

    items is a JSON snapshot of what the statement covers:
    [{"product_id", "product_name", "color", "size", "quantity", "unit_price"}]
    """
    __tablename__ = "statements"
    __table_args__ = (
        db.UniqueConstraint("statement_number", name="uq_statements_number"),
        db.Index("ix_statements_type_status", "statement_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    statement_number = db.Column(db.String(64), nullable=False)
    statement_type = db.Column(db.String(16), nullable=False, index=True)

    company_name = db.Column(db.String(255), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    items = db.Column(db.JSON, nullable=False, default=list)

    total_amount = db.Column(db.Integer, nullable=False, default=0)
    mileage_amount = db.Column(db.Integer, nullable=True)
    refund_amount = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=STATEMENT_STATUS_PENDING, index=True)
    mileage_deducted = db.Column(db.Boolean, nullable=False, default=False)
    refunded = db.Column(db.Boolean, nullable=False, default=False)

    reason = db.Column(db.String(255), nullable=True)
    rejected_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    customer = db.relationship("Customer")
    order = db.relationship("Order", backref=db.backref("statements", lazy=True))

    @property
    def deduction_amount(self) -> int:
        # mileage_amount of 0 or NULL falls back to the statement total
        return self.mileage_amount or self.total_amount

    @property
    def credit_amount(self) -> int:
        return self.refund_amount or self.total_amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "statement_number": self.statement_number,
            "statement_type": self.statement_type,
            "company_name": self.company_name,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "items": self.items or [],
            "total_amount": self.total_amount,
            "mileage_amount": self.mileage_amount,
            "refund_amount": self.refund_amount,
            "status": self.status,
            "mileage_deducted": self.mileage_deducted,
            "refunded": self.refunded,
            "reason": self.reason,
            "rejected_reason": self.rejected_reason,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at),
        }
