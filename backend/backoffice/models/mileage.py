from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


MILEAGE_TYPE_EARN = "earn"
MILEAGE_TYPE_SPEND = "spend"

MILEAGE_SOURCE_ORDER = "order"
MILEAGE_SOURCE_REFUND = "refund"
MILEAGE_SOURCE_MANUAL = "manual"
MILEAGE_SOURCE_AUTO = "auto"

MILEAGE_STATUS_COMPLETED = "completed"
MILEAGE_STATUS_PENDING = "pending"
MILEAGE_STATUS_CANCELLED = "cancelled"


class MileageEntry(db.Model):
    """
    Append-only ledger of mileage (store credit) events.

    amount is signed: positive for earn, negative for spend. The customer's
    cached mileage_balance equals SUM(amount) over completed entries.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "mileage_entries"
    __table_args__ = (
        db.Index("ix_mileage_entries_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)  # earn, spend
    source = db.Column(db.String(16), nullable=False)  # order, refund, manual, auto
    status = db.Column(db.String(16), nullable=False, default=MILEAGE_STATUS_COMPLETED, index=True)

    description = db.Column(db.String(255), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    statement_id = db.Column(db.Integer, db.ForeignKey("statements.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    customer = db.relationship("Customer", backref=db.backref("mileage_entries", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "amount": self.amount,
            "type": self.type,
            "source": self.source,
            "status": self.status,
            "description": self.description,
            "order_id": self.order_id,
            "statement_id": self.statement_id,
            "created_at": to_utc_z(self.created_at),
        }
