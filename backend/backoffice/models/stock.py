from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


MOVEMENT_SHIPMENT = "shipment"
MOVEMENT_RETURN = "return"
MOVEMENT_SAMPLE_OUT = "sample_out"
MOVEMENT_SAMPLE_RETURN = "sample_return"
MOVEMENT_AUDIT = "audit"
MOVEMENT_MANUAL_ADJUSTMENT = "manual_adjustment"
MOVEMENT_INBOUND = "inbound"

MOVEMENT_TYPES = (
    MOVEMENT_SHIPMENT,
    MOVEMENT_RETURN,
    MOVEMENT_SAMPLE_OUT,
    MOVEMENT_SAMPLE_RETURN,
    MOVEMENT_AUDIT,
    MOVEMENT_MANUAL_ADJUSTMENT,
    MOVEMENT_INBOUND,
)


class StockMovement(db.Model):
    """
    Append-only stock ledger.

    Every physical stock change writes exactly one row here in the same DB
    transaction as the counter update. Reservations (allocated_stock) never
    produce a row because nothing physically moved.

    INVARIANT: for each variant,
        initial_stock + SUM(quantity_delta) == physical_stock

    IMMUTABLE: rows are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_variant_created", "variant_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    # Denormalized for history listings and exports
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    color = db.Column(db.String(64), nullable=False, default="")
    size = db.Column(db.String(64), nullable=False, default="")

    quantity_delta = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(32), nullable=False, index=True)

    reference_id = db.Column(db.String(64), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)

    # Physical stock right after this movement
    balance_after = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    variant = db.relationship("ProductVariant", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "color": self.color,
            "size": self.size,
            "quantity_delta": self.quantity_delta,
            "movement_type": self.movement_type,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "balance_after": self.balance_after,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
