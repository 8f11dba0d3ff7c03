from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Wholesale buyer (an approved business account).

    company_name is unique: statements authored outside the order flow only
    carry the company name, and that is how they are resolved to an account.

    mileage_balance is a CACHE of the mileage ledger sum. It is written only
    by mileage_service.record_entry (and the explicit recompute repair).
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("company_name", name="uq_customers_company_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_name = db.Column(db.String(255), nullable=False)
    representative_name = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    # main_distributor, distributor, retailer
    customer_type = db.Column(db.String(32), nullable=False, default="retailer")
    # Lower number allocates first in priority mode; NULL sorts last
    priority_level = db.Column(db.Integer, nullable=True)

    mileage_balance = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Customer id={self.id} company={self.company_name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_name": self.company_name,
            "representative_name": self.representative_name,
            "email": self.email,
            "customer_type": self.customer_type,
            "priority_level": self.priority_level,
            "mileage_balance": self.mileage_balance,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
