from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product as seen by the stock engine.

    Only the fields the allocation and settlement code reads live here;
    catalog CRUD (categories, images, descriptions) is handled elsewhere.

    A product owns one or more ProductVariant rows. Simple products with a
    single scalar stock count own exactly one variant with color='' and size=''.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Wholesale unit price in KRW (no minor unit)
    price = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variants = db.relationship(
        "ProductVariant",
        back_populates="product",
        lazy=True,
        order_by="ProductVariant.id",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self, include_variants: bool = False) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "price": self.price,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_variants:
            data["variants"] = [v.to_dict() for v in self.variants]
        return data


class ProductVariant(db.Model):
    """
    Variant inventory record: one row per (product, color, size).

    COUNTERS:
    - physical_stock: units on hand
    - allocated_stock: units reserved against open order lines
    - available = physical_stock - allocated_stock (the only quantity offered to allocation)

    Both counters are mutated exclusively through
    stock_ledger_service.apply_stock_change, which issues a single guarded
    UPDATE ... SET col = col + :delta so concurrent requests never overwrite
    each other's arithmetic.

    initial_stock is the on-hand count when the row was created; the stock
    ledger's running sum is measured against it.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "color", "size", name="uq_product_variants_option"),
        db.CheckConstraint("allocated_stock >= 0", name="ck_product_variants_allocated_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    color = db.Column(db.String(64), nullable=False, default="")
    size = db.Column(db.String(64), nullable=False, default="")

    physical_stock = db.Column(db.Integer, nullable=False, default=0)
    allocated_stock = db.Column(db.Integer, nullable=False, default=0)
    initial_stock = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", back_populates="variants")

    @property
    def available_stock(self) -> int:
        return self.physical_stock - self.allocated_stock

    @property
    def label(self) -> str:
        return f"{self.color or '-'}/{self.size or '-'}"

    def __repr__(self) -> str:
        return (
            f"<ProductVariant id={self.id} product_id={self.product_id} {self.label} "
            f"physical={self.physical_stock} allocated={self.allocated_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "color": self.color,
            "size": self.size,
            "physical_stock": self.physical_stock,
            "allocated_stock": self.allocated_stock,
            "available_stock": self.available_stock,
            "initial_stock": self.initial_stock,
            "updated_at": to_utc_z(self.updated_at),
        }
