from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from pharmaconnect.time_utils import to_utc_z
from pharmaconnect.money import money_str


class Product(db.Model):
    """
    Catalog read model.

    Products are owned by a warehouse (warehouse_id -> users.id). Catalog CRUD
    and spreadsheet import happen elsewhere; the lifecycle engine reads price
    and offer fields and moves `quantity` only through the inventory ledger.

    OFFER FIELDS:
    - discount_percent: 0..100, applied to the unit price
    - bonus_buy_quantity / bonus_free_quantity: "buy N get M free", a pair
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
        db.Index("ix_products_warehouse_name", "warehouse_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Units in stock
    quantity = db.Column(db.Integer, nullable=False, default=0)

    discount_percent = db.Column(db.Numeric(5, 2), nullable=True, default=0)
    bonus_buy_quantity = db.Column(db.Integer, nullable=True)
    bonus_free_quantity = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    warehouse = db.relationship("User", backref=db.backref("products", lazy=True))

    @validates("quantity")
    def _validate_quantity(self, key, value):
        if value is not None and value < 0:
            raise ValueError("quantity must be >= 0")
        return value

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} warehouse_id={self.warehouse_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "warehouse_id": self.warehouse_id,
            "name": self.name,
            "price": money_str(self.price),
            "quantity": self.quantity,
            "discount_percent": str(self.discount_percent) if self.discount_percent is not None else None,
            "bonus_buy_quantity": self.bonus_buy_quantity,
            "bonus_free_quantity": self.bonus_free_quantity,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
