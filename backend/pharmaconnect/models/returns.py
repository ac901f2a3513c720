from __future__ import annotations

from ..extensions import db
from pharmaconnect.time_utils import to_utc_z


RETURN_STATUS_PENDING = "pending"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_REJECTED = "rejected"
RETURN_STATUS_COMPLETED = "completed"


class Return(db.Model):
    """
    Pharmacy request to send delivered goods back to the warehouse.

    LIFECYCLE:
    1. pending: requested by the pharmacy
    2. approved / rejected: warehouse (or admin) decision
    3. completed: goods received back, stock restored

    The parent order is referenced by id only; a return never changes the
    order's own status.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.Index("ix_returns_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    reason = db.Column(db.Text, nullable=False)
    note = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=RETURN_STATUS_PENDING, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("returns", lazy=True, order_by="Return.id.desc()"))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "pharmacy_id": self.pharmacy_id,
            "warehouse_id": self.warehouse_id,
            "reason": self.reason,
            "note": self.note,
            "status": self.status,
            "items_count": len(self.items),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReturnItem(db.Model):
    """Individual product line on a return. Immutable."""
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    return_request = db.relationship(
        "Return",
        backref=db.backref("items", lazy=True, order_by="ReturnItem.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
        }
