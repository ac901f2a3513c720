from __future__ import annotations

from ..extensions import db
from pharmaconnect.money import money_str
from pharmaconnect.time_utils import to_utc_z


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"


class Order(db.Model):
    """
    Purchase order placed by a pharmacy against one warehouse.

    LIFECYCLE:
        pending -> processing -> shipped -> delivered
        pending|processing -> cancelled

    A soft-deleted order (is_deleted=True) is always cancelled and is kept
    for audit; nothing may mutate it afterwards.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_pharmacy_status_created", "pharmacy_id", "status", "created_at"),
        db.Index("ix_orders_warehouse_status_created", "warehouse_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    # Sum of line totals, and the platform fee on it
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    commission = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    cancellable_until = db.Column(db.DateTime(timezone=True), nullable=True)
    expected_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    pharmacy_note = db.Column(db.Text, nullable=True)
    warehouse_note = db.Column(db.Text, nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    pharmacy = db.relationship("User", foreign_keys=[pharmacy_id])
    warehouse = db.relationship("User", foreign_keys=[warehouse_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r} pharmacy_id={self.pharmacy_id} warehouse_id={self.warehouse_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "total_amount": money_str(self.total_amount),
            "commission": money_str(self.commission),
            "cancellable_until": to_utc_z(self.cancellable_until),
            "expected_delivery_date": to_utc_z(self.expected_delivery_date),
            "pharmacy_note": self.pharmacy_note,
            "warehouse_note": self.warehouse_note,
            "is_deleted": self.is_deleted,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    One product line on an order. Immutable after creation.

    `price` is the effective per-unit price after discount and bonus units,
    so historic orders stay reproducible when catalog offers change.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(14, 6), nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    order = db.relationship(
        "Order",
        backref=db.backref("items", lazy=True, order_by="OrderItem.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "price": str(self.price) if self.price is not None else None,
            "line_total": money_str(self.line_total),
        }


class OrderEvent(db.Model):
    """
    Append-only audit trail of order lifecycle facts.

    One row per state-changing command; related facts ride in `meta`.
    Timelines are ordered by (created_at, id).
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_created", "order_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    actor_role = db.Column(db.String(16), nullable=True)

    message = db.Column(db.Text, nullable=True)
    meta = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    actor = db.relationship("User", foreign_keys=[actor_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_user_id": self.actor_user_id,
            "actor_username": self.actor.username if self.actor else None,
            "actor_role": self.actor_role,
            "message": self.message,
            "meta": self.meta,
            "created_at": to_utc_z(self.created_at),
        }
