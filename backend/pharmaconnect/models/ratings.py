from __future__ import annotations

from ..extensions import db
from pharmaconnect.time_utils import to_utc_z


class Rating(db.Model):
    """A pharmacy's 1-5 rating of the warehouse that fulfilled one order."""
    __tablename__ = "ratings"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_ratings_order"),
        db.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_ratings_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    pharmacy = db.relationship("User", foreign_keys=[pharmacy_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "pharmacy_id": self.pharmacy_id,
            "pharmacy_name": self.pharmacy.username if self.pharmacy else None,
            "warehouse_id": self.warehouse_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": to_utc_z(self.created_at),
        }
