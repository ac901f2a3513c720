from __future__ import annotations

from ..extensions import db
from pharmaconnect.money import money_str
from pharmaconnect.time_utils import to_utc_z


INVOICE_STATUS_PENDING = "pending"
INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_CANCELLED = "cancelled"

VALID_INVOICE_STATUSES = {INVOICE_STATUS_PENDING, INVOICE_STATUS_PAID, INVOICE_STATUS_CANCELLED}


class Invoice(db.Model):
    """
    Settlement document for exactly one order.

    Created in the same transaction as its order. `net_amount` is always
    amount + commission; every mutator recomputes it. A cancelled invoice
    stays cancelled no matter what payments arrive.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_invoices_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    commission = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_STATUS_PENDING, index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("invoice", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def target_amount(self):
        return (self.amount or 0) + (self.commission or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": money_str(self.amount),
            "commission": money_str(self.commission),
            "net_amount": money_str(self.net_amount),
            "status": self.status,
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class InvoicePayment(db.Model):
    """
    A payment recorded against an invoice.

    Append-only: never edited or deleted individually. The only delete path
    is removing the whole invoice together with its payments.
    """
    __tablename__ = "invoice_payments"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_invoice_payments_amount_positive"),
        db.Index("ix_invoice_payments_invoice_paid", "invoice_id", "paid_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    note = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship(
        "Invoice",
        backref=db.backref("payments", lazy=True, cascade="all, delete-orphan"),
    )
    creator = db.relationship("User", foreign_keys=[created_by])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount": money_str(self.amount),
            "payment_method": self.payment_method,
            "reference": self.reference,
            "note": self.note,
            "paid_at": to_utc_z(self.paid_at),
            "created_by": self.created_by,
            "created_by_username": self.creator.username if self.creator else None,
            "created_at": to_utc_z(self.created_at),
        }
