# Overview: Service-layer invoice reconciliation; payments, status sync, admin edits and financial reports.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Invoice, InvoicePayment, Order
from ..models.invoices import (
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_CANCELLED,
    VALID_INVOICE_STATUSES,
)
from ..models.orders import ORDER_STATUS_CANCELLED, ORDER_STATUS_DELIVERED
from ..errors import InvoiceCancelled, NotFound, ValidationError
from ..permissions import Actor, ROLE_ADMIN, ROLE_WAREHOUSE, ensure_party, ensure_warehouse_owner_or_admin, require_role
from ..validation import ModelValidationPolicy, parse_amount, parse_optional_datetime, validate_payload
from pharmaconnect.money import money_str, quantize_money, to_decimal
from pharmaconnect.time_utils import utcnow, to_utc_z
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .event_service import (
    append_order_event,
    EVENT_INVOICE_PAYMENT_RECORDED,
    EVENT_INVOICE_UPDATED,
    EVENT_INVOICE_DELETED,
)
"""
Marketplace Invoice Invariants (authoritative)

- One invoice per order, created in the order's own transaction with
  amount = order total, commission = order commission, status = pending.
- net_amount == amount + commission after every mutation.
- target = amount + commission. Outside of explicit overrides:
    status == paid  <=>  SUM(payments) >= target AND target > 0 AND not cancelled
- cancelled is sticky: payment sync never moves an invoice out of it, and a
  cancelled invoice refuses new payments.
- Payments are append-only; they disappear only together with their invoice.
- Order-driven overrides: delivery force-settles to paid, cancellation
  cancels. Sync does not touch amount, commission or net_amount.
"""


INVOICE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"status", "amount", "commission", "net_amount"},
    choices={"status": VALID_INVOICE_STATUSES},
)

PAYMENT_METHOD_MAX = 32
REFERENCE_MAX = 128


# =============================================================================
# STATUS HOUSEKEEPING
# =============================================================================

def _apply_status(invoice: Invoice, status: str, now: datetime) -> None:
    """Set status together with the timestamps that belong to it."""
    invoice.status = status
    if status == INVOICE_STATUS_PAID:
        invoice.paid_at = now
        invoice.cancelled_at = None
    elif status == INVOICE_STATUS_CANCELLED:
        invoice.cancelled_at = now
        invoice.paid_at = None
    else:
        invoice.paid_at = None
        invoice.cancelled_at = None


def _recompute_net(invoice: Invoice) -> None:
    invoice.net_amount = quantize_money(to_decimal(invoice.amount) + to_decimal(invoice.commission))


def get_total_paid(invoice_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(InvoicePayment.amount), 0))
        .filter(InvoicePayment.invoice_id == invoice_id)
        .scalar()
    )
    return quantize_money(total)


def sync_invoice_status(invoice: Invoice, now: datetime | None = None) -> str:
    """
    Re-derive a non-cancelled invoice's status from its payments.

    Only status, paid_at and cancelled_at may change. A cancelled invoice is
    returned untouched.
    """
    if invoice.status == INVOICE_STATUS_CANCELLED:
        return invoice.status

    target = to_decimal(invoice.target_amount)
    total_paid = get_total_paid(invoice.id)
    status = INVOICE_STATUS_PAID if total_paid >= target and target > 0 else INVOICE_STATUS_PENDING

    if status != invoice.status:
        if status == INVOICE_STATUS_PAID:
            invoice.status = INVOICE_STATUS_PAID
            invoice.paid_at = now or utcnow()
            invoice.cancelled_at = None
        else:
            invoice.status = INVOICE_STATUS_PENDING
            invoice.paid_at = None
    return invoice.status


# =============================================================================
# ORDER-DRIVEN HOOKS (called inside the order's unit of work)
# =============================================================================

def create_invoice_for_order(order: Order, now: datetime | None = None) -> Invoice:
    amount = quantize_money(order.total_amount)
    commission = quantize_money(order.commission)
    invoice = Invoice(
        order_id=order.id,
        amount=amount,
        commission=commission,
        net_amount=amount + commission,
        status=INVOICE_STATUS_PENDING,
        created_at=now or utcnow(),
    )
    db.session.add(invoice)
    db.session.flush()
    return invoice


def _invoice_for_order(order: Order) -> Invoice | None:
    query = db.session.query(Invoice).filter(Invoice.order_id == order.id)
    return lock_for_update(query).first()


def cancel_invoice_for_order(order: Order, now: datetime | None = None) -> Invoice | None:
    """Cancel the order's invoice. Orders whose invoice was deleted are skipped."""
    invoice = _invoice_for_order(order)
    if invoice is not None:
        _apply_status(invoice, INVOICE_STATUS_CANCELLED, now or utcnow())
    return invoice


def settle_invoice_for_order(order: Order, now: datetime | None = None) -> Invoice | None:
    """
    Force the order's invoice to paid on delivery, whatever has been paid so
    far. A later payment re-derives the status from payments again.
    """
    invoice = _invoice_for_order(order)
    if invoice is not None:
        _apply_status(invoice, INVOICE_STATUS_PAID, now or utcnow())
    return invoice


# =============================================================================
# COMMANDS
# =============================================================================

def _load_invoice(invoice_id: int, *, lock: bool = False) -> Invoice:
    query = db.session.query(Invoice).filter(Invoice.id == invoice_id)
    if lock:
        query = lock_for_update(query)
    invoice = query.first()
    if invoice is None:
        raise NotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return invoice


def _optional_text(value, field: str, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)
    return text


def record_payment(
    actor: Actor,
    invoice_id: int,
    amount,
    payment_method: str | None = None,
    reference: str | None = None,
    note: str | None = None,
    paid_at=None,
    now: datetime | None = None,
) -> InvoicePayment:
    """
    Record a (partial) payment and re-derive the invoice status.

    Payments arrive over time from outside the platform; the invoice is only
    paid once their running total covers amount + commission.
    """
    amount = parse_amount(amount, "amount")
    payment_method = _optional_text(payment_method, "payment_method", PAYMENT_METHOD_MAX)
    reference = _optional_text(reference, "reference", REFERENCE_MAX)
    note = _optional_text(note, "note")
    paid_at = parse_optional_datetime(paid_at, "paid_at")

    def _op() -> InvoicePayment:
        with unit_of_work():
            invoice = _load_invoice(invoice_id, lock=True)
            ensure_warehouse_owner_or_admin(actor, invoice.order)
            if invoice.status == INVOICE_STATUS_CANCELLED:
                raise InvoiceCancelled(
                    "Cannot record a payment on a cancelled invoice",
                    invoice_id=invoice.id,
                )

            current = now or utcnow()
            payment = InvoicePayment(
                invoice_id=invoice.id,
                amount=amount,
                payment_method=payment_method,
                reference=reference,
                note=note,
                paid_at=paid_at or current,
                created_by=actor.user_id,
                created_at=current,
            )
            db.session.add(payment)
            db.session.flush()

            status = sync_invoice_status(invoice, current)
            total_paid = get_total_paid(invoice.id)

            append_order_event(
                order_id=invoice.order_id,
                event_type=EVENT_INVOICE_PAYMENT_RECORDED,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                message=f"Payment of {money_str(amount)} recorded",
                meta={
                    "invoice_id": invoice.id,
                    "payment_id": payment.id,
                    "amount": money_str(amount),
                    "total_paid": money_str(total_paid),
                    "invoice_status": status,
                },
                occurred_at=current,
            )
        current_app.logger.info(
            "Payment %s recorded on invoice %s (status=%s)", payment.id, invoice_id, status
        )
        return payment

    return run_with_retry(_op)


def update_invoice(actor: Actor, invoice_id: int, payload: dict, now: datetime | None = None) -> Invoice:
    """
    Administrative override of status, amount and commission.

    net_amount in the payload is accepted but never trusted; it is always
    recomputed from amount + commission.
    """
    patch = validate_payload(model=Invoice, payload=payload, policy=INVOICE_UPDATE_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")

    def _op() -> Invoice:
        with unit_of_work():
            invoice = _load_invoice(invoice_id, lock=True)
            ensure_warehouse_owner_or_admin(actor, invoice.order)

            current = now or utcnow()
            previous_status = invoice.status
            changes = {}

            if "status" in patch:
                _apply_status(invoice, patch["status"], current)
                changes["status"] = patch["status"]
            if "amount" in patch:
                invoice.amount = patch["amount"]
                changes["amount"] = money_str(patch["amount"])
            if "commission" in patch:
                invoice.commission = patch["commission"]
                changes["commission"] = money_str(patch["commission"])
            _recompute_net(invoice)
            changes["net_amount"] = money_str(invoice.net_amount)

            append_order_event(
                order_id=invoice.order_id,
                event_type=EVENT_INVOICE_UPDATED,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                message="Invoice updated",
                meta={"invoice_id": invoice.id, "previous_status": previous_status, "changes": changes},
                occurred_at=current,
            )
        return invoice

    return run_with_retry(_op)


def delete_invoice(actor: Actor, invoice_id: int, now: datetime | None = None) -> None:
    """Remove an invoice together with all of its payments."""

    def _op() -> None:
        with unit_of_work():
            invoice = _load_invoice(invoice_id, lock=True)
            ensure_warehouse_owner_or_admin(actor, invoice.order)

            order_id = invoice.order_id
            payments_count = len(invoice.payments)
            db.session.query(InvoicePayment).filter(InvoicePayment.invoice_id == invoice.id).delete(
                synchronize_session=False
            )
            db.session.expire(invoice, ["payments"])
            db.session.delete(invoice)

            append_order_event(
                order_id=order_id,
                event_type=EVENT_INVOICE_DELETED,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                message="Invoice deleted",
                meta={"invoice_id": invoice_id, "payments_deleted": payments_count},
                occurred_at=now or utcnow(),
            )
        current_app.logger.info("Invoice %s deleted by %s %s", invoice_id, actor.role, actor.user_id)

    run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def payment_summary(invoice: Invoice) -> dict:
    row = (
        db.session.query(
            func.coalesce(func.sum(InvoicePayment.amount), 0),
            func.count(InvoicePayment.id),
            func.max(InvoicePayment.paid_at),
        )
        .filter(InvoicePayment.invoice_id == invoice.id)
        .one()
    )
    total_paid = quantize_money(row[0])
    target = quantize_money(invoice.target_amount)
    return {
        "total_paid": money_str(total_paid),
        "payments_count": int(row[1] or 0),
        "last_payment_at": to_utc_z(row[2]) if isinstance(row[2], datetime) else row[2],
        "remaining": money_str(max(Decimal("0"), target - total_paid)),
    }


def serialize_invoice(invoice: Invoice, *, with_summary: bool = False) -> dict:
    data = invoice.to_dict()
    order = invoice.order
    data["order_status"] = order.status if order else None
    data["pharmacy_id"] = order.pharmacy_id if order else None
    data["warehouse_id"] = order.warehouse_id if order else None
    data["pharmacy_name"] = order.pharmacy.username if order and order.pharmacy else None
    data["warehouse_name"] = order.warehouse.username if order and order.warehouse else None
    if with_summary:
        data["payment_summary"] = payment_summary(invoice)
    return data


def get_invoice(actor: Actor, invoice_id: int) -> Invoice:
    invoice = _load_invoice(invoice_id)
    ensure_party(actor, invoice.order, "invoice")
    return invoice


def list_payments(actor: Actor, invoice_id: int) -> list[InvoicePayment]:
    invoice = get_invoice(actor, invoice_id)
    return (
        db.session.query(InvoicePayment)
        .filter(InvoicePayment.invoice_id == invoice.id)
        .order_by(InvoicePayment.paid_at.desc(), InvoicePayment.id.desc())
        .all()
    )


def list_invoices(actor: Actor) -> list[Invoice]:
    """Admin sees every invoice; parties see invoices of their own orders."""
    query = db.session.query(Invoice).join(Order, Invoice.order_id == Order.id)
    if actor.is_pharmacy:
        query = query.filter(Order.pharmacy_id == actor.user_id)
    elif actor.is_warehouse:
        query = query.filter(Order.warehouse_id == actor.user_id)
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()


def platform_stats(actor: Actor) -> dict:
    require_role(actor, ROLE_ADMIN)
    row = (
        db.session.query(
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.amount), 0),
            func.coalesce(func.sum(Invoice.commission), 0),
            func.coalesce(func.sum(Invoice.amount + Invoice.commission), 0),
        )
        .join(Order, Invoice.order_id == Order.id)
        .filter(Order.status != ORDER_STATUS_CANCELLED)
        .one()
    )
    return {
        "total_invoices": int(row[0] or 0),
        "total_amount": money_str(row[1]),
        "total_commission": money_str(row[2]),
        "total_net": money_str(row[3]),
    }


def warehouse_stats(actor: Actor) -> dict:
    require_role(actor, ROLE_WAREHOUSE)
    row = (
        db.session.query(
            func.count(Order.id),
            func.coalesce(func.sum(Order.total_amount), 0),
            func.coalesce(func.sum(Order.commission), 0),
            func.coalesce(func.sum(Order.total_amount + Order.commission), 0),
        )
        .filter(Order.warehouse_id == actor.user_id, Order.status == ORDER_STATUS_DELIVERED)
        .one()
    )
    return {
        "total_orders": int(row[0] or 0),
        "total_sales": money_str(row[1]),
        "total_commission": money_str(row[2]),
        "net_earnings": money_str(row[3]),
    }


def _period_bounds(year: int | None, month: int | None) -> tuple[datetime | None, datetime | None]:
    if year is None:
        return None, None
    if month is not None and 1 <= month <= 12:
        start = datetime(year, month, 1)
        end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        return start, end
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def financial_report(actor: Actor, year: int | None = None, month: int | None = None) -> dict:
    """
    Gross/commission/net totals plus a per-month breakdown.

    Paid net per invoice is capped at its target, so overpayments never
    inflate the collected figure.
    """
    require_role(actor, ROLE_ADMIN)
    start, end = _period_bounds(year, month)

    paid = (
        db.session.query(
            InvoicePayment.invoice_id.label("invoice_id"),
            func.sum(InvoicePayment.amount).label("total_paid"),
        )
        .group_by(InvoicePayment.invoice_id)
        .subquery()
    )
    query = db.session.query(Invoice, paid.c.total_paid).outerjoin(paid, paid.c.invoice_id == Invoice.id)
    if start is not None:
        query = query.filter(Invoice.created_at >= start, Invoice.created_at < end)

    summary = {
        "invoices_count": 0,
        "gross_amount": Decimal("0"),
        "total_commission": Decimal("0"),
        "net_amount": Decimal("0"),
        "net_paid_amount": Decimal("0"),
    }
    by_month: dict[str, dict] = {}

    for invoice, total_paid in query.all():
        amount = to_decimal(invoice.amount)
        commission = to_decimal(invoice.commission)
        target = amount + commission
        paid_net = min(to_decimal(total_paid), target)

        summary["invoices_count"] += 1
        summary["gross_amount"] += amount
        summary["total_commission"] += commission
        summary["net_amount"] += target
        summary["net_paid_amount"] += paid_net

        period = invoice.created_at.strftime("%Y-%m") if invoice.created_at else "unknown"
        bucket = by_month.setdefault(
            period,
            {"period": period, "invoices_count": 0, "net_amount": Decimal("0"), "paid_net_amount": Decimal("0")},
        )
        bucket["invoices_count"] += 1
        bucket["net_amount"] += target
        bucket["paid_net_amount"] += paid_net

    months = []
    for period in sorted(by_month, reverse=True):
        bucket = by_month[period]
        months.append({
            "period": period,
            "invoices_count": bucket["invoices_count"],
            "net_amount": money_str(bucket["net_amount"]),
            "paid_net_amount": money_str(bucket["paid_net_amount"]),
        })

    return {
        "summary": {
            "invoices_count": summary["invoices_count"],
            "gross_amount": money_str(summary["gross_amount"]),
            "total_commission": money_str(summary["total_commission"]),
            "net_amount": money_str(summary["net_amount"]),
            "net_paid_amount": money_str(summary["net_paid_amount"]),
        },
        "by_month": months,
    }
