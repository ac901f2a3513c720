# Overview: Flask API routes for invoice operations; parses input and returns JSON responses.

# backend/pharmaconnect/routes/invoices.py
"""
Invoice & Payment API Routes

DESIGN:
- One invoice per order, created with the order
- Payments are recorded over time; the invoice flips to paid once they
  cover amount + commission
- Admin/warehouse overrides for status and amounts; net is always derived
- Platform and warehouse statistics, monthly financial report

SECURITY:
- Parties of the order (and admins) may read an invoice
- Only the owning warehouse or an admin may record payments or edit/delete
- Stats and reports are admin-only, my-stats is warehouse-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import MarketplaceError, ValidationError, error_response, internal_error_response
from ..services import invoice_service


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


def _optional_int_arg(name: str) -> int | None:
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", field=name)


# =============================================================================
# LISTS & REPORTS
# =============================================================================

@invoices_bp.get("/")
@require_auth
def list_invoices_route():
    try:
        invoices = invoice_service.list_invoices(g.actor)
        return jsonify({"invoices": [invoice_service.serialize_invoice(i) for i in invoices]}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list invoices")
        return internal_error_response()


@invoices_bp.get("/stats")
@require_auth
def platform_stats_route():
    try:
        return jsonify({"stats": invoice_service.platform_stats(g.actor)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get invoice stats")
        return internal_error_response()


@invoices_bp.get("/my-stats")
@require_auth
def warehouse_stats_route():
    try:
        return jsonify({"stats": invoice_service.warehouse_stats(g.actor)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get warehouse stats")
        return internal_error_response()


@invoices_bp.get("/reports/financial")
@require_auth
def financial_report_route():
    """
    Financial report, optionally narrowed to ?year= or ?year=&month=.

    Returns:
        200: {"summary": {...}, "by_month": [...]}
    """
    try:
        report = invoice_service.financial_report(
            g.actor,
            year=_optional_int_arg("year"),
            month=_optional_int_arg("month"),
        )
        return jsonify(report), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build financial report")
        return internal_error_response()


# =============================================================================
# SINGLE INVOICE
# =============================================================================

@invoices_bp.get("/<int:invoice_id>")
@require_auth
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        return jsonify({"invoice": invoice_service.serialize_invoice(invoice, with_summary=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get invoice")
        return internal_error_response()


@invoices_bp.put("/<int:invoice_id>")
@require_auth
def update_invoice_route(invoice_id: int):
    """
    Override invoice status and/or amounts.

    Request body (any subset):
    {
        "status": "pending" | "paid" | "cancelled",
        "amount": "100.00",
        "commission": "10.00"
    }
    """
    try:
        data = request.get_json(silent=True)
        invoice = invoice_service.update_invoice(g.actor, invoice_id, data)
        return jsonify({"invoice": invoice_service.serialize_invoice(invoice, with_summary=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update invoice")
        return internal_error_response()


@invoices_bp.delete("/<int:invoice_id>")
@require_auth
def delete_invoice_route(invoice_id: int):
    try:
        invoice_service.delete_invoice(g.actor, invoice_id)
        return jsonify({"deleted": True, "invoice_id": invoice_id}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return internal_error_response()


# =============================================================================
# PAYMENTS
# =============================================================================

@invoices_bp.get("/<int:invoice_id>/payments")
@require_auth
def list_payments_route(invoice_id: int):
    try:
        payments = invoice_service.list_payments(g.actor, invoice_id)
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        return jsonify({
            "invoice_id": invoice_id,
            "payments": [p.to_dict() for p in payments],
            "summary": invoice_service.payment_summary(invoice),
        }), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list invoice payments")
        return internal_error_response()


@invoices_bp.post("/<int:invoice_id>/payments")
@require_auth
def record_payment_route(invoice_id: int):
    """
    Record a payment against an invoice.

    Request body:
    {
        "amount": "50.00",
        "payment_method": "bank_transfer",  (optional)
        "reference": "TRX-123",  (optional)
        "note": "First instalment",  (optional)
        "paid_at": "2026-01-05T10:00:00Z"  (optional, default now)
    }

    Returns:
        201: Payment recorded, invoice re-synced
        400: Invalid amount
        403: Not the owning warehouse or an admin
        409: Invoice cancelled
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = invoice_service.record_payment(
            g.actor,
            invoice_id,
            data.get("amount"),
            payment_method=data.get("payment_method"),
            reference=data.get("reference"),
            note=data.get("note"),
            paid_at=data.get("paid_at"),
        )
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        return jsonify({
            "payment": payment.to_dict(),
            "invoice": invoice_service.serialize_invoice(invoice, with_summary=True),
        }), 201

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record invoice payment")
        return internal_error_response()
