# Overview: Flask API routes for order operations; parses input and returns JSON responses.

# backend/pharmaconnect/routes/orders.py
"""
Order Lifecycle API Routes

DESIGN:
- Pharmacies place orders against one warehouse; warehouses move them along
  pending -> processing -> shipped -> delivered (or cancel).
- DELETE is a soft delete (cancellation) bounded by the cancellation window
  for pharmacies.
- Every mutation is recorded on the order timeline.

SECURITY:
- Bearer token required on every endpoint
- Ownership checks happen in the services (party or admin)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import MarketplaceError, error_response, internal_error_response
from ..services import event_service, return_service
from ..services.order_service import serialize_order


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _lifecycle():
    return current_app.extensions["order_lifecycle"]


# =============================================================================
# CREATE / READ
# =============================================================================

@orders_bp.post("/")
@require_auth
def create_order_route():
    """
    Place a new order (status: pending).

    Available to: pharmacy

    Request body:
    {
        "warehouse_id": 2,
        "items": [{"product_id": 10, "quantity": 3}],
        "note": "Please deliver before noon",  (optional)
        "expected_delivery_date": "2026-01-10"  (optional)
    }

    Returns:
        201: Order created with its items and invoice
        400: Empty order or invalid input
        404: Product not in this warehouse
        409: Insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        order = _lifecycle().create_order(
            g.actor,
            data.get("warehouse_id"),
            data.get("items"),
            note=data.get("note"),
            expected_delivery_date=data.get("expected_delivery_date"),
        )
        return jsonify({"order": serialize_order(order, detail=True)}), 201

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return internal_error_response()


@orders_bp.get("/")
@require_auth
def list_orders_route():
    """List visible orders, newest first. Optional ?status= filter."""
    try:
        orders = _lifecycle().list_orders(g.actor, status=request.args.get("status"))
        return jsonify({"orders": [serialize_order(o) for o in orders]}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return internal_error_response()


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = _lifecycle().get_order(g.actor, order_id)
        return jsonify({"order": serialize_order(order, detail=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return internal_error_response()


@orders_bp.get("/<int:order_id>/timeline")
@require_auth
def get_order_timeline_route(order_id: int):
    """
    Ordered event history of an order.

    Orders created before event tracking get a single bootstrap event the
    first time their timeline is read.
    """
    try:
        _lifecycle().get_order(g.actor, order_id)
        events = event_service.get_order_timeline(order_id)
        return jsonify({"order_id": order_id, "timeline": [e.to_dict() for e in events]}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order timeline")
        return internal_error_response()


# =============================================================================
# LIFECYCLE
# =============================================================================

@orders_bp.put("/<int:order_id>/status")
@require_auth
def change_order_status_route(order_id: int):
    """
    Move an order to a new status.

    Available to: owning warehouse

    Request body:
    {
        "status": "processing"
    }

    Returns:
        200: Updated order
        400: Unknown status
        403: Not the owning warehouse
        409: Transition not allowed
    """
    try:
        data = request.get_json(silent=True) or {}
        order = _lifecycle().change_status(g.actor, order_id, data.get("status"))
        return jsonify({"order": serialize_order(order, detail=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to change order status")
        return internal_error_response()


@orders_bp.delete("/<int:order_id>")
@require_auth
def delete_order_route(order_id: int):
    """
    Soft-delete (cancel) a pending order.

    Available to: ordering pharmacy (within the cancellation window),
    owning warehouse, admin

    Returns:
        200: Order cancelled and flagged deleted
        403: Not a party to the order
        409: Not pending, already deleted, or window expired
    """
    try:
        order = _lifecycle().cancel_order(g.actor, order_id)
        return jsonify({"order": serialize_order(order, detail=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return internal_error_response()


@orders_bp.put("/<int:order_id>/notes")
@require_auth
def update_order_note_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = _lifecycle().update_note(g.actor, order_id, data.get("note"))
        return jsonify({"order": serialize_order(order)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order note")
        return internal_error_response()


@orders_bp.put("/<int:order_id>/expected-delivery")
@require_auth
def update_expected_delivery_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = _lifecycle().update_expected_delivery(g.actor, order_id, data.get("expected_delivery_date"))
        return jsonify({"order": serialize_order(order)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update expected delivery date")
        return internal_error_response()


# =============================================================================
# RETURNS
# =============================================================================

@orders_bp.post("/<int:order_id>/returns")
@require_auth
def request_return_route(order_id: int):
    """
    Request a return for a delivered order.

    Available to: ordering pharmacy

    Request body:
    {
        "reason": "Damaged packaging",
        "note": "Two boxes crushed",  (optional)
        "items": [{"product_id": 10, "quantity": 2}]
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        return_request = return_service.request_return(
            g.actor,
            order_id,
            data.get("reason"),
            data.get("items"),
            note=data.get("note"),
            dispatcher=_lifecycle().dispatcher,
        )
        return jsonify({"return": return_request.to_dict(include_items=True)}), 201

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to request return")
        return internal_error_response()
