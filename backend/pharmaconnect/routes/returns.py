# Overview: Flask API routes for return operations; parses input and returns JSON responses.

# backend/pharmaconnect/routes/returns.py
"""
Return Processing API Routes

Returns are requested through POST /api/orders/<id>/returns; this blueprint
lists them and carries the warehouse decision workflow:
pending -> approved|rejected, approved -> completed (stock restored).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import MarketplaceError, error_response, internal_error_response
from ..services import return_service


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.get("/")
@require_auth
def list_returns_route():
    """List visible returns, newest first. Optional ?status= filter."""
    try:
        returns = return_service.list_returns(g.actor, status=request.args.get("status"))
        return jsonify({"returns": [r.to_dict() for r in returns]}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list returns")
        return internal_error_response()


@returns_bp.get("/<int:return_id>")
@require_auth
def get_return_route(return_id: int):
    try:
        return_request = return_service.get_return(g.actor, return_id)
        return jsonify({"return": return_request.to_dict(include_items=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get return")
        return internal_error_response()


@returns_bp.put("/<int:return_id>/status")
@require_auth
def change_return_status_route(return_id: int):
    """
    Approve, reject or complete a return.

    Available to: owning warehouse, admin

    Request body:
    {
        "status": "approved"
    }

    Returns:
        200: Updated return
        400: Unknown status
        403: Not the owning warehouse
        409: Transition not allowed
    """
    try:
        data = request.get_json(silent=True) or {}
        return_request = return_service.change_return_status(
            g.actor,
            return_id,
            data.get("status"),
            dispatcher=current_app.extensions["order_lifecycle"].dispatcher,
        )
        return jsonify({"return": return_request.to_dict(include_items=True)}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to change return status")
        return internal_error_response()
