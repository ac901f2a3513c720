# Overview: Flask API routes for warehouse ratings.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import MarketplaceError, error_response, internal_error_response
from ..services import rating_service


ratings_bp = Blueprint("ratings", __name__, url_prefix="/api/ratings")


@ratings_bp.post("/")
@require_auth
def rate_order_route():
    try:
        data = request.get_json(silent=True) or {}
        rating = rating_service.rate_order(
            g.actor,
            data.get("order_id"),
            data.get("rating"),
            comment=data.get("comment"),
            warehouse_id=data.get("warehouse_id"),
            dispatcher=current_app.extensions["order_lifecycle"].dispatcher,
        )
        return jsonify({"rating": rating.to_dict()}), 201

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add rating")
        return internal_error_response()


@ratings_bp.get("/warehouse/<int:warehouse_id>")
@require_auth
def warehouse_ratings_route(warehouse_id: int):
    try:
        return jsonify(rating_service.warehouse_ratings(warehouse_id)), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list warehouse ratings")
        return internal_error_response()
