# Overview: Service-layer operations for warehouse ratings.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Order, Rating, User
from ..errors import AlreadyExists, NotFound, ValidationError
from ..permissions import Actor, ROLE_PHARMACY, ROLE_WAREHOUSE, ensure_pharmacy_owner, require_role
from ..validation import parse_positive_int
from pharmaconnect.time_utils import utcnow
from .concurrency import unit_of_work
from .notification_service import NotificationDispatcher

TYPE_NEW_RATING = "new_rating"


def _parse_rating(value) -> int:
    try:
        rating = parse_positive_int(value, "rating")
    except ValidationError:
        raise ValidationError("rating must be an integer between 1 and 5", field="rating")
    if rating > 5:
        raise ValidationError("rating must be an integer between 1 and 5", field="rating")
    return rating


def rate_order(
    actor: Actor,
    order_id,
    rating,
    comment: str | None = None,
    warehouse_id=None,
    dispatcher: NotificationDispatcher | None = None,
) -> Rating:
    """One rating per order, by the pharmacy that placed it."""
    require_role(actor, ROLE_PHARMACY)
    order_id = parse_positive_int(order_id, "order_id")
    rating = _parse_rating(rating)
    comment = (str(comment).strip() or None) if comment is not None else None
    dispatcher = dispatcher or NotificationDispatcher()

    with unit_of_work() as hooks:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        ensure_pharmacy_owner(actor, order)
        if warehouse_id is not None and parse_positive_int(warehouse_id, "warehouse_id") != order.warehouse_id:
            raise NotFound(f"Order {order_id} not found for this warehouse", order_id=order_id)

        if db.session.query(Rating.id).filter(Rating.order_id == order.id).first() is not None:
            raise AlreadyExists("This order has already been rated", order_id=order.id)

        row = Rating(
            order_id=order.id,
            pharmacy_id=actor.user_id,
            warehouse_id=order.warehouse_id,
            rating=rating,
            comment=comment,
            created_at=utcnow(),
        )
        db.session.add(row)
        db.session.flush()
        hooks.add(dispatcher.notify, order.warehouse_id, TYPE_NEW_RATING, "You have a new rating from a pharmacy", row.id)
    return row


def warehouse_ratings(warehouse_id: int) -> dict:
    warehouse = db.session.get(User, warehouse_id)
    if warehouse is None or warehouse.role != ROLE_WAREHOUSE:
        raise NotFound(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)

    ratings = (
        db.session.query(Rating)
        .filter(Rating.warehouse_id == warehouse_id)
        .order_by(Rating.created_at.desc(), Rating.id.desc())
        .all()
    )
    average = db.session.query(func.avg(Rating.rating)).filter(Rating.warehouse_id == warehouse_id).scalar()
    return {
        "warehouse_id": warehouse_id,
        "average": round(float(average), 2) if average is not None else None,
        "count": len(ratings),
        "ratings": [r.to_dict() for r in ratings],
    }
