# Overview: Service-layer operations for returns; request, decision and completion of returned goods.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, Return, ReturnItem
from ..models.orders import ORDER_STATUS_DELIVERED
from ..models.returns import (
    RETURN_STATUS_PENDING,
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_REJECTED,
    RETURN_STATUS_COMPLETED,
)
from ..errors import (
    AlreadyExists,
    InvalidReturnTransition,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from ..permissions import (
    Actor,
    ROLE_PHARMACY,
    ensure_party,
    ensure_pharmacy_owner,
    ensure_warehouse_owner_or_admin,
    require_role,
)
from ..validation import parse_positive_int, require_text
from pharmaconnect.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .event_service import append_order_event, EVENT_RETURN_REQUESTED, EVENT_RETURN_STATUS_CHANGED
from .inventory_service import restore_return_stock
from .notification_service import NotificationDispatcher, TYPE_RETURN_REQUEST, TYPE_RETURN_UPDATE
"""
Marketplace Return Invariants (authoritative)

LIFECYCLE:
    pending  -> approved, rejected
    approved -> completed
    rejected, completed are terminal

- A return can only be requested for a delivered order, by its pharmacy.
- Only one open (pending or approved) return per order at a time.
- Per product, quantities across non-rejected returns never exceed the
  quantity ordered.
- Completion restores stock for every returned line in the same transaction.
- The parent order's status is never changed by a return.
"""


RETURN_STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RETURN_STATUS_PENDING: (RETURN_STATUS_APPROVED, RETURN_STATUS_REJECTED),
    RETURN_STATUS_APPROVED: (RETURN_STATUS_COMPLETED,),
    RETURN_STATUS_REJECTED: (),
    RETURN_STATUS_COMPLETED: (),
}

OPEN_RETURN_STATUSES = (RETURN_STATUS_PENDING, RETURN_STATUS_APPROVED)

RETURN_STATUS_MESSAGES = {
    RETURN_STATUS_APPROVED: "Your return request has been approved",
    RETURN_STATUS_REJECTED: "Your return request has been rejected",
    RETURN_STATUS_COMPLETED: "Your return has been completed",
}


def _parse_return_lines(items) -> list[tuple[int, int]]:
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one return item is required", field="items")
    merged: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each return item must be an object", field="items")
        product_id = parse_positive_int(raw.get("product_id"), "product_id")
        quantity = parse_positive_int(raw.get("quantity"), "quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def _already_returned(order_id: int) -> dict[int, int]:
    """Quantity per product already claimed by non-rejected returns of an order."""
    rows = (
        db.session.query(ReturnItem.product_id, func.sum(ReturnItem.quantity))
        .join(Return, ReturnItem.return_id == Return.id)
        .filter(Return.order_id == order_id, Return.status != RETURN_STATUS_REJECTED)
        .group_by(ReturnItem.product_id)
        .all()
    )
    return {product_id: int(qty or 0) for product_id, qty in rows}


def request_return(
    actor: Actor,
    order_id: int,
    reason,
    items,
    note: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> Return:
    """
    Open a return for a delivered order.

    Validation happens before anything is written: ownership, order status,
    open-return conflict and per-product quantity ceilings.
    """
    require_role(actor, ROLE_PHARMACY)
    reason = require_text(reason, "reason")
    lines = _parse_return_lines(items)
    note = (str(note).strip() or None) if note is not None else None
    dispatcher = dispatcher or NotificationDispatcher()

    def _op() -> Return:
        with unit_of_work() as hooks:
            order = lock_for_update(db.session.query(Order).filter(Order.id == order_id)).first()
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            ensure_pharmacy_owner(actor, order)
            if order.status != ORDER_STATUS_DELIVERED:
                raise InvalidTransition(
                    "Returns are only available after delivery",
                    from_status=order.status,
                    order_id=order.id,
                )

            open_return = (
                db.session.query(Return)
                .filter(Return.order_id == order.id, Return.status.in_(OPEN_RETURN_STATUSES))
                .first()
            )
            if open_return is not None:
                raise AlreadyExists(
                    "This order already has an open return",
                    order_id=order.id,
                    return_id=open_return.id,
                )

            ordered: dict[int, int] = {}
            for item in order.items:
                ordered[item.product_id] = ordered.get(item.product_id, 0) + item.quantity
            claimed = _already_returned(order.id)

            for product_id, quantity in lines:
                if product_id not in ordered:
                    raise ValidationError(
                        f"Product {product_id} is not part of this order",
                        field="product_id",
                        product_id=product_id,
                    )
                remaining = ordered[product_id] - claimed.get(product_id, 0)
                if quantity > remaining:
                    raise ValidationError(
                        f"Return quantity for product {product_id} exceeds the quantity ordered",
                        field="quantity",
                        product_id=product_id,
                        requested=quantity,
                        returnable=max(0, remaining),
                    )

            current = now or utcnow()
            return_request = Return(
                order_id=order.id,
                pharmacy_id=order.pharmacy_id,
                warehouse_id=order.warehouse_id,
                reason=reason,
                note=note,
                status=RETURN_STATUS_PENDING,
                created_at=current,
                updated_at=current,
            )
            db.session.add(return_request)
            db.session.flush()
            for product_id, quantity in lines:
                db.session.add(ReturnItem(return_id=return_request.id, product_id=product_id, quantity=quantity))

            append_order_event(
                order_id=order.id,
                event_type=EVENT_RETURN_REQUESTED,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                message="Return requested",
                meta={"return_id": return_request.id, "items_count": len(lines)},
                occurred_at=current,
            )
            hooks.add(
                dispatcher.notify,
                order.warehouse_id,
                TYPE_RETURN_REQUEST,
                "A new return request has been submitted",
                return_request.id,
                {"order_id": order.id, "return_id": return_request.id},
            )
        current_app.logger.info("Return %s requested for order %s", return_request.id, order_id)
        return return_request

    return run_with_retry(_op)


def change_return_status(
    actor: Actor,
    return_id: int,
    new_status: str,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> Return:
    """
    Warehouse (or admin) decision on a return.

    Completing restores stock for every returned line.
    """
    if new_status not in RETURN_STATUS_TRANSITIONS:
        raise ValidationError(f"Invalid return status: {new_status}", field="status")
    dispatcher = dispatcher or NotificationDispatcher()

    def _op() -> Return:
        with unit_of_work() as hooks:
            return_request = lock_for_update(db.session.query(Return).filter(Return.id == return_id)).first()
            if return_request is None:
                raise NotFound(f"Return {return_id} not found", return_id=return_id)
            ensure_warehouse_owner_or_admin(actor, return_request, "return")

            from_status = return_request.status
            if new_status not in RETURN_STATUS_TRANSITIONS.get(from_status, ()):
                raise InvalidReturnTransition(
                    f"Return status transition not allowed ({from_status} -> {new_status})",
                    from_status=from_status,
                    to_status=new_status,
                )

            current = now or utcnow()
            return_request.status = new_status
            return_request.updated_at = current
            if new_status == RETURN_STATUS_COMPLETED:
                restore_return_stock(return_request)

            append_order_event(
                order_id=return_request.order_id,
                event_type=EVENT_RETURN_STATUS_CHANGED,
                from_status=from_status,
                to_status=new_status,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                message=f"Return status changed to {new_status}",
                meta={"return_id": return_request.id, "return_status": new_status},
                occurred_at=current,
            )
            hooks.add(
                dispatcher.notify,
                return_request.pharmacy_id,
                TYPE_RETURN_UPDATE,
                RETURN_STATUS_MESSAGES[new_status],
                return_request.id,
                {"order_id": return_request.order_id, "return_id": return_request.id, "return_status": new_status},
            )
        return return_request

    return run_with_retry(_op)


def get_return(actor: Actor, return_id: int) -> Return:
    return_request = db.session.get(Return, return_id)
    if return_request is None:
        raise NotFound(f"Return {return_id} not found", return_id=return_id)
    ensure_party(actor, return_request, "return")
    return return_request


def list_returns(actor: Actor, status: str | None = None) -> list[Return]:
    query = db.session.query(Return)
    if actor.is_pharmacy:
        query = query.filter(Return.pharmacy_id == actor.user_id)
    elif actor.is_warehouse:
        query = query.filter(Return.warehouse_id == actor.user_id)
    if status:
        if status not in RETURN_STATUS_TRANSITIONS:
            raise ValidationError(f"Invalid return status: {status}", field="status")
        query = query.filter(Return.status == status)
    return query.order_by(Return.created_at.desc(), Return.id.desc()).all()
