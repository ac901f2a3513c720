# Overview: Service-layer operations for the order event log; append and timeline reads.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import Order, OrderEvent
from ..errors import NotFound
from .concurrency import lock_for_update, unit_of_work
from pharmaconnect.time_utils import utcnow
"""
Order Event Log Invariants (authoritative)

- Append-only audit trail; rows are never updated or deleted.
- Exactly one event per state-changing command; related facts go in `meta`.
- Events are written inside the same DB transaction as the change they record.
- Timeline order is (created_at ASC, id ASC).
- Orders that predate the log get one persisted bootstrap event, once.
"""


# =============================================================================
# EVENT TYPES
# =============================================================================

EVENT_ORDER_CREATED = "order_created"
EVENT_ORDER_STATUS_CHANGED = "order_status_changed"
EVENT_ORDER_CANCELLED = "order_cancelled"
EVENT_ORDER_DELETED = "order_deleted"
EVENT_ORDER_NOTE_UPDATED = "order_note_updated"
EVENT_ORDER_EXPECTED_DELIVERY_UPDATED = "order_expected_delivery_updated"
EVENT_RETURN_REQUESTED = "return_requested"
EVENT_RETURN_STATUS_CHANGED = "return_status_changed"
EVENT_INVOICE_PAYMENT_RECORDED = "invoice_payment_recorded"
EVENT_INVOICE_UPDATED = "invoice_updated"
EVENT_INVOICE_DELETED = "invoice_deleted"

BOOTSTRAP_MESSAGE = "Tracking history created for this order"


def append_order_event(
    *,
    order_id: int,
    event_type: str,
    message: str,
    from_status: str | None = None,
    to_status: str | None = None,
    actor_user_id: int | None = None,
    actor_role: str | None = None,
    meta: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> OrderEvent:
    """
    Append-only order event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Flushes so the id is assigned; the caller's unit of work commits.
    """
    ev = OrderEvent(
        order_id=order_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_user_id,
        actor_role=actor_role,
        message=message,
        meta=meta,
        created_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def _timeline_query(order_id: int):
    return (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
    )


def get_order_timeline(order_id: int) -> list[OrderEvent]:
    """
    Ordered event history for an order.

    Legacy orders with no events get a single bootstrap `order_created` event
    stamped with the order's own created_at. The emptiness check runs under
    the order row lock and the event is committed before returning, so
    concurrent or later reads never synthesize a second one.
    """
    with unit_of_work():
        order = lock_for_update(db.session.query(Order).filter(Order.id == order_id)).first()
        if not order:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)

        if _timeline_query(order_id).first() is None:
            append_order_event(
                order_id=order.id,
                event_type=EVENT_ORDER_CREATED,
                to_status=order.status or "pending",
                actor_role="system",
                message=BOOTSTRAP_MESSAGE,
                meta={"bootstrap": True, "reason": "legacy_order_no_events"},
                occurred_at=order.created_at,
            )

    return _timeline_query(order_id).all()
