# Overview: Service-layer order lifecycle; creation, status transitions, cancellation and annotations.

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from ..extensions import db
from ..config import OrderPolicy
from ..models import Order, OrderItem, User
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
)
from ..errors import (
    CancellationWindowExpired,
    EmptyOrder,
    Forbidden,
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from ..permissions import (
    Actor,
    ROLE_PHARMACY,
    ROLE_WAREHOUSE,
    ensure_party,
    ensure_warehouse_owner,
    is_pharmacy_owner,
    is_warehouse_owner,
    require_role,
)
from ..validation import parse_optional_datetime, parse_positive_int, require_text
from pharmaconnect.money import money_str, quantize_money
from pharmaconnect.time_utils import utcnow, to_utc_z
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .event_service import (
    append_order_event,
    EVENT_ORDER_CREATED,
    EVENT_ORDER_STATUS_CHANGED,
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_DELETED,
    EVENT_ORDER_NOTE_UPDATED,
    EVENT_ORDER_EXPECTED_DELIVERY_UPDATED,
)
from .inventory_service import get_product_for_warehouse, reserve_stock, restore_order_stock
from .invoice_service import cancel_invoice_for_order, create_invoice_for_order, settle_invoice_for_order
from .notification_service import (
    NotificationDispatcher,
    ORDER_STATUS_MESSAGES,
    TYPE_NEW_ORDER,
    TYPE_ORDER_UPDATE,
)
from .pricing_service import order_totals, price_product_line
"""
Marketplace Order Lifecycle Invariants (authoritative)

Transitions (directed, no self-loops, terminals have no edges):
    pending    -> processing, cancelled
    processing -> shipped, cancelled
    shipped    -> delivered

- Every command is one unit of work: validation, row lock, mutation, exactly
  one OrderEvent, then commit. Notifications run only after the commit.
- Creating an order reserves stock for every line and creates its invoice in
  the same transaction; any failure leaves no trace.
- Cancelling (status change or soft delete) restores every reserved unit and
  cancels the invoice. Delivery force-settles the invoice.
- A soft-deleted order is frozen: it can still be read, never mutated.
"""


STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    ORDER_STATUS_PENDING: (ORDER_STATUS_PROCESSING, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PROCESSING: (ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_SHIPPED: (ORDER_STATUS_DELIVERED,),
    ORDER_STATUS_DELIVERED: (),
    ORDER_STATUS_CANCELLED: (),
}

VALID_ORDER_STATUSES = set(STATUS_TRANSITIONS)


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in STATUS_TRANSITIONS.get(from_status, ())


def validate_transition(from_status: str, to_status: str) -> None:
    if to_status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {to_status}", field="status")
    if not can_transition(from_status, to_status):
        raise InvalidTransition(
            f"Order status transition not allowed ({from_status} -> {to_status})",
            from_status=from_status,
            to_status=to_status,
        )


def _parse_order_lines(items) -> list[tuple[int, int]]:
    """
    Normalize raw order lines into (product_id, quantity) pairs.

    Repeated product ids are merged by summing quantities; first appearance
    decides line order.
    """
    if not isinstance(items, list) or not items:
        raise EmptyOrder("An order needs at least one item")

    merged: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object", field="items")
        product_id = parse_positive_int(raw.get("product_id", raw.get("id")), "product_id")
        quantity = parse_positive_int(raw.get("quantity"), "quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def _load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter(Order.id == order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return order


def _ensure_not_deleted(order: Order, to_status: str | None = None) -> None:
    if order.is_deleted:
        raise InvalidTransition(
            "Order has been deleted and can no longer be modified",
            from_status=order.status,
            to_status=to_status,
            order_id=order.id,
        )


class OrderLifecycle:
    """
    Order state machine.

    Built once by the app factory with the process-wide OrderPolicy, the
    notification dispatcher and a clock. Tests swap the clock to move time
    around the cancellation window.
    """

    def __init__(
        self,
        policy: OrderPolicy,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.policy = policy
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.clock = clock

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_order(
        self,
        actor: Actor,
        warehouse_id,
        items,
        note: str | None = None,
        expected_delivery_date=None,
    ) -> Order:
        """
        Place a pending order for one warehouse.

        Fail-fast checks run before any write: party roles, line shape,
        product ownership and available stock. The conditional stock UPDATE
        re-checks availability at write time, so a concurrent order that
        drained the product still aborts this one cleanly.
        """
        require_role(actor, ROLE_PHARMACY)

        try:
            warehouse_id = parse_positive_int(warehouse_id, "warehouse_id")
        except ValidationError:
            raise EmptyOrder("A valid warehouse is required", warehouse_id=warehouse_id)
        lines = _parse_order_lines(items)
        expected = parse_optional_datetime(expected_delivery_date, "expected_delivery_date")
        note = (str(note).strip() or None) if note is not None else None

        def _op() -> Order:
            with unit_of_work() as hooks:
                warehouse = db.session.get(User, warehouse_id)
                if warehouse is None or warehouse.role != ROLE_WAREHOUSE or not warehouse.is_active:
                    raise EmptyOrder("Warehouse not found", warehouse_id=warehouse_id)

                priced = []
                for product_id, quantity in lines:
                    product = get_product_for_warehouse(warehouse_id, product_id)
                    if product.quantity < quantity:
                        raise InsufficientStock(
                            f"Insufficient stock for {product.name}",
                            product_id=product.id,
                            available=product.quantity,
                            requested=quantity,
                        )
                    priced.append((product, quantity, price_product_line(product, quantity)))

                # Summed from stored unit prices: quantize(sum(price * quantity)) == invoice amount
                total, commission = order_totals(
                    [pricing.effective_unit_price * quantity for _, quantity, pricing in priced],
                    self.policy.commission_rate,
                )
                now = self.clock()
                cancellable_until = now + self.policy.cancellation_window

                order = Order(
                    pharmacy_id=actor.user_id,
                    warehouse_id=warehouse_id,
                    status=ORDER_STATUS_PENDING,
                    total_amount=total,
                    commission=commission,
                    cancellable_until=cancellable_until,
                    expected_delivery_date=expected,
                    pharmacy_note=note,
                    created_at=now,
                    updated_at=now,
                )
                db.session.add(order)
                db.session.flush()

                for product, quantity, pricing in priced:
                    db.session.add(OrderItem(
                        order_id=order.id,
                        product_id=product.id,
                        quantity=quantity,
                        price=pricing.effective_unit_price,
                        line_total=quantize_money(pricing.line_total),
                    ))
                    reserve_stock(product.id, quantity)

                invoice = create_invoice_for_order(order, now=now)

                total_quantity = sum(quantity for _, quantity, _ in priced)
                append_order_event(
                    order_id=order.id,
                    event_type=EVENT_ORDER_CREATED,
                    to_status=ORDER_STATUS_PENDING,
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    message="Order placed",
                    meta={
                        "cancellable_until": to_utc_z(cancellable_until),
                        "expected_delivery_date": to_utc_z(expected),
                        "items_count": len(priced),
                        "invoice_id": invoice.id,
                    },
                    occurred_at=now,
                )

                hooks.add(
                    self.dispatcher.notify,
                    warehouse_id,
                    TYPE_NEW_ORDER,
                    "You have a new order from a pharmacy",
                    order.id,
                    {
                        "order_id": order.id,
                        "order_status": ORDER_STATUS_PENDING,
                        "total_amount": money_str(total),
                        "items_count": len(priced),
                        "total_quantity": total_quantity,
                        "expected_delivery_date": to_utc_z(expected),
                    },
                )
            current_app.logger.info(
                "Order %s created by pharmacy %s for warehouse %s", order.id, actor.user_id, warehouse_id
            )
            return order

        return run_with_retry(_op)

    # =========================================================================
    # STATUS
    # =========================================================================

    def change_status(self, actor: Actor, order_id: int, new_status: str) -> Order:
        """
        Move an order along the transition table. Warehouse owner only.

        cancelled -> stock restored, invoice cancelled (sticky)
        delivered -> invoice force-settled regardless of recorded payments
        """
        if new_status not in VALID_ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {new_status}", field="status")
        require_role(actor, ROLE_WAREHOUSE)

        def _op() -> Order:
            with unit_of_work() as hooks:
                order = _load_order(order_id, lock=True)
                ensure_warehouse_owner(actor, order)
                _ensure_not_deleted(order, new_status)

                from_status = order.status
                validate_transition(from_status, new_status)

                now = self.clock()
                order.status = new_status
                order.updated_at = now

                if new_status == ORDER_STATUS_CANCELLED:
                    restore_order_stock(order)
                    cancel_invoice_for_order(order, now=now)
                    event_type = EVENT_ORDER_CANCELLED
                    message = "Order cancelled"
                else:
                    if new_status == ORDER_STATUS_DELIVERED:
                        settle_invoice_for_order(order, now=now)
                    event_type = EVENT_ORDER_STATUS_CHANGED
                    message = f"Order status changed from {from_status} to {new_status}"

                append_order_event(
                    order_id=order.id,
                    event_type=event_type,
                    from_status=from_status,
                    to_status=new_status,
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    message=message,
                    occurred_at=now,
                )

                notify_message = ORDER_STATUS_MESSAGES.get(new_status, "Your order status has been updated")
                metadata = {
                    "order_id": order.id,
                    "order_status": new_status,
                    "previous_status": from_status,
                    "total_amount": money_str(order.total_amount),
                    "expected_delivery_date": to_utc_z(order.expected_delivery_date),
                }
                hooks.add(self.dispatcher.notify, order.pharmacy_id, TYPE_ORDER_UPDATE, notify_message, order.id, metadata)
                hooks.add(self.dispatcher.queue_sms, order.pharmacy_id, notify_message, order.id, metadata)
            return order

        return run_with_retry(_op)

    # =========================================================================
    # CANCEL / SOFT DELETE
    # =========================================================================

    def cancellation_deadline(self, order: Order) -> datetime:
        """
        Last moment a pharmacy may cancel its own order.

        Orders with a missing or inconsistent cancellable_until (at or before
        created_at) fall back to created_at + window.
        """
        deadline = order.cancellable_until
        if deadline is None or (order.created_at is not None and deadline <= order.created_at):
            deadline = order.created_at + self.policy.cancellation_window
        return deadline

    def cancel_order(self, actor: Actor, order_id: int, source: str = "delete_endpoint") -> Order:
        """
        Soft-delete a pending order.

        Any party (or an admin) may cancel; only the pharmacy is bound by the
        cancellation window. The row stays for audit with is_deleted set.
        """

        def _op() -> Order:
            with unit_of_work() as hooks:
                order = _load_order(order_id, lock=True)
                ensure_party(actor, order)
                _ensure_not_deleted(order, ORDER_STATUS_CANCELLED)
                if order.status != ORDER_STATUS_PENDING:
                    raise InvalidTransition(
                        "Only pending orders can be deleted",
                        from_status=order.status,
                        to_status=ORDER_STATUS_CANCELLED,
                    )

                now = self.clock()
                if is_pharmacy_owner(actor, order):
                    deadline = self.cancellation_deadline(order)
                    if now > deadline:
                        raise CancellationWindowExpired(
                            "The cancellation window for this order has expired",
                            order_id=order.id,
                            deadline=to_utc_z(deadline),
                        )

                restore_order_stock(order)
                cancel_invoice_for_order(order, now=now)

                order.status = ORDER_STATUS_CANCELLED
                order.is_deleted = True
                order.deleted_at = now
                order.updated_at = now

                append_order_event(
                    order_id=order.id,
                    event_type=EVENT_ORDER_DELETED,
                    from_status=ORDER_STATUS_PENDING,
                    to_status=ORDER_STATUS_CANCELLED,
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    message="Order deleted (soft delete)",
                    meta={"source": source, "soft_delete": True},
                    occurred_at=now,
                )

                metadata = {"order_id": order.id, "order_status": ORDER_STATUS_CANCELLED}
                if not is_pharmacy_owner(actor, order):
                    hooks.add(
                        self.dispatcher.notify,
                        order.pharmacy_id,
                        TYPE_ORDER_UPDATE,
                        ORDER_STATUS_MESSAGES[ORDER_STATUS_CANCELLED],
                        order.id,
                        metadata,
                    )
                if not is_warehouse_owner(actor, order):
                    hooks.add(
                        self.dispatcher.notify,
                        order.warehouse_id,
                        TYPE_ORDER_UPDATE,
                        f"Order #{order.id} was cancelled",
                        order.id,
                        metadata,
                    )
            current_app.logger.info("Order %s soft-deleted by %s %s", order.id, actor.role, actor.user_id)
            return order

        return run_with_retry(_op)

    # =========================================================================
    # ANNOTATIONS
    # =========================================================================

    def update_note(self, actor: Actor, order_id: int, note) -> Order:
        """Pharmacy owner writes pharmacy_note, warehouse owner writes warehouse_note."""
        note = require_text(note, "note")

        def _op() -> Order:
            with unit_of_work():
                order = _load_order(order_id, lock=True)
                if is_pharmacy_owner(actor, order):
                    field = "pharmacy_note"
                elif is_warehouse_owner(actor, order):
                    field = "warehouse_note"
                else:
                    raise Forbidden("Only the order's pharmacy or warehouse may add notes", order_id=order.id)
                _ensure_not_deleted(order)

                now = self.clock()
                setattr(order, field, note)
                order.updated_at = now
                append_order_event(
                    order_id=order.id,
                    event_type=EVENT_ORDER_NOTE_UPDATED,
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    message="Order note added or updated",
                    meta={"note_field": field},
                    occurred_at=now,
                )
            return order

        return run_with_retry(_op)

    def update_expected_delivery(self, actor: Actor, order_id: int, value) -> Order:
        """Warehouse owner sets or clears the expected delivery date."""
        expected = parse_optional_datetime(value or None, "expected_delivery_date")

        def _op() -> Order:
            with unit_of_work():
                order = _load_order(order_id, lock=True)
                ensure_warehouse_owner(actor, order)
                _ensure_not_deleted(order)

                now = self.clock()
                order.expected_delivery_date = expected
                order.updated_at = now
                append_order_event(
                    order_id=order.id,
                    event_type=EVENT_ORDER_EXPECTED_DELIVERY_UPDATED,
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    message="Expected delivery date updated",
                    meta={"expected_delivery_date": to_utc_z(expected)},
                    occurred_at=now,
                )
            return order

        return run_with_retry(_op)

    # =========================================================================
    # READS
    # =========================================================================

    def get_order(self, actor: Actor, order_id: int) -> Order:
        order = _load_order(order_id)
        ensure_party(actor, order)
        return order

    def list_orders(self, actor: Actor, status: str | None = None) -> list[Order]:
        """Visible, non-deleted orders for the actor, newest first."""
        query = db.session.query(Order).filter(Order.is_deleted.is_(False))
        if actor.is_pharmacy:
            query = query.filter(Order.pharmacy_id == actor.user_id)
        elif actor.is_warehouse:
            query = query.filter(Order.warehouse_id == actor.user_id)

        if status:
            if status not in VALID_ORDER_STATUSES:
                raise ValidationError(f"Invalid order status: {status}", field="status")
            query = query.filter(Order.status == status)

        return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def serialize_order(order: Order, *, detail: bool = False) -> dict:
    data = order.to_dict()
    data["pharmacy_name"] = order.pharmacy.username if order.pharmacy else None
    data["warehouse_name"] = order.warehouse.username if order.warehouse else None
    data["items"] = [item.to_dict() for item in order.items]
    if detail:
        data["invoice"] = order.invoice.to_dict() if order.invoice else None
        data["returns"] = [r.to_dict() for r in order.returns]
    return data
