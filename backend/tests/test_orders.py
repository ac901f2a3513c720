"""
Order lifecycle tests.

Verifies:
- Order creation prices lines, reserves stock and opens the invoice atomically
- Transition table (no self-loops, terminal states stay terminal)
- Cancellation window for the ordering pharmacy
- Cancelled and soft-deleted orders give their stock back
- Soft-deleted orders are frozen
"""

from datetime import datetime
from decimal import Decimal

import pytest

from pharmaconnect.errors import (
    CancellationWindowExpired,
    EmptyOrder,
    Forbidden,
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from pharmaconnect.models import Invoice, Notification, Order, OrderEvent, OrderItem, Product
from pharmaconnect.money import quantize_money
from pharmaconnect.services import order_service
from pharmaconnect.services.order_service import can_transition, validate_transition

from conftest import actor_for, create_product


def _stock(session, product_id: int) -> int:
    return session.get(Product, product_id).quantity


def _event_types(session, order_id: int) -> list[str]:
    rows = (
        session.query(OrderEvent)
        .filter(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.created_at, OrderEvent.id)
        .all()
    )
    return [e.event_type for e in rows]


# =============================================================================
# TRANSITION TABLE
# =============================================================================


class TestTransitionTable:

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "processing"),
            ("pending", "cancelled"),
            ("processing", "shipped"),
            ("processing", "cancelled"),
            ("shipped", "delivered"),
        ],
    )
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "pending"),
            ("pending", "shipped"),
            ("shipped", "cancelled"),
            ("delivered", "pending"),
            ("delivered", "cancelled"),
            ("cancelled", "pending"),
        ],
    )
    def test_rejected(self, from_status, to_status):
        assert not can_transition(from_status, to_status)
        with pytest.raises(InvalidTransition):
            validate_transition(from_status, to_status)

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError):
            validate_transition("pending", "lost")


# =============================================================================
# CREATE
# =============================================================================


class TestCreateOrder:

    def test_discounted_bonus_line(self, db_session, lifecycle, pharmacy, warehouse):
        offer = create_product(
            db_session, warehouse, name="Amoxicillin", price="100.00", quantity=10,
            discount_percent="10", bonus_buy_quantity=2, bonus_free_quantity=1,
        )

        order = lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": offer.id, "quantity": 3}])

        assert order.status == "pending"
        assert order.total_amount == Decimal("180.00")
        assert order.commission == Decimal("18.00")
        item = order.items[0]
        assert item.quantity == 3
        assert Decimal(item.price) == Decimal("60")
        assert item.line_total == Decimal("180.00")
        assert _stock(db_session, offer.id) == 7

    def test_invoice_created_with_order(self, db_session, lifecycle, pharmacy, warehouse, product):
        order = lifecycle.create_order(
            actor_for(pharmacy), warehouse.id, [{"product_id": product.id, "quantity": 5}]
        )

        invoice = db_session.query(Invoice).filter_by(order_id=order.id).one()
        assert invoice.status == "pending"
        assert invoice.amount == Decimal("50.00")
        assert invoice.commission == Decimal("5.00")
        assert invoice.net_amount == Decimal("55.00")

    def test_line_totals_sum_to_invoice_amount(self, db_session, lifecycle, pharmacy, warehouse):
        first = create_product(db_session, warehouse, name="A", price="12.40", quantity=50)
        second = create_product(
            db_session, warehouse, name="B", price="20.00", quantity=50,
            discount_percent="25", bonus_buy_quantity=3, bonus_free_quantity=1,
        )

        order = lifecycle.create_order(
            actor_for(pharmacy),
            warehouse.id,
            [{"product_id": first.id, "quantity": 3}, {"product_id": second.id, "quantity": 8}],
        )

        line_sum = sum((item.line_total for item in order.items), Decimal("0"))
        assert line_sum == Decimal("127.20")
        assert order.invoice.amount == line_sum

    @pytest.mark.parametrize(
        "price,buy,free,quantity,amount",
        [
            ("1.00", 2, 1, 7, "5.00"),
            ("9.99", 5, 2, 13, "109.89"),
        ],
    )
    def test_item_prices_reproduce_invoice_amount(
        self, db_session, lifecycle, pharmacy, warehouse, price, buy, free, quantity, amount
    ):
        offer = create_product(
            db_session, warehouse, name="Bonus pack", price=price, quantity=50,
            bonus_buy_quantity=buy, bonus_free_quantity=free,
        )

        order = lifecycle.create_order(
            actor_for(pharmacy), warehouse.id, [{"product_id": offer.id, "quantity": quantity}]
        )

        item_sum = sum((Decimal(item.price) * item.quantity for item in order.items), Decimal("0"))
        assert item_sum != Decimal(amount)
        assert quantize_money(item_sum) == order.invoice.amount == Decimal(amount)

    def test_item_prices_reproduce_invoice_amount_across_lines(self, db_session, lifecycle, pharmacy, warehouse):
        first = create_product(
            db_session, warehouse, name="A", price="1.00", quantity=50, bonus_buy_quantity=2, bonus_free_quantity=1,
        )
        second = create_product(
            db_session, warehouse, name="B", price="9.99", quantity=50,
            discount_percent="15", bonus_buy_quantity=5, bonus_free_quantity=2,
        )

        order = lifecycle.create_order(
            actor_for(pharmacy),
            warehouse.id,
            [{"product_id": first.id, "quantity": 7}, {"product_id": second.id, "quantity": 13}],
        )

        item_sum = sum((Decimal(item.price) * item.quantity for item in order.items), Decimal("0"))
        assert quantize_money(item_sum) == order.invoice.amount
        assert order.total_amount == order.invoice.amount

    def test_duplicate_lines_are_merged(self, db_session, lifecycle, pharmacy, warehouse, product):
        order = lifecycle.create_order(
            actor_for(pharmacy),
            warehouse.id,
            [{"product_id": product.id, "quantity": 2}, {"id": product.id, "quantity": 3}],
        )

        assert len(order.items) == 1
        assert order.items[0].quantity == 5
        assert _stock(db_session, product.id) == 95

    def test_records_created_event_and_notifies_warehouse(self, db_session, lifecycle, pharmacy, warehouse, product):
        order = lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": product.id, "quantity": 1}])

        assert _event_types(db_session, order.id) == ["order_created"]
        notification = db_session.query(Notification).filter_by(user_id=warehouse.id).one()
        assert notification.type == "new_order"
        assert notification.related_id == order.id
        assert notification.meta["items_count"] == 1

    def test_empty_items_rejected(self, lifecycle, pharmacy, warehouse):
        with pytest.raises(EmptyOrder):
            lifecycle.create_order(actor_for(pharmacy), warehouse.id, [])

    def test_missing_warehouse_rejected(self, lifecycle, pharmacy, product):
        with pytest.raises(EmptyOrder):
            lifecycle.create_order(actor_for(pharmacy), None, [{"product_id": product.id, "quantity": 1}])

    def test_pharmacy_is_not_a_warehouse(self, lifecycle, pharmacy, other_pharmacy, product):
        with pytest.raises(EmptyOrder):
            lifecycle.create_order(actor_for(pharmacy), other_pharmacy.id, [{"product_id": product.id, "quantity": 1}])

    def test_non_positive_quantity_rejected(self, lifecycle, pharmacy, warehouse, product):
        with pytest.raises(ValidationError):
            lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": product.id, "quantity": 0}])

    def test_only_pharmacies_order(self, lifecycle, warehouse, product):
        with pytest.raises(Forbidden):
            lifecycle.create_order(actor_for(warehouse), warehouse.id, [{"product_id": product.id, "quantity": 1}])

    def test_product_from_other_warehouse(self, db_session, lifecycle, pharmacy, warehouse, other_warehouse):
        foreign = create_product(db_session, other_warehouse, name="Foreign")

        with pytest.raises(NotFound):
            lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": foreign.id, "quantity": 1}])

    def test_insufficient_stock_leaves_no_trace(self, db_session, lifecycle, pharmacy, warehouse, product):
        scarce = create_product(db_session, warehouse, name="Scarce", quantity=2)

        with pytest.raises(InsufficientStock):
            lifecycle.create_order(
                actor_for(pharmacy),
                warehouse.id,
                [{"product_id": product.id, "quantity": 4}, {"product_id": scarce.id, "quantity": 3}],
            )

        assert db_session.query(Order).count() == 0
        assert db_session.query(Invoice).count() == 0
        assert _stock(db_session, product.id) == 100
        assert _stock(db_session, scarce.id) == 2

    def test_failed_reservation_rolls_back_earlier_lines(
        self, db_session, lifecycle, pharmacy, warehouse, product, monkeypatch
    ):
        second = create_product(db_session, warehouse, name="Second", quantity=10)
        real_reserve = order_service.reserve_stock

        def reserve_then_lose_race(product_id, quantity):
            if product_id == second.id:
                raise InsufficientStock("Concurrent order took the stock", product_id=product_id)
            real_reserve(product_id, quantity)

        monkeypatch.setattr(order_service, "reserve_stock", reserve_then_lose_race)

        with pytest.raises(InsufficientStock):
            lifecycle.create_order(
                actor_for(pharmacy),
                warehouse.id,
                [{"product_id": product.id, "quantity": 7}, {"product_id": second.id, "quantity": 1}],
            )

        assert db_session.query(Order).count() == 0
        assert db_session.query(OrderItem).count() == 0
        assert db_session.query(OrderEvent).count() == 0
        assert _stock(db_session, product.id) == 100

    def test_last_units_can_only_be_sold_once(self, db_session, lifecycle, pharmacy, other_pharmacy, warehouse):
        last = create_product(db_session, warehouse, name="Last", quantity=3)

        lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": last.id, "quantity": 3}])
        with pytest.raises(InsufficientStock):
            lifecycle.create_order(actor_for(other_pharmacy), warehouse.id, [{"product_id": last.id, "quantity": 1}])

        assert _stock(db_session, last.id) == 0

    def test_cancellable_until_uses_window(self, lifecycle, clock, pharmacy, warehouse, product):
        order = lifecycle.create_order(actor_for(pharmacy), warehouse.id, [{"product_id": product.id, "quantity": 1}])

        assert order.created_at == clock.now
        assert (order.cancellable_until - order.created_at).total_seconds() == 120 * 60


# =============================================================================
# STATUS CHANGES
# =============================================================================


class TestChangeStatus:

    def test_full_happy_path_settles_invoice(self, db_session, place_order, deliver, product):
        order = place_order(product, 2)

        delivered = deliver(order.id)

        assert delivered.status == "delivered"
        invoice = db_session.query(Invoice).filter_by(order_id=order.id).one()
        assert invoice.status == "paid"
        assert invoice.paid_at is not None
        assert _event_types(db_session, order.id) == [
            "order_created",
            "order_status_changed",
            "order_status_changed",
            "order_status_changed",
        ]

    def test_delivered_cannot_go_back_to_pending(self, lifecycle, place_order, deliver, warehouse, product):
        order = place_order(product)
        deliver(order.id)

        with pytest.raises(InvalidTransition) as exc:
            lifecycle.change_status(actor_for(warehouse), order.id, "pending")

        assert exc.value.from_status == "delivered"
        assert exc.value.to_status == "pending"

    def test_cancel_restores_stock_and_cancels_invoice(self, db_session, lifecycle, place_order, warehouse, product):
        order = place_order(product, 6)
        lifecycle.change_status(actor_for(warehouse), order.id, "processing")
        assert _stock(db_session, product.id) == 94

        lifecycle.change_status(actor_for(warehouse), order.id, "cancelled")

        assert _stock(db_session, product.id) == 100
        invoice = db_session.query(Invoice).filter_by(order_id=order.id).one()
        assert invoice.status == "cancelled"
        assert invoice.cancelled_at is not None
        assert _event_types(db_session, order.id)[-1] == "order_cancelled"

    def test_pharmacy_notified_with_sms_copy(self, db_session, lifecycle, place_order, pharmacy, warehouse, product):
        order = place_order(product)

        lifecycle.change_status(actor_for(warehouse), order.id, "processing")

        rows = db_session.query(Notification).filter_by(user_id=pharmacy.id).order_by(Notification.id).all()
        assert [n.type for n in rows] == ["order_update", "sms_queued"]
        assert rows[0].message == "Your order is being prepared"
        assert rows[1].message == "[SMS Queue] Your order is being prepared"
        assert rows[0].meta["previous_status"] == "pending"

    def test_only_owning_warehouse(self, lifecycle, place_order, pharmacy, other_warehouse, product):
        order = place_order(product)

        with pytest.raises(Forbidden):
            lifecycle.change_status(actor_for(other_warehouse), order.id, "processing")
        with pytest.raises(Forbidden):
            lifecycle.change_status(actor_for(pharmacy), order.id, "processing")

    def test_invalid_status_value(self, lifecycle, place_order, warehouse, product):
        order = place_order(product)

        with pytest.raises(ValidationError):
            lifecycle.change_status(actor_for(warehouse), order.id, "teleported")

    def test_missing_order(self, lifecycle, warehouse):
        with pytest.raises(NotFound):
            lifecycle.change_status(actor_for(warehouse), 999999, "processing")


# =============================================================================
# CANCELLATION WINDOW / SOFT DELETE
# =============================================================================


class TestCancelOrder:

    def test_pharmacy_cannot_cancel_after_window(self, db_session, lifecycle, clock, place_order, pharmacy, product):
        order = place_order(product, 4)
        clock.advance(minutes=121)

        with pytest.raises(CancellationWindowExpired):
            lifecycle.cancel_order(actor_for(pharmacy), order.id)

        assert _stock(db_session, product.id) == 96
        assert db_session.get(Order, order.id).is_deleted is False

    def test_pharmacy_cancels_within_window(self, db_session, lifecycle, clock, place_order, pharmacy, product):
        order = place_order(product, 4)
        clock.advance(minutes=119)

        cancelled = lifecycle.cancel_order(actor_for(pharmacy), order.id)

        assert cancelled.status == "cancelled"
        assert cancelled.is_deleted is True
        assert cancelled.deleted_at == clock.now
        assert _stock(db_session, product.id) == 100
        invoice = db_session.query(Invoice).filter_by(order_id=order.id).one()
        assert invoice.status == "cancelled"
        assert _event_types(db_session, order.id) == ["order_created", "order_deleted"]

    def test_warehouse_not_bound_by_window(self, db_session, lifecycle, clock, place_order, pharmacy, warehouse, product):
        order = place_order(product, 1)
        clock.advance(days=2)

        lifecycle.cancel_order(actor_for(warehouse), order.id)

        notification = db_session.query(Notification).filter_by(user_id=pharmacy.id).one()
        assert notification.message == "Your order has been cancelled"

    def test_inconsistent_deadline_falls_back_to_window(self, db_session, lifecycle, clock, place_order, pharmacy, product):
        order = place_order(product, 1)
        stored = db_session.get(Order, order.id)
        stored.cancellable_until = stored.created_at
        db_session.commit()
        clock.advance(minutes=60)

        lifecycle.cancel_order(actor_for(pharmacy), order.id)

        assert db_session.get(Order, order.id).is_deleted is True

    def test_only_pending_orders(self, lifecycle, place_order, pharmacy, warehouse, product):
        order = place_order(product)
        lifecycle.change_status(actor_for(warehouse), order.id, "processing")

        with pytest.raises(InvalidTransition):
            lifecycle.cancel_order(actor_for(pharmacy), order.id)

    def test_strangers_forbidden(self, lifecycle, place_order, other_pharmacy, product):
        order = place_order(product)

        with pytest.raises(Forbidden):
            lifecycle.cancel_order(actor_for(other_pharmacy), order.id)

    def test_deleted_order_is_frozen(self, lifecycle, place_order, pharmacy, warehouse, product):
        order = place_order(product)
        lifecycle.cancel_order(actor_for(pharmacy), order.id)

        with pytest.raises(InvalidTransition):
            lifecycle.cancel_order(actor_for(pharmacy), order.id)
        with pytest.raises(InvalidTransition):
            lifecycle.change_status(actor_for(warehouse), order.id, "processing")
        with pytest.raises(InvalidTransition):
            lifecycle.update_note(actor_for(pharmacy), order.id, "too late")

    def test_deleted_order_hidden_from_lists_but_readable(self, lifecycle, place_order, pharmacy, product):
        kept = place_order(product)
        gone = place_order(product)
        lifecycle.cancel_order(actor_for(pharmacy), gone.id)

        listed = lifecycle.list_orders(actor_for(pharmacy))

        assert [o.id for o in listed] == [kept.id]
        assert lifecycle.get_order(actor_for(pharmacy), gone.id).is_deleted is True


# =============================================================================
# ANNOTATIONS / READS
# =============================================================================


class TestAnnotationsAndReads:

    def test_notes_go_to_the_authors_field(self, db_session, lifecycle, place_order, pharmacy, warehouse, product):
        order = place_order(product)

        lifecycle.update_note(actor_for(pharmacy), order.id, "Leave at back door")
        lifecycle.update_note(actor_for(warehouse), order.id, "Packed in two boxes")

        stored = db_session.get(Order, order.id)
        assert stored.pharmacy_note == "Leave at back door"
        assert stored.warehouse_note == "Packed in two boxes"
        assert _event_types(db_session, order.id).count("order_note_updated") == 2

    def test_admin_cannot_write_notes(self, lifecycle, place_order, admin, product):
        order = place_order(product)

        with pytest.raises(Forbidden):
            lifecycle.update_note(actor_for(admin), order.id, "hello")

    def test_blank_note_rejected(self, lifecycle, place_order, pharmacy, product):
        order = place_order(product)

        with pytest.raises(ValidationError):
            lifecycle.update_note(actor_for(pharmacy), order.id, "   ")

    def test_expected_delivery_set_and_cleared(self, db_session, lifecycle, place_order, pharmacy, warehouse, product):
        order = place_order(product)

        lifecycle.update_expected_delivery(actor_for(warehouse), order.id, "2026-03-01")
        assert db_session.get(Order, order.id).expected_delivery_date == datetime(2026, 3, 1)

        lifecycle.update_expected_delivery(actor_for(warehouse), order.id, None)
        assert db_session.get(Order, order.id).expected_delivery_date is None

        with pytest.raises(Forbidden):
            lifecycle.update_expected_delivery(actor_for(pharmacy), order.id, "2026-03-02")

    def test_list_scoped_to_party(self, db_session, lifecycle, place_order, other_pharmacy, warehouse, other_warehouse, admin, product):
        mine = place_order(product)
        foreign_product = create_product(db_session, other_warehouse, name="Foreign")
        theirs = lifecycle.create_order(
            actor_for(other_pharmacy), other_warehouse.id, [{"product_id": foreign_product.id, "quantity": 1}]
        )

        assert [o.id for o in lifecycle.list_orders(actor_for(warehouse))] == [mine.id]
        assert [o.id for o in lifecycle.list_orders(actor_for(other_pharmacy))] == [theirs.id]
        assert {o.id for o in lifecycle.list_orders(actor_for(admin))} == {mine.id, theirs.id}

    def test_list_filters_by_status(self, lifecycle, place_order, pharmacy, warehouse, product):
        first = place_order(product)
        place_order(product)
        lifecycle.change_status(actor_for(warehouse), first.id, "processing")

        processing = lifecycle.list_orders(actor_for(pharmacy), status="processing")

        assert [o.id for o in processing] == [first.id]
        with pytest.raises(ValidationError):
            lifecycle.list_orders(actor_for(pharmacy), status="bogus")

    def test_get_order_requires_party(self, lifecycle, place_order, other_pharmacy, admin, product):
        order = place_order(product)

        assert lifecycle.get_order(actor_for(admin), order.id).id == order.id
        with pytest.raises(Forbidden):
            lifecycle.get_order(actor_for(other_pharmacy), order.id)
