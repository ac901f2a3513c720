"""
Order timeline tests.

Verifies:
- Timeline ordering by (created_at, id)
- Legacy orders get exactly one persisted bootstrap event
"""

from datetime import datetime
from decimal import Decimal

import pytest

from pharmaconnect.errors import NotFound
from pharmaconnect.models import Order, OrderEvent
from pharmaconnect.services import event_service
from pharmaconnect.services.event_service import BOOTSTRAP_MESSAGE, append_order_event, get_order_timeline

from conftest import actor_for


@pytest.fixture
def legacy_order(db_session, pharmacy, warehouse):
    """An order written before the event log existed."""
    order = Order(
        pharmacy_id=pharmacy.id,
        warehouse_id=warehouse.id,
        status="shipped",
        total_amount=Decimal("10.00"),
        commission=Decimal("1.00"),
        created_at=datetime(2025, 11, 3, 8, 30),
    )
    db_session.add(order)
    db_session.commit()
    return order


class TestTimeline:

    def test_bootstrap_event_for_legacy_order(self, db_session, legacy_order):
        events = get_order_timeline(legacy_order.id)

        assert len(events) == 1
        event = events[0]
        assert event.event_type == "order_created"
        assert event.to_status == "shipped"
        assert event.actor_role == "system"
        assert event.message == BOOTSTRAP_MESSAGE
        assert event.meta == {"bootstrap": True, "reason": "legacy_order_no_events"}
        assert event.created_at == datetime(2025, 11, 3, 8, 30)

    def test_bootstrap_is_persisted_once(self, db_session, legacy_order):
        first = get_order_timeline(legacy_order.id)
        second = get_order_timeline(legacy_order.id)

        assert [e.id for e in first] == [e.id for e in second]
        assert db_session.query(OrderEvent).filter_by(order_id=legacy_order.id).count() == 1

    def test_bootstrap_check_runs_under_order_lock(self, db_session, legacy_order, monkeypatch):
        locked = []
        real_lock = event_service.lock_for_update

        def recording_lock(query):
            locked.append(query.column_descriptions[0]["entity"])
            return real_lock(query)

        monkeypatch.setattr(event_service, "lock_for_update", recording_lock)

        get_order_timeline(legacy_order.id)

        assert locked == [Order]

    def test_bootstrap_by_earlier_lock_holder_not_duplicated(self, db_session, legacy_order, monkeypatch):
        real_lock = event_service.lock_for_update

        def lock_after_other_reader(query):
            # Another reader held the lock first and wrote the bootstrap event
            append_order_event(
                order_id=legacy_order.id, event_type="order_created", message=BOOTSTRAP_MESSAGE, actor_role="system"
            )
            return real_lock(query)

        monkeypatch.setattr(event_service, "lock_for_update", lock_after_other_reader)

        events = get_order_timeline(legacy_order.id)

        assert len(events) == 1
        assert db_session.query(OrderEvent).filter_by(order_id=legacy_order.id).count() == 1

    def test_ordering_breaks_ties_by_id(self, db_session, legacy_order):
        stamp = datetime(2025, 11, 4, 10, 0)
        later = append_order_event(
            order_id=legacy_order.id, event_type="order_note_updated", message="b", occurred_at=stamp
        )
        earlier = append_order_event(
            order_id=legacy_order.id, event_type="order_created", message="a",
            occurred_at=datetime(2025, 11, 3, 8, 30),
        )
        tied = append_order_event(
            order_id=legacy_order.id, event_type="order_expected_delivery_updated", message="c", occurred_at=stamp
        )
        db_session.commit()

        events = get_order_timeline(legacy_order.id)

        assert [e.id for e in events] == [earlier.id, later.id, tied.id]

    def test_lifecycle_orders_need_no_bootstrap(self, place_order, product):
        order = place_order(product, 2)

        events = get_order_timeline(order.id)

        assert [e.event_type for e in events] == ["order_created"]
        assert events[0].meta["items_count"] == 1
        assert events[0].meta["invoice_id"] is not None
        assert "bootstrap" not in events[0].meta

    def test_actor_recorded(self, lifecycle, place_order, warehouse, product):
        order = place_order(product)
        lifecycle.change_status(actor_for(warehouse), order.id, "processing")

        last = get_order_timeline(order.id)[-1]

        assert last.actor_user_id == warehouse.id
        assert last.actor_role == "warehouse"
        assert (last.from_status, last.to_status) == ("pending", "processing")

    def test_missing_order(self, db_session):
        with pytest.raises(NotFound):
            get_order_timeline(999999)
