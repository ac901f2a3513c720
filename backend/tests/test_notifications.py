"""
Notification tests.

Verifies:
- Post-commit hooks never undo or fail a committed command
- SMS copies only for users with a phone number
- Inbox reads and read markers
"""

import pytest

from pharmaconnect.errors import NotFound
from pharmaconnect.models import Notification, Order
from pharmaconnect.services import notification_service
from pharmaconnect.services.concurrency import PostCommitHooks, unit_of_work
from pharmaconnect.services.notification_service import NotificationDispatcher

from conftest import actor_for


class ExplodingDispatcher(NotificationDispatcher):

    def notify(self, *args, **kwargs):
        raise RuntimeError("push gateway down")


class TestPostCommitHooks:

    def test_failing_hook_does_not_fail_the_order(self, db_session, lifecycle, place_order, product):
        lifecycle.dispatcher = ExplodingDispatcher()

        order = place_order(product, 2)

        assert db_session.get(Order, order.id).status == "pending"
        assert db_session.query(Notification).count() == 0

    def test_failing_hook_does_not_stop_the_others(self, app, db_session):
        calls = []
        hooks = PostCommitHooks()
        hooks.add(lambda: calls.append("first"))
        hooks.add(lambda: 1 / 0)
        hooks.add(lambda: calls.append("third"))

        hooks.run()

        assert calls == ["first", "third"]
        assert len(hooks) == 0

    def test_hooks_skipped_on_rollback(self, db_session):
        calls = []

        with pytest.raises(ValueError):
            with unit_of_work() as hooks:
                hooks.add(lambda: calls.append("ran"))
                raise ValueError("boom")

        assert calls == []


class TestDispatcher:

    def test_sms_only_with_phone(self, db_session, pharmacy, warehouse):
        dispatcher = NotificationDispatcher()

        assert dispatcher.queue_sms(warehouse.id, "hello") is None
        queued = dispatcher.queue_sms(pharmacy.id, "hello", 7, {"order_id": 7})

        assert queued.type == "sms_queued"
        assert queued.message == "[SMS Queue] hello"
        assert queued.meta == {"order_id": 7}


class TestInbox:

    def test_list_and_mark_read(self, db_session, pharmacy, other_pharmacy):
        dispatcher = NotificationDispatcher()
        first = dispatcher.notify(pharmacy.id, "order_update", "one", 1)
        dispatcher.notify(pharmacy.id, "order_update", "two", 2)
        dispatcher.notify(other_pharmacy.id, "order_update", "not yours", 3)

        assert notification_service.unread_count(pharmacy.id) == 2

        notification_service.mark_read(pharmacy.id, first.id)

        unread = notification_service.list_notifications(pharmacy.id, unread_only=True)
        assert [n.message for n in unread] == ["two"]
        assert notification_service.mark_all_read(pharmacy.id) == 1
        assert notification_service.unread_count(pharmacy.id) == 0
        assert notification_service.unread_count(other_pharmacy.id) == 1

    def test_cannot_mark_someone_elses(self, db_session, pharmacy, other_pharmacy):
        foreign = NotificationDispatcher().notify(other_pharmacy.id, "order_update", "x")

        with pytest.raises(NotFound):
            notification_service.mark_read(pharmacy.id, foreign.id)

    def test_newest_first(self, db_session, lifecycle, place_order, warehouse, product):
        first = place_order(product)
        second = place_order(product)

        inbox = notification_service.list_notifications(warehouse.id)

        assert [n.related_id for n in inbox] == [second.id, first.id]
