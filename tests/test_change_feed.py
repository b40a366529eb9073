"""
Change feed tests: push delivery on commit, poll detection of inserts
and updates, and isolation of subscriber failures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from equiptrack.models import db
from equiptrack.models.inventory import EquipmentItem
from equiptrack.services.change_feed import (
    ChangeEvent,
    PollingChangeFeed,
    PushChangeFeed,
    init_change_feed,
)


@pytest.fixture()
def push_feed(app):
    feed = app.extensions["change_feed"]
    assert isinstance(feed, PushChangeFeed)
    feed.start()
    received = []
    callback = feed.subscribe(received.append)
    yield feed, received
    feed.unsubscribe(callback)
    feed.stop()


# ═════════════════════════════════════════════════════════════════════════════
# Push
# ═════════════════════════════════════════════════════════════════════════════


class TestPushFeed:
    def test_testing_config_does_not_autostart(self, app):
        feed = app.extensions["change_feed"]
        assert feed.mode == "push"
        assert feed.running is False

    def test_insert_delivered_after_commit(self, push_feed, make_equipment):
        feed, received = push_feed
        eq = make_equipment()
        inventory_events = [e for e in received if e.table == "inventory"]
        assert inventory_events == [
            ChangeEvent(table="inventory", entity_id=eq.id, operation="insert",
                        occurred_at=inventory_events[0].occurred_at),
        ]

    def test_update_delivered(self, push_feed, make_equipment):
        eq = make_equipment()
        feed, received = push_feed
        received.clear()

        eq.condition_status = "Damaged"
        db.session.commit()

        assert [(e.table, e.entity_id, e.operation) for e in received] == [("inventory", eq.id, "update")]

    def test_rollback_discards_events(self, push_feed, make_equipment):
        feed, received = push_feed
        eq = EquipmentItem(item_code="RB-1", item_name="Rolled back", value=1)
        db.session.add(eq)
        db.session.flush()
        db.session.rollback()
        assert received == []

    def test_table_filter(self, push_feed, make_personnel, make_equipment, make_request):
        feed, received = push_feed
        requests_only = []
        callback = feed.subscribe(requests_only.append, tables={"clearance_requests"})
        try:
            person = make_personnel()
            make_equipment(holder=person)
            req = make_request(person)
        finally:
            feed.unsubscribe(callback)

        assert [(e.table, e.entity_id) for e in requests_only] == [("clearance_requests", req.id)]
        assert {e.table for e in received} >= {"inventory", "clearance_requests"}

    def test_subscriber_error_does_not_reach_writer(self, push_feed, make_equipment):
        feed, received = push_feed

        def _broken(evt):
            raise RuntimeError("dashboard offline")

        feed.subscribe(_broken)
        try:
            eq = make_equipment()
        finally:
            feed.unsubscribe(_broken)

        assert db.session.get(EquipmentItem, eq.id) is not None
        assert any(e.entity_id == eq.id for e in received)

    def test_event_serialisation(self):
        evt = ChangeEvent(table="inventory", entity_id=3, operation="update",
                          occurred_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert evt.to_dict() == {
            "table": "inventory", "entity_id": 3, "operation": "update",
            "occurred_at": "2026-03-01T00:00:00+00:00",
        }


# ═════════════════════════════════════════════════════════════════════════════
# Poll
# ═════════════════════════════════════════════════════════════════════════════


class TestPollingFeed:
    def test_poll_reports_insert_then_update(self, app, make_equipment):
        feed = PollingChangeFeed(app, interval=1, since=datetime.now(timezone.utc) - timedelta(seconds=1))
        received = []
        feed.subscribe(received.append, tables={"inventory"})

        eq = make_equipment()
        first = [e for e in feed.poll_once() if e.table == "inventory"]
        assert [(e.entity_id, e.operation) for e in first] == [(eq.id, "insert")]
        assert feed.poll_once() == []

        eq.condition_status = "Under Repair"
        db.session.commit()
        second = [e for e in feed.poll_once() if e.table == "inventory"]
        assert [(e.entity_id, e.operation) for e in second] == [(eq.id, "update")]
        assert [e.operation for e in received] == ["insert", "update"]

    def test_start_and_stop_thread(self, app):
        feed = PollingChangeFeed(app, interval=60)
        feed.start()
        try:
            assert feed.running is True
        finally:
            feed.stop()
        assert feed.running is False


class TestFactory:
    def test_unknown_mode(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "CHANGE_FEED_MODE", "webhook")
        original = app.extensions["change_feed"]
        try:
            with pytest.raises(ValueError):
                init_change_feed(app)
        finally:
            app.extensions["change_feed"] = original

    def test_poll_mode(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "CHANGE_FEED_MODE", "poll")
        monkeypatch.setitem(app.config, "CHANGE_FEED_POLL_INTERVAL", 5)
        original = app.extensions["change_feed"]
        try:
            feed = init_change_feed(app)
            assert isinstance(feed, PollingChangeFeed)
            assert feed.interval == 5
            assert feed.running is False
        finally:
            app.extensions["change_feed"] = original
