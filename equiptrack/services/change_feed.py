"""
Change Feed: row change notifications for dashboards and other readers.

Consumers depend only on the ``ChangeFeed`` interface:

    feed = current_app.extensions["change_feed"]
    feed.subscribe(on_change, tables={"clearance_requests"})

Two implementations, chosen at startup by CHANGE_FEED_MODE:

    push   PushChangeFeed     events collected on flush, delivered after the
                              transaction commits (dropped on rollback)
    poll   PollingChangeFeed  a daemon thread that queries ``updated_at`` of
                              the watched tables every CHANGE_FEED_POLL_INTERVAL
                              seconds (default 30)

Subscriber errors are logged and never reach the writer.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import Flask
from sqlalchemy import event
from sqlalchemy.orm import Session

from equiptrack.models.accountability import (
    AccountabilityRecord,
    PersonnelAccountabilitySummary,
)
from equiptrack.models.clearance import ClearanceInventoryItem, ClearanceRequest
from equiptrack.models.inspection import Inspection
from equiptrack.models.inventory import EquipmentItem

logger = logging.getLogger(__name__)

WATCHED_MODELS = (
    EquipmentItem,
    Inspection,
    AccountabilityRecord,
    ClearanceRequest,
    ClearanceInventoryItem,
    PersonnelAccountabilitySummary,
)

FEED_MODES = ("push", "poll")
DEFAULT_POLL_INTERVAL = 30

_SESSION_KEY = "equiptrack.change_feed_events"


def _aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    entity_id: int
    operation: str  # insert | update | delete | upsert
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "occurred_at": self.occurred_at.isoformat(),
        }


class ChangeFeed(ABC):
    """Subscribe to row changes of the watched tables."""

    mode: str = ""

    def __init__(self) -> None:
        self._subscribers: list[tuple[Callable, frozenset | None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[ChangeEvent], None], tables=None) -> Callable:
        with self._lock:
            self._subscribers.append((callback, frozenset(tables) if tables else None))
        return callback

    def unsubscribe(self, callback: Callable) -> None:
        with self._lock:
            self._subscribers = [(cb, t) for cb, t in self._subscribers if cb is not callback]

    def _dispatch(self, events) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for evt in events:
            for callback, tables in subscribers:
                if tables is not None and evt.table not in tables:
                    continue
                try:
                    callback(evt)
                    delivered += 1
                except Exception:
                    logger.exception("Change feed subscriber %r failed on %s/%s",
                                     callback, evt.table, evt.entity_id)
        return delivered

    @property
    @abstractmethod
    def running(self) -> bool:
        ...

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
#  Push
# ═══════════════════════════════════════════════════════════════════════════


class PushChangeFeed(ChangeFeed):
    """Emits events from SQLAlchemy session hooks of this process."""

    mode = "push"

    def __init__(self) -> None:
        super().__init__()
        self._listening = False
        self._watched = {m.__tablename__ for m in WATCHED_MODELS}

    @property
    def running(self) -> bool:
        return self._listening

    def start(self) -> None:
        if self._listening:
            return
        event.listen(Session, "after_flush", self._collect)
        event.listen(Session, "after_commit", self._deliver)
        event.listen(Session, "after_rollback", self._discard)
        self._listening = True
        logger.info("Change feed started (push)")

    def stop(self) -> None:
        if not self._listening:
            return
        event.remove(Session, "after_flush", self._collect)
        event.remove(Session, "after_commit", self._deliver)
        event.remove(Session, "after_rollback", self._discard)
        self._listening = False
        logger.info("Change feed stopped (push)")

    def _events_for(self, objects, operation):
        for obj in objects:
            table = getattr(obj, "__tablename__", None)
            if table in self._watched and getattr(obj, "id", None) is not None:
                yield ChangeEvent(table=table, entity_id=obj.id, operation=operation)

    def _collect(self, session, flush_context):
        pending = session.info.setdefault(_SESSION_KEY, [])
        pending.extend(self._events_for(session.new, "insert"))
        pending.extend(self._events_for(
            (o for o in session.dirty if session.is_modified(o)), "update",
        ))
        pending.extend(self._events_for(session.deleted, "delete"))

    def _deliver(self, session):
        pending = session.info.pop(_SESSION_KEY, None)
        if not pending:
            return
        # Collapse repeated flushes of one row into its last operation
        latest = {}
        for evt in pending:
            key = (evt.table, evt.entity_id)
            if key in latest and latest[key].operation == "insert" and evt.operation == "update":
                continue
            latest[key] = evt
        self._dispatch(latest.values())

    def _discard(self, session):
        session.info.pop(_SESSION_KEY, None)


# ═══════════════════════════════════════════════════════════════════════════
#  Poll
# ═══════════════════════════════════════════════════════════════════════════


class PollingChangeFeed(ChangeFeed):
    """Queries ``updated_at`` of the watched tables on an interval.

    Sees changes made by any process, at the cost of latency.  Deletes are
    not observable.
    """

    mode = "poll"

    def __init__(self, app: Flask, interval: int = DEFAULT_POLL_INTERVAL, since: datetime | None = None):
        super().__init__()
        self._app = app
        self.interval = interval
        self._last_seen = {m.__tablename__: since or datetime.now(timezone.utc) for m in WATCHED_MODELS}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="change-feed-poller", daemon=True)
        self._thread.start()
        logger.info("Change feed started (poll every %ss)", self.interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
        logger.info("Change feed stopped (poll)")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Change feed poll failed")

    def poll_once(self) -> list[ChangeEvent]:
        """Query every watched table once and dispatch what changed."""
        events = []
        with self._app.app_context():
            for model in WATCHED_MODELS:
                table = model.__tablename__
                rows = (
                    model.query
                    .filter(model.updated_at > self._last_seen[table])
                    .order_by(model.updated_at, model.id)
                    .all()
                )
                if not rows:
                    continue
                since = _aware(self._last_seen[table])
                for row in rows:
                    created = getattr(row, "created_at", None)
                    if created is None:
                        operation = "upsert"
                    elif _aware(created) > since:
                        operation = "insert"
                    else:
                        operation = "update"
                    events.append(ChangeEvent(
                        table=table, entity_id=row.id, operation=operation,
                        occurred_at=_aware(row.updated_at),
                    ))
                self._last_seen[table] = _aware(rows[-1].updated_at)
        if events:
            logger.debug("Change feed poll found %d changes", len(events))
            self._dispatch(events)
        return events


# ═══════════════════════════════════════════════════════════════════════════
#  Factory
# ═══════════════════════════════════════════════════════════════════════════


def init_change_feed(app: Flask) -> ChangeFeed:
    """Build the feed chosen by CHANGE_FEED_MODE and register it on the app."""
    mode = app.config.get("CHANGE_FEED_MODE", "push")
    if mode == "push":
        feed = PushChangeFeed()
    elif mode == "poll":
        feed = PollingChangeFeed(
            app, interval=int(app.config.get("CHANGE_FEED_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
        )
    else:
        raise ValueError(f"CHANGE_FEED_MODE must be one of {FEED_MODES}, got {mode!r}")

    app.extensions["change_feed"] = feed
    if app.config.get("CHANGE_FEED_AUTOSTART", True):
        feed.start()
    return feed
