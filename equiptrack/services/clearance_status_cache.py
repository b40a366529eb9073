"""
Clearance status cache.

Answers "which open clearance requests track equipment X, and in what item
status" without re-querying on every registry lookup.  Entries live in the
shared cache backend (``cache_service``) and are dropped explicitly:

    - ``invalidate_on_commit(*equipment_ids)`` queues ids on the current
      session; they are evicted after the transaction commits and discarded
      if it rolls back, so a reader can never re-cache pre-commit state.
    - ``invalidate_equipment(*equipment_ids)`` evicts immediately.

Services call ``invalidate_on_commit`` from every operation that changes a
clearance item or a clearance request status.
"""

import logging

from flask import current_app, has_app_context
from sqlalchemy import event
from sqlalchemy.orm import Session

from equiptrack.models import db
from equiptrack.models.clearance import (
    OPEN_STATUSES,
    ClearanceInventoryItem,
    ClearanceRequest,
)
from equiptrack.services import cache_service

logger = logging.getLogger(__name__)

_SESSION_KEY = "equiptrack.clearance_cache_invalidations"


class ClearanceStatusCache:
    """Read-through cache of open clearance links keyed by equipment id."""

    KEY_PREFIX = "clearance_status:equipment:"

    def _key(self, equipment_id) -> str:
        return f"{self.KEY_PREFIX}{equipment_id}"

    def _ttl(self) -> int:
        if has_app_context():
            return current_app.config.get("CLEARANCE_STATUS_CACHE_TTL", cache_service.DEFAULT_TTL)
        return cache_service.DEFAULT_TTL

    def get_for_equipment(self, equipment_id: int) -> list[dict]:
        return cache_service.get_cached(
            self._key(equipment_id),
            ttl=self._ttl(),
            loader=lambda: _load_open_clearances(equipment_id),
        )

    def invalidate_equipment(self, *equipment_ids) -> None:
        keys = [self._key(eid) for eid in equipment_ids if eid is not None]
        if keys:
            cache_service.delete_cached(*keys)
            logger.debug("Clearance status cache evicted %d keys", len(keys))

    def invalidate_on_commit(self, *equipment_ids) -> None:
        pending = db.session.info.setdefault(_SESSION_KEY, set())
        pending.update(eid for eid in equipment_ids if eid is not None)

    def invalidate_request(self, request: ClearanceRequest) -> None:
        rows = (
            db.session.query(ClearanceInventoryItem.inventory_id)
            .filter(ClearanceInventoryItem.clearance_request_id == request.id)
            .all()
        )
        self.invalidate_on_commit(*(inventory_id for (inventory_id,) in rows))

    def clear(self) -> None:
        cache_service.delete_prefix(self.KEY_PREFIX)


def _load_open_clearances(equipment_id: int) -> list[dict]:
    rows = (
        db.session.query(ClearanceInventoryItem, ClearanceRequest)
        .join(ClearanceRequest, ClearanceInventoryItem.clearance_request_id == ClearanceRequest.id)
        .filter(
            ClearanceInventoryItem.inventory_id == equipment_id,
            ClearanceRequest.status.in_([s.value for s in OPEN_STATUSES]),
        )
        .order_by(ClearanceRequest.id)
        .all()
    )
    return [
        {
            "clearance_request_id": req.id,
            "personnel_id": req.personnel_id,
            "type": req.type,
            "status": req.status,
            "item_status": item.status,
        }
        for item, req in rows
    ]


clearance_status_cache = ClearanceStatusCache()


@event.listens_for(Session, "after_commit")
def _evict_after_commit(session):
    pending = session.info.pop(_SESSION_KEY, None)
    if pending:
        clearance_status_cache.invalidate_equipment(*sorted(pending))


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session):
    session.info.pop(_SESSION_KEY, None)
