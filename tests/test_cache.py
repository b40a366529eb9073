"""
Cache tests: the generic memory backend and the clearance status cache's
commit-bound invalidation.
"""

import pytest
from sqlalchemy.exc import OperationalError

from equiptrack.core.exceptions import PersistenceError
from equiptrack.models import db
from equiptrack.models.clearance import ClearanceRequest
from equiptrack.services import accountability_ledger, cache_service, inspection_service
from equiptrack.services import clearance_lifecycle as lifecycle
from equiptrack.services.clearance_status_cache import clearance_status_cache


def _cached(equipment_id):
    return cache_service.get_cached(f"{clearance_status_cache.KEY_PREFIX}{equipment_id}")


class TestCacheService:
    def test_get_set_delete(self):
        assert cache_service.get_cached("k") is None
        cache_service.set_cached("k", {"a": 1})
        assert cache_service.get_cached("k") == {"a": 1}
        cache_service.delete_cached("k")
        assert cache_service.get_cached("k") is None

    def test_loader_on_miss_only(self):
        calls = []

        def _load():
            calls.append(1)
            return [1, 2]

        assert cache_service.get_cached("lst", loader=_load) == [1, 2]
        assert cache_service.get_cached("lst", loader=_load) == [1, 2]
        assert len(calls) == 1

    def test_delete_prefix(self):
        cache_service.set_cached("p:1", 1)
        cache_service.set_cached("p:2", 2)
        cache_service.set_cached("q:1", 3)
        cache_service.delete_prefix("p:")
        assert cache_service.get_cached("p:1") is None
        assert cache_service.get_cached("q:1") == 3

    def test_health_check_memory_backend(self):
        assert cache_service.health_check() == {"status": "ok", "backend": "memory"}


class TestClearanceStatusCache:
    @pytest.fixture()
    def tracked(self, make_personnel, make_equipment, make_inspection):
        person = make_personnel()
        eq = make_equipment(holder=person)
        req = lifecycle.create_clearance_request(person.id, "Retirement")
        insp = make_inspection(eq, clearance_request=req)
        return eq, req, insp

    def test_read_through(self, tracked):
        eq, req, _ = tracked
        first = clearance_status_cache.get_for_equipment(eq.id)
        assert first == [{
            "clearance_request_id": req.id,
            "personnel_id": req.personnel_id,
            "type": "Retirement",
            "status": "Pending",
            "item_status": "Pending",
        }]
        assert _cached(eq.id) == first

    def test_evicted_when_outcome_commits(self, tracked):
        eq, req, insp = tracked
        clearance_status_cache.get_for_equipment(eq.id)

        inspection_service.record_inspection_outcome(insp.id, eq.id, "Good", "Serviceable")

        assert _cached(eq.id) is None
        fresh = clearance_status_cache.get_for_equipment(eq.id)
        assert fresh[0]["item_status"] == "Cleared"
        assert fresh[0]["status"] == "Pending for Approval"

    def test_kept_when_outcome_rolls_back(self, tracked, monkeypatch):
        eq, req, insp = tracked
        before = clearance_status_cache.get_for_equipment(eq.id)

        def _boom(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(accountability_ledger, "record_loss", _boom)
        with pytest.raises(PersistenceError):
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")

        assert _cached(eq.id) == before

    def test_queued_eviction_discarded_on_rollback(self, tracked):
        eq, req, _ = tracked
        clearance_status_cache.get_for_equipment(eq.id)

        db.session.get(ClearanceRequest, req.id)  # begins a transaction
        clearance_status_cache.invalidate_on_commit(eq.id)
        db.session.rollback()
        db.session.commit()

        assert _cached(eq.id) is not None

    def test_rejection_evicts(self, tracked):
        eq, req, _ = tracked
        clearance_status_cache.get_for_equipment(eq.id)
        lifecycle.reject_clearance(req.id, "Withdrawn")
        assert clearance_status_cache.get_for_equipment(eq.id) == []
