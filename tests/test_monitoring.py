"""Tests for monitoring: health checks, request timing and structured logging."""

import json
import logging

import pytest

from equiptrack.middleware.logging_config import JSONFormatter, ReadableFormatter
from equiptrack.middleware.timing import REQUEST_ID_MAX_LEN


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Health Endpoints ────────────────────────────────────────────────────


class TestHealthEndpoints:
    """Health check endpoint tests."""

    def test_health_ready(self, client):
        """GET /api/v1/health/ready returns 200."""
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_health_live(self, client):
        """GET /api/v1/health/live returns detailed checks."""
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert "latency_ms" in data["checks"]["database"]
        assert data["checks"]["cache"] == {"status": "ok", "backend": "memory"}
        assert data["checks"]["change_feed"] == {"mode": "push", "running": False}
        assert data["checks"]["app"]["testing"] is True

    def test_unknown_route_uses_error_envelope(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ── Request Timing ──────────────────────────────────────────────────────


class TestRequestTiming:
    """Request timing middleware tests."""

    def test_duration_header_present(self, client):
        res = client.get("/api/v1/health/ready")
        assert "X-Request-Duration-Ms" in res.headers
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        res = client.get("/api/v1/health/ready")
        assert len(res.headers["X-Request-ID"]) == 12

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "trace-42"})
        assert res.headers["X-Request-ID"] == "trace-42"

    def test_long_request_id_is_capped(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "x" * 80})
        assert res.headers["X-Request-ID"] == "x" * REQUEST_ID_MAX_LEN

    def test_slow_request_logs_route_context(self, app, client, caplog, make_personnel, monkeypatch):
        person = make_personnel()
        monkeypatch.setitem(app.config, "SLOW_REQUEST_MS", -1)
        with caplog.at_level(logging.DEBUG, logger="equiptrack.middleware.timing"):
            res = client.get(f"/api/v1/personnel/{person.id}/accountability",
                             headers={"X-Request-ID": "trace-7"})
        assert res.status_code == 200

        record = next(r for r in caplog.records if r.name == "equiptrack.middleware.timing")
        assert record.levelno == logging.WARNING
        assert record.personnel_id == person.id
        assert record.request_id == "trace-7"

    def test_health_checks_are_not_logged(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="equiptrack.middleware.timing"):
            client.get("/api/v1/health/ready")
        assert not [r for r in caplog.records if r.name == "equiptrack.middleware.timing"]


# ── Structured Logging ──────────────────────────────────────────────────


class TestJSONFormatter:
    def _record(self, **extra):
        record = logging.LogRecord(
            name="equiptrack.services.accountability_ledger", level=logging.INFO,
            pathname=__file__, lineno=1, msg="Recorded %s", args=("LOST",), exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_domain_fields_are_copied(self):
        line = JSONFormatter().format(self._record(
            personnel_id=7, clearance_request_id=3, equipment_id=11,
            record_ids=[1, 2], event_type="accountability_recorded",
        ))
        entry = json.loads(line)
        assert entry["message"] == "Recorded LOST"
        assert entry["level"] == "INFO"
        assert entry["personnel_id"] == 7
        assert entry["clearance_request_id"] == 3
        assert entry["equipment_id"] == 11
        assert entry["record_ids"] == [1, 2]
        assert entry["event_type"] == "accountability_recorded"

    def test_absent_fields_are_omitted(self):
        entry = json.loads(JSONFormatter().format(self._record()))
        assert "personnel_id" not in entry
        assert "exception" not in entry

    def test_readable_line_tags_domain_ids(self):
        line = ReadableFormatter().format(self._record(
            personnel_id=7, clearance_request_id=3, record_ids=[1, 2], event_type="accountability_recorded",
        ))
        assert "Recorded LOST [p=7 cr=3 rec=1,2] <accountability_recorded>" in line

    def test_readable_line_without_context(self):
        line = ReadableFormatter().format(self._record())
        assert line.endswith("Recorded LOST")

    def test_service_log_carries_context(self, caplog, make_personnel, make_equipment):
        from equiptrack.services import accountability_ledger

        person = make_personnel()
        eq = make_equipment(holder=person)
        with caplog.at_level(logging.INFO, logger="equiptrack.services.accountability_ledger"):
            accountability_ledger.record_loss(person.id, eq.id, None, "LOST", "100")

        record = next(r for r in caplog.records if getattr(r, "event_type", None) == "accountability_recorded")
        assert record.personnel_id == person.id
        assert record.equipment_id == eq.id
