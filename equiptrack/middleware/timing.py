"""
Request timing and request ids.

Each request gets an id (the caller's X-Request-ID, or a fresh one) that
audit rows written during the request carry.  Responses expose it along
with X-Request-Duration-Ms; requests slower than SLOW_REQUEST_MS are
logged as warnings with the personnel / clearance context of the route.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Polled every few seconds by the orchestrator
_QUIET_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

# Width of audit_logs.request_id
REQUEST_ID_MAX_LEN = 32

# Route argument -> log field
_ROUTE_CONTEXT = {
    "personnel_id": "personnel_id",
    "request_id": "clearance_request_id",
    "equipment_id": "equipment_id",
    "inspection_id": "inspection_id",
    "record_id": "record_ids",
}


def _route_context() -> dict:
    context = {}
    for arg, field in _ROUTE_CONTEXT.items():
        value = (request.view_args or {}).get(arg)
        if value is None:
            continue
        context[field] = [value] if field == "record_ids" else value
    return context


def _incoming_request_id() -> str:
    supplied = (request.headers.get("X-Request-ID") or "").strip()
    return supplied[:REQUEST_ID_MAX_LEN] or uuid.uuid4().hex[:12]


def init_request_timing(app: Flask):
    """Register the before/after hooks that time requests and assign ids."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = _incoming_request_id()

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in _QUIET_PATHS:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": g.request_id,
            **_route_context(),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif duration_ms > app.config.get("SLOW_REQUEST_MS", 1000):
            level = logging.WARNING
        else:
            level = logging.DEBUG
        logger.log(level, "%s %s -> %d (%.0fms)",
                   request.method, request.path, response.status_code, duration_ms, extra=extra)
        return response
