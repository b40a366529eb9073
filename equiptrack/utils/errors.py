"""Standardised API error responses.

Usage
-----
    from equiptrack.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Clearance request not found")
    return api_error(E.VALIDATION_REQUIRED, "personnel_id is required")
    return api_error(E.CONFLICT_STATE, "Not approvable", details={"current": "Pending"})

``register_error_handlers(app)`` maps the service exception hierarchy in
``equiptrack.core.exceptions`` onto these responses once for the whole app.
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from equiptrack.core.exceptions import (
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 (malformed input) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONSISTENCY = "ERR_CONSISTENCY"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONSISTENCY: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (current vs expected state, failed step…).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app):
    """Map service exceptions and generic HTTP errors to JSON responses."""

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(
            E.NOT_FOUND, str(exc),
            details={"resource": exc.resource, "resource_id": exc.resource_id},
        )

    @app.errorhandler(InvalidStateError)
    def _invalid_state(exc):
        return api_error(E.CONFLICT_STATE, str(exc), details=exc.to_details())

    @app.errorhandler(ConsistencyError)
    def _consistency(exc):
        logger.warning("Consistency error surfaced to caller: %s", exc)
        return api_error(E.CONSISTENCY, str(exc), details={"keys": exc.keys})

    @app.errorhandler(PersistenceError)
    def _persistence(exc):
        logger.error(
            "Persistence failure in %s at step %s", exc.operation, exc.step,
            extra={"path": request.path},
        )
        return api_error(
            E.DATABASE, f"{exc.operation} failed; no changes were saved",
            details={"operation": exc.operation, "step": exc.step},
        )

    @app.errorhandler(404)
    def _http_not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
