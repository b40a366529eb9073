"""Shared blueprint helpers.

get_or_404:     tuple-return lookup (never abort)
parse_date:     lenient date parsing, None on bad input
require_int:    pull a required integer field out of a JSON body
optional_int:   same, but absent is fine
"""
import logging
from datetime import date, datetime

from flask import jsonify

from equiptrack.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(ClearanceRequest, rid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def _coerce_int(value):
    if isinstance(value, bool):
        raise ValueError("boolean is not an id")
    return int(value)


def require_int(data: dict, field: str):
    """Return ``(value, None)`` or ``(None, error_message)`` for a required int field."""
    raw = data.get(field)
    if raw is None or raw == "":
        return None, f"Field '{field}' is required."
    try:
        return _coerce_int(raw), None
    except (TypeError, ValueError):
        return None, f"Field '{field}' must be an integer."


def optional_int(data: dict, field: str):
    """Like :func:`require_int` but a missing field yields ``(None, None)``."""
    raw = data.get(field)
    if raw is None or raw == "":
        return None, None
    try:
        return _coerce_int(raw), None
    except (TypeError, ValueError):
        return None, f"Field '{field}' must be an integer."


def int_list(data: dict, field: str):
    """Return ``(list[int] | None, error_message | None)`` for an optional id list."""
    raw = data.get(field)
    if raw is None:
        return None, None
    if not isinstance(raw, list):
        return None, f"Field '{field}' must be a list of integers."
    try:
        return [_coerce_int(v) for v in raw], None
    except (TypeError, ValueError):
        return None, f"Field '{field}' must be a list of integers."
