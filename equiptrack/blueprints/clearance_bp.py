"""
Clearance Blueprint: intake, progress and approval of clearance requests.

Endpoints:
    POST   /api/v1/clearances
           Body: { "personnel_id": <int>, "type": "Retirement",
                   "reason": "...", "inventory_ids": [<int>, ...],
                   "link_existing_losses": true, "actor": "..." }
           Returns: 201 with the request and its items.

    GET    /api/v1/clearances?status=&personnel_id=&type=
    GET    /api/v1/clearances/<id>
    POST   /api/v1/clearances/<id>/recompute
    GET    /api/v1/clearances/<id>/eligibility
    POST   /api/v1/clearances/<id>/approve
           Body: { "approved_by": "...", "remarks": "...",
                   "force": false, "override_reason": "..." }
    POST   /api/v1/clearances/<id>/reject
           Body: { "reason": "...", "rejected_by": "..." }
    POST   /api/v1/clearances/<id>/link-losses
    GET    /api/v1/personnel/<pid>/clearance-eligibility?type=Retirement

Layer contract:
    - Blueprint: parse + validate input shape (400), call service, return JSON.
    - Business rules and state guards live in clearance_lifecycle; their
      exceptions are mapped by the app-level error handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from equiptrack.models.clearance import (
    ClearanceRequest,
    ClearanceStatus,
    ClearanceType,
)
from equiptrack.services import accountability_summary, clearance_lifecycle
from equiptrack.services.clearance_linking import link_unlinked_loss_records
from equiptrack.utils.errors import E, api_error
from equiptrack.utils.helpers import get_or_404, int_list, optional_int, require_int

logger = logging.getLogger(__name__)

clearance_bp = Blueprint("clearance", __name__, url_prefix="/api/v1")

_VALID_TYPES = [t.value for t in ClearanceType]
_VALID_STATUSES = [s.value for s in ClearanceStatus]


def _actor(data: dict) -> str:
    return (data.get("actor") or "").strip() or "system"


# ── Intake ─────────────────────────────────────────────────────────────────────


@clearance_bp.route("/clearances", methods=["POST"])
def create_clearance():
    data = request.get_json(silent=True) or {}

    personnel_id, err = require_int(data, "personnel_id")
    if err:
        return api_error(E.VALIDATION_REQUIRED, err)
    ctype = (data.get("type") or "").strip()
    if not ctype:
        return api_error(E.VALIDATION_REQUIRED, "Field 'type' is required.")
    if ctype not in _VALID_TYPES:
        return api_error(
            E.VALIDATION_INVALID, f"Invalid clearance type '{ctype}'.",
            details={"valid_types": _VALID_TYPES},
        )
    inventory_ids, err = int_list(data, "inventory_ids")
    if err:
        return api_error(E.VALIDATION_INVALID, err)

    req = clearance_lifecycle.create_clearance_request(
        personnel_id,
        ctype,
        reason=data.get("reason"),
        inventory_ids=inventory_ids,
        link_existing_losses=bool(data.get("link_existing_losses", True)),
        actor=_actor(data),
    )
    return jsonify(clearance_lifecycle.get_clearance_detail(req.id)), 201


@clearance_bp.route("/clearances", methods=["GET"])
def list_clearances():
    status = request.args.get("status") or None
    if status and status not in _VALID_STATUSES:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown status filter '{status}'.",
            details={"valid_statuses": _VALID_STATUSES},
        )
    ctype = request.args.get("type") or None
    if ctype and ctype not in _VALID_TYPES:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown type filter '{ctype}'.",
            details={"valid_types": _VALID_TYPES},
        )
    personnel_id = request.args.get("personnel_id", type=int)

    items = clearance_lifecycle.list_clearance_requests(
        status=status, personnel_id=personnel_id, clearance_type=ctype,
    )
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)}), 200


@clearance_bp.route("/clearances/<int:request_id>", methods=["GET"])
def get_clearance(request_id: int):
    return jsonify(clearance_lifecycle.get_clearance_detail(request_id)), 200


@clearance_bp.route("/personnel/<int:personnel_id>/clearance-eligibility", methods=["GET"])
def clearance_eligibility(personnel_id: int):
    ctype = request.args.get("type") or ""
    if ctype not in _VALID_TYPES:
        return api_error(
            E.VALIDATION_REQUIRED, "Query parameter 'type' is required.",
            details={"valid_types": _VALID_TYPES},
        )
    return jsonify(clearance_lifecycle.check_clearance_eligibility(personnel_id, ctype)), 200


# ── Progress ───────────────────────────────────────────────────────────────────


@clearance_bp.route("/clearances/<int:request_id>/recompute", methods=["POST"])
def recompute(request_id: int):
    data = request.get_json(silent=True) or {}
    status = clearance_lifecycle.recompute_request_status(request_id, actor=_actor(data))
    return jsonify({"id": request_id, "status": status.value}), 200


@clearance_bp.route("/clearances/<int:request_id>/eligibility", methods=["GET"])
def approval_eligibility(request_id: int):
    req, err = get_or_404(ClearanceRequest, request_id, "Clearance request")
    if err:
        return err
    summary = accountability_summary.get_summary(req.personnel_id, req.id)
    return jsonify({
        "clearance_request_id": req.id,
        "personnel_id": req.personnel_id,
        "eligible": accountability_summary.check_approval_eligibility(req.id, req.personnel_id),
        "summary": summary.to_dict() if summary else None,
    }), 200


@clearance_bp.route("/clearances/<int:request_id>/link-losses", methods=["POST"])
def link_losses(request_id: int):
    data = request.get_json(silent=True) or {}
    req, err = get_or_404(ClearanceRequest, request_id, "Clearance request")
    if err:
        return err
    personnel_id, err = optional_int(data, "personnel_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)

    linked = link_unlinked_loss_records(
        request_id, personnel_id if personnel_id is not None else req.personnel_id,
        actor=_actor(data),
    )
    status = clearance_lifecycle.recompute_request_status(request_id, actor=_actor(data))
    return jsonify({"linked": linked, "status": status.value}), 200


# ── Approval ───────────────────────────────────────────────────────────────────


@clearance_bp.route("/clearances/<int:request_id>/approve", methods=["POST"])
def approve(request_id: int):
    data = request.get_json(silent=True) or {}
    approved_by = (data.get("approved_by") or "").strip()
    if not approved_by:
        return api_error(E.VALIDATION_REQUIRED, "Field 'approved_by' is required.")
    force = data.get("force", False)
    if not isinstance(force, bool):
        return api_error(E.VALIDATION_INVALID, "Field 'force' must be a boolean.")

    req = clearance_lifecycle.approve_settlement(
        request_id,
        approved_by,
        remarks=data.get("remarks"),
        force=force,
        override_reason=data.get("override_reason"),
    )
    return jsonify(req.to_dict(include_items=True)), 200


@clearance_bp.route("/clearances/<int:request_id>/reject", methods=["POST"])
def reject(request_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "Field 'reason' is required to reject a clearance.")

    req = clearance_lifecycle.reject_clearance(
        request_id, reason, rejected_by=(data.get("rejected_by") or "").strip() or _actor(data),
    )
    return jsonify(req.to_dict()), 200
