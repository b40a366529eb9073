"""
Inspection Blueprint: scheduling and outcome recording.

Endpoints:
    POST   /api/v1/inspections
           Body: { "equipment_ids": [...], "inspector_id": <int>,
                   "scheduled_date": "YYYY-MM-DD", "clearance_request_id"? }
    GET    /api/v1/inspections?status=&equipment_id=&inspector_id=
    POST   /api/v1/inspections/<id>/reschedule   { "scheduled_date" }
    POST   /api/v1/inspections/<id>/cancel       { "reason"? }
    POST   /api/v1/inspections/<id>/outcome
           Body: { "equipment_id", "condition": "Lost", "findings": "...",
                   "inspector_id"?, "recommendations"? }

    GET    /api/v1/equipment/<id>/clearance-status
           Open clearance requests tracking the item (cached).
"""

import logging

from flask import Blueprint, jsonify, request

from equiptrack.models.inspection import InspectionStatus
from equiptrack.models.inventory import EquipmentItem
from equiptrack.services import inspection_service
from equiptrack.services.clearance_status_cache import clearance_status_cache
from equiptrack.utils.errors import E, api_error
from equiptrack.utils.helpers import get_or_404, int_list, optional_int, parse_date, require_int

logger = logging.getLogger(__name__)

inspection_bp = Blueprint("inspection", __name__, url_prefix="/api/v1")
equipment_status_bp = Blueprint("equipment_status", __name__, url_prefix="/api/v1")

_VALID_STATUSES = [s.value for s in InspectionStatus]


def _actor(data: dict) -> str:
    return (data.get("actor") or "").strip() or "system"


@inspection_bp.route("/inspections", methods=["POST"])
def schedule():
    data = request.get_json(silent=True) or {}

    equipment_ids, err = int_list(data, "equipment_ids")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    if not equipment_ids:
        return api_error(E.VALIDATION_REQUIRED, "Field 'equipment_ids' is required.")
    inspector_id, err = optional_int(data, "inspector_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    clearance_request_id, err = optional_int(data, "clearance_request_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    scheduled_date = parse_date(data.get("scheduled_date"))
    if scheduled_date is None:
        return api_error(E.VALIDATION_REQUIRED, "Field 'scheduled_date' must be a valid date.")

    created = inspection_service.schedule_inspection(
        equipment_ids,
        inspector_id,
        scheduled_date,
        clearance_request_id=clearance_request_id,
        actor=_actor(data),
    )
    return jsonify({"items": [i.to_dict() for i in created], "total": len(created)}), 201


@inspection_bp.route("/inspections", methods=["GET"])
def list_inspections():
    status = request.args.get("status") or None
    if status and status not in _VALID_STATUSES:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown status filter '{status}'.",
            details={"valid_statuses": _VALID_STATUSES},
        )
    items = inspection_service.list_inspections(
        status=status,
        equipment_id=request.args.get("equipment_id", type=int),
        inspector_id=request.args.get("inspector_id", type=int),
    )
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@inspection_bp.route("/inspections/<int:inspection_id>/reschedule", methods=["POST"])
def reschedule(inspection_id: int):
    data = request.get_json(silent=True) or {}
    new_date = parse_date(data.get("scheduled_date"))
    if new_date is None:
        return api_error(E.VALIDATION_REQUIRED, "Field 'scheduled_date' must be a valid date.")
    insp = inspection_service.reschedule_inspection(inspection_id, new_date, actor=_actor(data))
    return jsonify(insp.to_dict()), 200


@inspection_bp.route("/inspections/<int:inspection_id>/cancel", methods=["POST"])
def cancel(inspection_id: int):
    data = request.get_json(silent=True) or {}
    insp = inspection_service.cancel_inspection(
        inspection_id, reason=data.get("reason"), actor=_actor(data),
    )
    return jsonify(insp.to_dict()), 200


@inspection_bp.route("/inspections/<int:inspection_id>/outcome", methods=["POST"])
def record_outcome(inspection_id: int):
    """Submit an inspection result.

    Returns 200 with the closed inspection, the clearance status applied to
    the equipment's clearance items, new ledger record ids and the status
    of every affected clearance request.  Any failure leaves nothing saved.
    """
    data = request.get_json(silent=True) or {}

    equipment_id, err = require_int(data, "equipment_id")
    if err:
        return api_error(E.VALIDATION_REQUIRED, err)
    condition = (data.get("condition") or "").strip()
    if not condition:
        return api_error(E.VALIDATION_REQUIRED, "Field 'condition' is required.")
    findings = (data.get("findings") or "").strip()
    if not findings:
        return api_error(E.VALIDATION_REQUIRED, "Field 'findings' is required.")
    inspector_id, err = optional_int(data, "inspector_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)

    result = inspection_service.record_inspection_outcome(
        inspection_id,
        equipment_id,
        condition,
        findings,
        inspector_id=inspector_id,
        recommendations=data.get("recommendations"),
        actor=_actor(data),
    )
    return jsonify(result), 200


@equipment_status_bp.route("/equipment/<int:equipment_id>/clearance-status", methods=["GET"])
def equipment_clearance_status(equipment_id: int):
    equipment, err = get_or_404(EquipmentItem, equipment_id, "Equipment item")
    if err:
        return err
    clearances = clearance_status_cache.get_for_equipment(equipment_id)
    return jsonify({
        "equipment_id": equipment_id,
        "condition_status": equipment.condition_status,
        "clearances": clearances,
        "in_clearance": bool(clearances),
    }), 200
