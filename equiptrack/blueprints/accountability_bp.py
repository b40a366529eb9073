"""
Accountability Blueprint: ledger entry, settlement and returns.

Endpoints:
    POST   /api/v1/accountability
           Body: { "personnel_id", "inventory_id", "clearance_request_id"?,
                   "record_type": "LOST|DAMAGED", "amount"?, "remarks"? }
           ``amount`` defaults to the charge computed from the equipment value.
    POST   /api/v1/accountability/settle
           Body: { "record_ids": [...], "method": "Cash Payment" }
              or { "personnel_id", "inventory_ids": [...], "method" }
    POST   /api/v1/accountability/<id>/return
           Body: { "condition": "Good", "remarks"? }
    POST   /api/v1/accountability/return-all
           Body: { "personnel_id", "clearance_request_id"?, "remarks"? }
    POST   /api/v1/accountability/<id>/unlink
    GET    /api/v1/personnel/<pid>/accountability?unsettled=1
    GET    /api/v1/accountability/duplicates
    POST   /api/v1/accountability/summaries/reconcile

Money is serialized as decimal strings.  Settlement and return endpoints
recompute the status of every clearance request whose accountability
they touched, so an approval becomes available right away.
"""

import logging

from flask import Blueprint, jsonify, request

from equiptrack.models.accountability import (
    CHARGEABLE_TYPES,
    SETTLEMENT_METHODS,
)
from equiptrack.models.inventory import EquipmentItem
from equiptrack.services import accountability_ledger, accountability_summary
from equiptrack.services.clearance_lifecycle import recompute_request_status
from equiptrack.services.helpers.transaction import transaction
from equiptrack.utils.errors import E, api_error
from equiptrack.utils.helpers import get_or_404, int_list, optional_int, require_int

logger = logging.getLogger(__name__)

accountability_bp = Blueprint("accountability", __name__, url_prefix="/api/v1")


def _actor(data: dict) -> str:
    return (data.get("actor") or "").strip() or "system"


def _advance_requests(records, actor) -> dict:
    """Recompute each open clearance request touched by *records*."""
    statuses = {}
    for request_id in sorted({r.clearance_request_id for r in records if r.clearance_request_id}):
        statuses[str(request_id)] = recompute_request_status(request_id, actor=actor).value
    return statuses


@accountability_bp.route("/accountability", methods=["POST"])
def record_loss():
    data = request.get_json(silent=True) or {}

    personnel_id, err = require_int(data, "personnel_id")
    if err:
        return api_error(E.VALIDATION_REQUIRED, err)
    inventory_id, err = require_int(data, "inventory_id")
    if err:
        return api_error(E.VALIDATION_REQUIRED, err)
    clearance_request_id, err = optional_int(data, "clearance_request_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    record_type = (data.get("record_type") or "").strip().upper()
    if record_type not in CHARGEABLE_TYPES:
        return api_error(
            E.VALIDATION_INVALID, "Field 'record_type' must be LOST or DAMAGED.",
            details={"valid_types": list(CHARGEABLE_TYPES)},
        )

    amount = data.get("amount")
    if amount is None:
        equipment, err = get_or_404(EquipmentItem, inventory_id, "Equipment item")
        if err:
            return err
        amount = accountability_ledger.compute_amount_due(equipment, record_type)

    record = accountability_ledger.record_loss(
        personnel_id,
        inventory_id,
        clearance_request_id,
        record_type,
        amount,
        remarks=data.get("remarks"),
        actor=_actor(data),
    )
    return jsonify(record.to_dict()), 201


@accountability_bp.route("/accountability/settle", methods=["POST"])
def settle():
    data = request.get_json(silent=True) or {}
    method = (data.get("method") or "").strip()
    if not method:
        return api_error(E.VALIDATION_REQUIRED, "Field 'method' is required.")
    if method not in SETTLEMENT_METHODS:
        return api_error(
            E.VALIDATION_INVALID, f"Invalid settlement method '{method}'.",
            details={"valid_methods": sorted(SETTLEMENT_METHODS)},
        )

    record_ids, err = int_list(data, "record_ids")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    inventory_ids, err = int_list(data, "inventory_ids")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    personnel_id = None
    if not record_ids:
        if not inventory_ids:
            return api_error(
                E.VALIDATION_REQUIRED,
                "Provide 'record_ids', or 'personnel_id' with 'inventory_ids'.",
            )
        personnel_id, err = require_int(data, "personnel_id")
        if err:
            return api_error(E.VALIDATION_REQUIRED, err)
    actor = _actor(data)

    with transaction("settle_and_advance") as tx:
        tx.step("settle")
        if record_ids:
            settled = accountability_ledger.settle(
                record_ids, method, remarks=data.get("remarks"), actor=actor,
            )
        else:
            settled = accountability_ledger.settle_equipment(
                personnel_id, inventory_ids, method, remarks=data.get("remarks"), actor=actor,
            )
        tx.step("advance_requests")
        statuses = _advance_requests(settled, actor)

    return jsonify({
        "settled": [r.to_dict() for r in settled],
        "settled_count": len(settled),
        "request_statuses": statuses,
    }), 200


@accountability_bp.route("/accountability/<int:record_id>/return", methods=["POST"])
def return_equipment(record_id: int):
    data = request.get_json(silent=True) or {}
    condition = (data.get("condition") or "").strip()
    if not condition:
        return api_error(E.VALIDATION_REQUIRED, "Field 'condition' is required.")
    actor = _actor(data)

    with transaction("return_and_advance") as tx:
        tx.step("return_equipment")
        record = accountability_ledger.return_equipment(
            record_id, condition, remarks=data.get("remarks"), actor=actor,
        )
        tx.step("advance_requests")
        statuses = _advance_requests([record], actor)

    return jsonify({
        "record": record.to_dict(),
        "request_statuses": statuses,
    }), 200


@accountability_bp.route("/accountability/return-all", methods=["POST"])
def return_all():
    data = request.get_json(silent=True) or {}
    personnel_id, err = require_int(data, "personnel_id")
    if err:
        return api_error(E.VALIDATION_REQUIRED, err)
    clearance_request_id, err = optional_int(data, "clearance_request_id")
    if err:
        return api_error(E.VALIDATION_INVALID, err)
    actor = _actor(data)

    with transaction("return_all_and_advance") as tx:
        tx.step("return_all_equipment")
        records = accountability_ledger.return_all_equipment(
            personnel_id, clearance_request_id, remarks=data.get("remarks"), actor=actor,
        )
        tx.step("advance_requests")
        statuses = _advance_requests(records, actor)

    return jsonify({
        "returned": [r.to_dict() for r in records],
        "returned_count": len(records),
        "request_statuses": statuses,
    }), 200


@accountability_bp.route("/accountability/<int:record_id>/unlink", methods=["POST"])
def unlink(record_id: int):
    data = request.get_json(silent=True) or {}
    record = accountability_ledger.unlink_from_clearance(record_id, actor=_actor(data))
    return jsonify(record.to_dict()), 200


@accountability_bp.route("/personnel/<int:personnel_id>/accountability", methods=["GET"])
def personnel_accountability(personnel_id: int):
    unsettled_only = request.args.get("unsettled", "").lower() in ("1", "true", "yes")
    clearance_request_id = request.args.get("clearance_request_id", type=int)
    records = accountability_ledger.list_records(
        personnel_id=personnel_id,
        clearance_request_id=clearance_request_id,
        unsettled_only=unsettled_only,
    )
    summaries = accountability_summary.list_summaries(personnel_id)
    return jsonify({
        "personnel_id": personnel_id,
        "records": [r.to_dict() for r in records],
        "summaries": [s.to_dict() for s in summaries],
    }), 200


@accountability_bp.route("/accountability/duplicates", methods=["GET"])
def duplicates():
    dupes = accountability_ledger.find_duplicate_unsettled()
    return jsonify({"duplicates": dupes, "total": len(dupes)}), 200


@accountability_bp.route("/accountability/summaries/reconcile", methods=["POST"])
def reconcile():
    result = accountability_summary.reconcile_all_summaries()
    logger.info("Summary reconcile requested: %d checked, %d drifted",
                result["checked"], len(result["drifted"]),
                extra={"event_type": "summary_reconcile"})
    return jsonify(result), 200
