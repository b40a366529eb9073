"""
Inspection Workflow Service.

Scheduling (schedule / reschedule / cancel) is plain bookkeeping.  The
interesting part is ``record_inspection_outcome``: one transaction that
ties the equipment registry, the clearance items, the accountability
ledger, the clearance request status and the summaries together.

Outcome steps (names are reported in PersistenceError.step):
    load_inspection → lock_requests → update_equipment →
    update_clearance_items → close_inspection → record_loss →
    recompute_summaries → recompute_request_status → audit

Condition → clearance item status:
    Good | Needs Maintenance | Under Repair  → Cleared
    Damaged                                  → Damaged
    Lost                                     → Lost
    Retired                                  → rejected (not an inspection outcome)
"""

import logging
from datetime import date, datetime, timezone

from equiptrack.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from equiptrack.models import db
from equiptrack.models.accountability import AccountabilityType
from equiptrack.models.audit import write_audit
from equiptrack.models.clearance import (
    OPEN_STATUSES,
    ClearanceInventoryItem,
    ClearanceItemStatus,
    ClearanceRequest,
    validate_item_transition,
)
from equiptrack.models.inspection import Inspection, InspectionStatus
from equiptrack.models.inventory import EquipmentCondition, EquipmentItem
from equiptrack.models.personnel import Personnel
from equiptrack.services import accountability_ledger, accountability_summary
from equiptrack.services.clearance_lifecycle import recompute_request_status
from equiptrack.services.clearance_status_cache import clearance_status_cache
from equiptrack.services.helpers.transaction import transaction

logger = logging.getLogger(__name__)

CONDITION_TO_CLEARANCE = {
    EquipmentCondition.GOOD: ClearanceItemStatus.CLEARED,
    EquipmentCondition.NEEDS_MAINTENANCE: ClearanceItemStatus.CLEARED,
    EquipmentCondition.UNDER_REPAIR: ClearanceItemStatus.CLEARED,
    EquipmentCondition.DAMAGED: ClearanceItemStatus.DAMAGED,
    EquipmentCondition.LOST: ClearanceItemStatus.LOST,
}

# Items already inspected under an open request that a later loss reopens
_REINSPECTABLE = (ClearanceItemStatus.CLEARED.value, ClearanceItemStatus.RETURNED.value)

_LOSS_TYPES = {
    ClearanceItemStatus.DAMAGED: AccountabilityType.DAMAGED,
    ClearanceItemStatus.LOST: AccountabilityType.LOST,
}


def map_condition_to_clearance_status(condition) -> ClearanceItemStatus:
    try:
        cond = EquipmentCondition(getattr(condition, "value", condition))
    except ValueError:
        raise ValidationError(
            f"Unknown equipment condition '{condition}'",
            details={"condition": str(condition), "valid": list(c.value for c in CONDITION_TO_CLEARANCE)},
        )
    if cond not in CONDITION_TO_CLEARANCE:
        raise ValidationError(
            f"'{cond.value}' is not a valid inspection outcome",
            details={"condition": cond.value, "valid": list(c.value for c in CONDITION_TO_CLEARANCE)},
        )
    return CONDITION_TO_CLEARANCE[cond]


def _get_inspector(inspector_id):
    if inspector_id is None:
        return None
    inspector = db.session.get(Personnel, inspector_id)
    if inspector is None:
        raise NotFoundError("Personnel", inspector_id)
    return inspector


def _pending_inspection(equipment_id):
    return Inspection.query.filter_by(
        equipment_id=equipment_id, status=InspectionStatus.PENDING.value,
    ).first()


def _require_pending(inspection_id) -> Inspection:
    insp = db.session.get(Inspection, inspection_id)
    if insp is None:
        raise NotFoundError("Inspection", inspection_id)
    if insp.status != InspectionStatus.PENDING.value:
        raise InvalidStateError(
            "Inspection", inspection_id, current=insp.status, expected=[InspectionStatus.PENDING],
        )
    return insp


# ═════════════════════════════════════════════════════════════════════════════
# Scheduling
# ═════════════════════════════════════════════════════════════════════════════


def schedule_inspection(
    equipment_ids,
    inspector_id,
    scheduled_date,
    clearance_request_id=None,
    actor="system",
) -> list:
    """Schedule one PENDING inspection per equipment item.

    All items are checked before anything is written; an item that already
    has a PENDING inspection fails the whole batch.
    """
    if not equipment_ids:
        raise ValidationError("equipment_ids must not be empty", details={"equipment_ids": "required"})
    if scheduled_date is None:
        raise ValidationError("scheduled_date is required", details={"scheduled_date": "required"})

    with transaction("schedule_inspection") as tx:
        tx.step("validate")
        inspector = _get_inspector(inspector_id)
        if clearance_request_id is not None and db.session.get(ClearanceRequest, clearance_request_id) is None:
            raise NotFoundError("ClearanceRequest", clearance_request_id)

        equipment = []
        for eq_id in dict.fromkeys(equipment_ids):
            item = db.session.get(EquipmentItem, eq_id)
            if item is None:
                raise NotFoundError("EquipmentItem", eq_id)
            existing = _pending_inspection(eq_id)
            if existing is not None:
                raise InvalidStateError(
                    "EquipmentItem", eq_id,
                    current=f"inspection {existing.id} PENDING",
                    message=f"Equipment {item.item_code} already has a pending inspection (#{existing.id})",
                )
            equipment.append(item)

        tx.step("insert_inspections")
        created = []
        for item in equipment:
            hint = clearance_request_id
            if hint is None:
                link = (
                    ClearanceInventoryItem.query
                    .join(ClearanceRequest, ClearanceInventoryItem.clearance_request_id == ClearanceRequest.id)
                    .filter(
                        ClearanceInventoryItem.inventory_id == item.id,
                        ClearanceRequest.status.in_([s.value for s in OPEN_STATUSES]),
                    )
                    .order_by(ClearanceRequest.id)
                    .first()
                )
                hint = link.clearance_request_id if link else None
            insp = Inspection(
                equipment_id=item.id,
                inspector_id=inspector.id if inspector else None,
                inspector_name=inspector.full_name if inspector else None,
                personnel_id=item.assigned_personnel_id,
                clearance_request_id=hint,
                scheduled_date=scheduled_date,
                status=InspectionStatus.PENDING.value,
            )
            db.session.add(insp)
            db.session.flush()
            write_audit(
                entity_type="inspection",
                entity_id=insp.id,
                action="inspection.schedule",
                actor=actor,
                diff={"equipment_id": item.id, "scheduled_date": scheduled_date,
                      "clearance_request_id": hint},
            )
            created.append(insp)

    logger.info("Scheduled %d inspections", len(created),
                extra={"event_type": "inspections_scheduled"})
    return created


def reschedule_inspection(inspection_id, new_date, actor="system") -> Inspection:
    if new_date is None:
        raise ValidationError("new date is required", details={"scheduled_date": "required"})
    with transaction("reschedule_inspection") as tx:
        tx.step("load_inspection")
        insp = _require_pending(inspection_id)
        tx.step("update")
        old = insp.rescheduled_date or insp.scheduled_date
        insp.rescheduled_date = new_date
        write_audit(
            entity_type="inspection",
            entity_id=insp.id,
            action="inspection.reschedule",
            actor=actor,
            diff={"date": {"old": old, "new": new_date}},
        )
    return insp


def cancel_inspection(inspection_id, reason=None, actor="system") -> Inspection:
    with transaction("cancel_inspection") as tx:
        tx.step("load_inspection")
        insp = _require_pending(inspection_id)
        tx.step("update")
        insp.status = InspectionStatus.CANCELLED.value
        insp.cancel_reason = reason
        write_audit(
            entity_type="inspection",
            entity_id=insp.id,
            action="inspection.cancel",
            actor=actor,
            diff={"status": {"old": InspectionStatus.PENDING.value, "new": InspectionStatus.CANCELLED.value},
                  "reason": reason},
        )
    return insp


def list_inspections(status=None, equipment_id=None, inspector_id=None) -> list:
    q = Inspection.query
    if status:
        q = q.filter(Inspection.status == status)
    if equipment_id is not None:
        q = q.filter(Inspection.equipment_id == equipment_id)
    if inspector_id is not None:
        q = q.filter(Inspection.inspector_id == inspector_id)
    return q.order_by(Inspection.scheduled_date, Inspection.id).all()


# ═════════════════════════════════════════════════════════════════════════════
# Outcome
# ═════════════════════════════════════════════════════════════════════════════


def record_inspection_outcome(
    inspection_id,
    equipment_id,
    condition_after,
    findings,
    inspector_id=None,
    recommendations=None,
    actor="system",
) -> dict:
    """Apply an inspection result to equipment, clearance and accountability.

    Every step runs in one transaction.  Clearance requests that track the
    equipment are locked first so two inspections for the same request
    serialize on PostgreSQL.

    Returns:
        {"inspection": {...}, "clearance_status": "Damaged", "record_ids": [...],
         "request_statuses": {request_id: status}}

    Raises:
        ValidationError: unknown/Retired condition, missing findings.
        NotFoundError: inspection, equipment or inspector absent.
        InvalidStateError: inspection not PENDING or for another item.
        PersistenceError: store failure; ``step`` names where it happened.
    """
    item_status = map_condition_to_clearance_status(condition_after)
    condition = EquipmentCondition(getattr(condition_after, "value", condition_after))
    if not findings or not str(findings).strip():
        raise ValidationError("findings are required", details={"findings": "required"})

    today = date.today()
    with transaction("record_inspection_outcome") as tx:
        tx.step("load_inspection")
        insp = _require_pending(inspection_id)
        if insp.equipment_id != equipment_id:
            raise InvalidStateError(
                "Inspection", inspection_id,
                current=f"equipment {insp.equipment_id}",
                expected=[f"equipment {equipment_id}"],
            )
        equipment = db.session.get(EquipmentItem, equipment_id)
        if equipment is None:
            raise NotFoundError("EquipmentItem", equipment_id)
        inspector = _get_inspector(inspector_id if inspector_id is not None else insp.inspector_id)

        tx.step("lock_requests")
        # Every item row of this equipment under an open request, whatever its status
        linked_items = (
            ClearanceInventoryItem.query
            .join(ClearanceRequest, ClearanceInventoryItem.clearance_request_id == ClearanceRequest.id)
            .filter(
                ClearanceInventoryItem.inventory_id == equipment_id,
                ClearanceRequest.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(ClearanceInventoryItem.clearance_request_id, ClearanceInventoryItem.id)
            .all()
        )
        request_ids = sorted({i.clearance_request_id for i in linked_items})
        if request_ids:
            (
                ClearanceRequest.query
                .filter(ClearanceRequest.id.in_(request_ids))
                .order_by(ClearanceRequest.id)
                .with_for_update()
                .all()
            )

        tx.step("update_equipment")
        previous_condition = equipment.condition_status
        equipment.condition_status = condition.value
        equipment.last_checked = today

        tx.step("update_clearance_items")
        stamped = []
        for item in linked_items:
            if item.status == ClearanceItemStatus.PENDING.value:
                action = "inspect"
            elif item_status in _LOSS_TYPES and item.status in _REINSPECTABLE:
                action = "reinspect"
            else:
                continue
            if not validate_item_transition(action, item.status, item_status.value):
                raise InvalidStateError(
                    "ClearanceInventoryItem", item.id, current=item.status,
                    expected=[ClearanceItemStatus.PENDING, *_REINSPECTABLE],
                )
            item.status = item_status.value
            item.inspection_id = insp.id
            item.inspector_id = inspector.id if inspector else None
            item.inspector_name = inspector.full_name if inspector else insp.inspector_name
            item.inspection_date = today
            item.remarks = findings
            stamped.append(item)

        tx.step("close_inspection")
        insp.status = (
            InspectionStatus.COMPLETED.value if item_status == ClearanceItemStatus.CLEARED
            else InspectionStatus.FAILED.value
        )
        insp.findings = findings
        insp.recommendations = recommendations
        insp.equipment_status_after = condition.value
        insp.completed_at = datetime.now(timezone.utc)
        if inspector is not None:
            insp.inspector_id = inspector.id
            insp.inspector_name = inspector.full_name

        tx.step("record_loss")
        records = []
        keys = set()
        if item_status in _LOSS_TYPES:
            record_type = _LOSS_TYPES[item_status]
            amount = accountability_ledger.compute_amount_due(equipment, record_type.value)
            if linked_items:
                seen = set()
                for item in linked_items:
                    if item.clearance_request_id in seen:
                        continue
                    seen.add(item.clearance_request_id)
                    records.append(accountability_ledger.record_loss(
                        item.personnel_id, equipment_id, item.clearance_request_id,
                        record_type, amount, remarks=findings, inspection_id=insp.id, actor=actor,
                    ))
            else:
                accountable = insp.personnel_id or equipment.assigned_personnel_id
                if accountable is None:
                    logger.warning(
                        "Equipment %s inspected as %s but nobody is accountable for it",
                        equipment_id, condition.value,
                        extra={"equipment_id": equipment_id, "event_type": "unassigned_loss"},
                    )
                else:
                    records.append(accountability_ledger.record_loss(
                        accountable, equipment_id, None,
                        record_type, amount, remarks=findings, inspection_id=insp.id, actor=actor,
                    ))
            keys.update((r.personnel_id, r.clearance_request_id) for r in records)

        tx.step("recompute_summaries")
        keys.update((i.personnel_id, i.clearance_request_id) for i in linked_items)
        for personnel_id, clearance_request_id in sorted(
            keys, key=lambda k: (k[0], k[1] is not None, k[1] or 0)
        ):
            accountability_summary.recompute_summary(personnel_id, clearance_request_id)

        tx.step("recompute_request_status")
        request_statuses = {}
        for request_id in request_ids:
            request_statuses[request_id] = recompute_request_status(request_id, actor=actor).value

        tx.step("audit")
        write_audit(
            entity_type="inspection",
            entity_id=insp.id,
            action="inspection.record_outcome",
            actor=actor,
            diff={
                "equipment_id": equipment_id,
                "condition": {"old": previous_condition, "new": condition.value},
                "clearance_status": item_status.value,
                "record_ids": [r.id for r in records],
                "request_ids": request_ids,
            },
        )
        clearance_status_cache.invalidate_on_commit(equipment_id)

    logger.info(
        "Inspection %s recorded: equipment %s → %s (%d clearance items, %d records)",
        inspection_id, equipment_id, condition.value, len(stamped), len(records),
        extra={
            "equipment_id": equipment_id,
            "record_ids": [r.id for r in records],
            "event_type": "inspection_recorded",
        },
    )
    return {
        "inspection": insp.to_dict(),
        "clearance_status": item_status.value,
        "record_ids": [r.id for r in records],
        "request_statuses": request_statuses,
    }
