"""
Accountability Ledger Service.

Ledger rows charge a person for a lost or damaged equipment item.  They are
created by inspection outcomes (or manually), settled by payment, approval
or equipment return, and never deleted.

Operations:
    record_loss            create one unsettled LOST/DAMAGED record
    settle                 settle records, sweeping every unsettled duplicate
                           for the same (personnel, equipment) pair
    settle_equipment       same sweep, addressed by (personnel, equipment ids)
    return_equipment       LOST → RETURNED / DAMAGED → REPAIRED, settles
    return_all_equipment   bulk return for one summary key
    unlink_from_clearance  move a record back to routine accountability
    find_duplicate_unsettled / assert_no_duplicates

Every mutation recomputes the affected summary keys inside the same
transaction (``accountability_summary.recompute_summary``).

Duplicate policy (ACCOUNTABILITY_DUPLICATE_POLICY) for record_loss when an
unsettled record already exists for (personnel, equipment, clearance):
    reuse   return the existing record, log a warning      (default)
    reject  raise ConsistencyError
    allow   insert anyway; settlement still sweeps all of them
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from flask import current_app, has_app_context
from sqlalchemy import func

from equiptrack.core.exceptions import (
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from equiptrack.models import db
from equiptrack.models.accountability import (
    AccountabilityRecord,
    AccountabilityType,
    CHARGEABLE_TYPES,
    SETTLEMENT_EQUIPMENT_RETURNED,
    SourceType,
)
from equiptrack.models.audit import write_audit
from equiptrack.models.clearance import (
    ClearanceInventoryItem,
    ClearanceItemStatus,
    ClearanceRequest,
    validate_item_transition,
)
from equiptrack.models.inventory import (
    STORAGE_LOCATION,
    EquipmentCondition,
    EquipmentItem,
)
from equiptrack.models.personnel import Personnel
from equiptrack.services.accountability_summary import recompute_summary
from equiptrack.services.clearance_status_cache import clearance_status_cache
from equiptrack.services.helpers.transaction import transaction

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

DUPLICATE_POLICIES = ("reuse", "reject", "allow")
DEFAULT_DAMAGED_RATE = Decimal("0.50")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _duplicate_policy() -> str:
    policy = "reuse"
    if has_app_context():
        policy = current_app.config.get("ACCOUNTABILITY_DUPLICATE_POLICY", "reuse")
    if policy not in DUPLICATE_POLICIES:
        raise ValidationError(
            f"Unknown ACCOUNTABILITY_DUPLICATE_POLICY '{policy}'",
            details={"valid": list(DUPLICATE_POLICIES)},
        )
    return policy


def _damaged_rate() -> Decimal:
    if has_app_context():
        return Decimal(str(current_app.config.get("DAMAGED_CHARGE_RATE", DEFAULT_DAMAGED_RATE)))
    return DEFAULT_DAMAGED_RATE


def _to_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("amount must be a number", details={"amount": str(amount)})
    if not value.is_finite():
        raise ValidationError("amount must be a finite number", details={"amount": str(amount)})
    if value < 0:
        raise ValidationError("amount must be >= 0", details={"amount": str(amount)})
    return value.quantize(_CENT)


def _unsettled_for_key(personnel_id, inventory_id, clearance_request_id):
    q = AccountabilityRecord.query.filter(
        AccountabilityRecord.personnel_id == personnel_id,
        AccountabilityRecord.inventory_id == inventory_id,
        AccountabilityRecord.is_settled.is_(False),
        AccountabilityRecord.record_type.in_(CHARGEABLE_TYPES),
    )
    if clearance_request_id is None:
        q = q.filter(AccountabilityRecord.clearance_request_id.is_(None))
    else:
        q = q.filter(AccountabilityRecord.clearance_request_id == clearance_request_id)
    return q.order_by(AccountabilityRecord.id).all()


def _recompute_keys(keys) -> None:
    for personnel_id, clearance_request_id in sorted(
        keys, key=lambda k: (k[0], k[1] is not None, k[1] or 0)
    ):
        recompute_summary(personnel_id, clearance_request_id)


def compute_amount_due(equipment: EquipmentItem, record_type) -> Decimal:
    """Charge for a loss: full basis value for LOST, a fraction for DAMAGED."""
    basis = equipment.accountability_basis
    if record_type == AccountabilityType.LOST.value:
        return basis.quantize(_CENT)
    if record_type == AccountabilityType.DAMAGED.value:
        return (basis * _damaged_rate()).quantize(_CENT)
    raise ValidationError(
        f"No charge is computed for record type '{record_type}'",
        details={"record_type": str(record_type)},
    )


# ── Create ───────────────────────────────────────────────────────────────────


def record_loss(
    personnel_id,
    inventory_id,
    clearance_request_id,
    record_type,
    amount,
    remarks=None,
    inspection_id=None,
    actor="system",
) -> AccountabilityRecord:
    """Create one unsettled LOST/DAMAGED ledger record and refresh its summary key.

    Raises:
        ValidationError: missing ids, negative amount, non-chargeable type.
        NotFoundError: personnel, equipment or clearance request absent.
        ConsistencyError: duplicate under the ``reject`` policy.
        PersistenceError: the store failed; nothing was written.
    """
    missing = {f: "required" for f, v in (("personnel_id", personnel_id), ("inventory_id", inventory_id)) if v is None}
    if missing:
        raise ValidationError("personnel_id and inventory_id are required", details=missing)

    record_type = getattr(record_type, "value", record_type)
    if record_type not in CHARGEABLE_TYPES:
        raise ValidationError(
            f"record_type must be LOST or DAMAGED, got '{record_type}'",
            details={"record_type": record_type},
        )
    amount_due = _to_amount(amount)

    with transaction("record_loss") as tx:
        tx.step("validate_references")
        if db.session.get(Personnel, personnel_id) is None:
            raise NotFoundError("Personnel", personnel_id)
        if db.session.get(EquipmentItem, inventory_id) is None:
            raise NotFoundError("EquipmentItem", inventory_id)
        if clearance_request_id is not None and db.session.get(ClearanceRequest, clearance_request_id) is None:
            raise NotFoundError("ClearanceRequest", clearance_request_id)

        tx.step("check_duplicates")
        existing = _unsettled_for_key(personnel_id, inventory_id, clearance_request_id)
        if existing:
            policy = _duplicate_policy()
            key = {
                "personnel_id": personnel_id,
                "inventory_id": inventory_id,
                "clearance_request_id": clearance_request_id,
                "record_ids": [r.id for r in existing],
            }
            if policy == "reject":
                raise ConsistencyError(
                    f"Unsettled accountability already exists for personnel {personnel_id}, "
                    f"equipment {inventory_id}, clearance {clearance_request_id}",
                    keys=[key],
                )
            if policy == "reuse":
                logger.warning(
                    "Duplicate loss for personnel %s equipment %s clearance %s — reusing record %s",
                    personnel_id, inventory_id, clearance_request_id, existing[0].id,
                    extra={"event_type": "duplicate_accountability", **{k: v for k, v in key.items() if k != "record_ids"}},
                )
                return existing[0]
            logger.warning(
                "Duplicate loss for personnel %s equipment %s clearance %s — inserting (policy=allow)",
                personnel_id, inventory_id, clearance_request_id,
                extra={"event_type": "duplicate_accountability"},
            )

        tx.step("insert_record")
        record = AccountabilityRecord(
            personnel_id=personnel_id,
            inventory_id=inventory_id,
            inspection_id=inspection_id,
            clearance_request_id=clearance_request_id,
            record_type=record_type,
            source_type=(
                SourceType.CLEARANCE_LINKED.value if clearance_request_id is not None
                else SourceType.ROUTINE.value
            ),
            amount_due=amount_due,
            record_date=date.today(),
            remarks=remarks,
            is_settled=False,
            equipment_returned=False,
        )
        db.session.add(record)
        db.session.flush()

        write_audit(
            entity_type="accountability_record",
            entity_id=record.id,
            action="accountability.record_loss",
            actor=actor,
            diff={
                "personnel_id": personnel_id,
                "inventory_id": inventory_id,
                "clearance_request_id": clearance_request_id,
                "record_type": record_type,
                "amount_due": str(amount_due),
            },
        )

        tx.step("recompute_summary")
        recompute_summary(personnel_id, clearance_request_id)

    logger.info(
        "Recorded %s accountability %s for personnel %s (equipment %s, amount %s)",
        record_type, record.id, personnel_id, inventory_id, amount_due,
        extra={
            "personnel_id": personnel_id,
            "equipment_id": inventory_id,
            "clearance_request_id": clearance_request_id,
            "event_type": "accountability_recorded",
        },
    )
    return record


# ── Settle ───────────────────────────────────────────────────────────────────


def _sweep_pairs(pairs, method, remarks, actor, amount_paid_from_due=True) -> list:
    """Settle every unsettled record for each (personnel, inventory) pair."""
    settled = []
    today = date.today()
    for personnel_id, inventory_id in sorted(pairs):
        rows = (
            AccountabilityRecord.query
            .filter_by(personnel_id=personnel_id, inventory_id=inventory_id, is_settled=False)
            .order_by(AccountabilityRecord.id)
            .all()
        )
        for rec in rows:
            rec.is_settled = True
            rec.settlement_date = today
            rec.settlement_method = method
            rec.settlement_remarks = remarks
            if amount_paid_from_due:
                rec.amount_paid = rec.amount_due
            settled.append(rec)
            write_audit(
                entity_type="accountability_record",
                entity_id=rec.id,
                action="accountability.settle",
                actor=actor,
                diff={
                    "is_settled": {"old": False, "new": True},
                    "method": method,
                    "amount_due": str(rec.amount_due),
                },
            )
    return settled


def settle(record_ids, method, remarks=None, actor="system") -> list:
    """Settle the given records and every unsettled duplicate of their
    (personnel, equipment) pairs.

    All ids are validated before anything is written.  Already-settled ids
    are accepted and change nothing.  Summary keys touched by the sweep are
    recomputed in the same transaction; clearance request statuses are not.

    Returns:
        The records that moved from unsettled to settled.
    """
    if not record_ids:
        raise ValidationError("record_ids must not be empty", details={"record_ids": "required"})
    if not method or not str(method).strip():
        raise ValidationError("settlement method is required", details={"method": "required"})

    ids = sorted(set(record_ids))
    with transaction("settle") as tx:
        tx.step("load_records")
        records = AccountabilityRecord.query.filter(AccountabilityRecord.id.in_(ids)).all()
        found = {r.id for r in records}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("AccountabilityRecord", missing)

        tx.step("sweep")
        pairs = {(r.personnel_id, r.inventory_id) for r in records}
        settled = _sweep_pairs(pairs, str(method).strip(), remarks, actor)

        tx.step("recompute_summaries")
        _recompute_keys({(r.personnel_id, r.clearance_request_id) for r in settled})

    if settled:
        logger.info(
            "Settled %d accountability records (%s)", len(settled), method,
            extra={"record_ids": [r.id for r in settled], "event_type": "accountability_settled"},
        )
    return settled


def settle_equipment(personnel_id, inventory_ids, method, remarks=None, actor="system") -> list:
    """Settle every unsettled record of *personnel_id* for the given equipment."""
    if personnel_id is None:
        raise ValidationError("personnel_id is required", details={"personnel_id": "required"})
    if not inventory_ids:
        raise ValidationError("inventory_ids must not be empty", details={"inventory_ids": "required"})
    if not method or not str(method).strip():
        raise ValidationError("settlement method is required", details={"method": "required"})

    with transaction("settle_equipment") as tx:
        tx.step("validate_references")
        if db.session.get(Personnel, personnel_id) is None:
            raise NotFoundError("Personnel", personnel_id)
        tx.step("sweep")
        pairs = {(personnel_id, inv) for inv in set(inventory_ids)}
        settled = _sweep_pairs(pairs, str(method).strip(), remarks, actor)
        tx.step("recompute_summaries")
        _recompute_keys({(r.personnel_id, r.clearance_request_id) for r in settled})
    return settled


# ── Return ───────────────────────────────────────────────────────────────────


def _parse_condition(condition) -> EquipmentCondition:
    try:
        return EquipmentCondition(getattr(condition, "value", condition))
    except ValueError:
        raise ValidationError(
            f"Unknown equipment condition '{condition}'",
            details={"condition": str(condition), "valid": [c.value for c in EquipmentCondition]},
        )


def return_equipment(record_id, condition_after_return, remarks=None, actor="system") -> AccountabilityRecord:
    """Close a LOST/DAMAGED record because the equipment came back.

    LOST → RETURNED, DAMAGED → REPAIRED; the record is settled with method
    "Equipment Returned".  The equipment takes the returned condition; a
    lost item returned in Good condition goes back to storage unassigned.
    The matching clearance item (Damaged/Lost) becomes Returned.  Other
    unsettled records of the same (personnel, equipment) pair are settled
    along with it.
    """
    condition = _parse_condition(condition_after_return)
    if condition == EquipmentCondition.LOST:
        raise ValidationError("Returned equipment cannot be in condition 'Lost'",
                              details={"condition": condition.value})

    with transaction("return_equipment") as tx:
        tx.step("load_record")
        record = db.session.get(AccountabilityRecord, record_id)
        if record is None:
            raise NotFoundError("AccountabilityRecord", record_id)
        if record.is_settled or record.record_type not in CHARGEABLE_TYPES:
            raise InvalidStateError(
                "AccountabilityRecord", record_id,
                current=f"{record.record_type}{' (settled)' if record.is_settled else ''}",
                expected=["LOST (unsettled)", "DAMAGED (unsettled)"],
            )
        equipment = db.session.get(EquipmentItem, record.inventory_id)
        if equipment is None:
            raise NotFoundError("EquipmentItem", record.inventory_id)

        was_lost = record.record_type == AccountabilityType.LOST.value
        today = date.today()

        tx.step("update_equipment")
        equipment.condition_status = condition.value
        equipment.last_checked = today
        if was_lost and condition == EquipmentCondition.GOOD:
            equipment.current_location = STORAGE_LOCATION
            equipment.assigned_personnel_id = None
            equipment.assigned_to = None
            equipment.unassigned_date = today

        tx.step("update_record")
        previous_type = record.record_type
        record.record_type = (
            AccountabilityType.RETURNED.value if was_lost else AccountabilityType.REPAIRED.value
        )
        record.is_settled = True
        record.equipment_returned = True
        record.return_date = today
        record.return_remarks = remarks
        record.settlement_date = today
        record.settlement_method = SETTLEMENT_EQUIPMENT_RETURNED
        record.amount_paid = Decimal("0.00")

        tx.step("sweep_duplicates")
        swept = _sweep_pairs(
            {(record.personnel_id, record.inventory_id)},
            SETTLEMENT_EQUIPMENT_RETURNED, remarks, actor, amount_paid_from_due=False,
        )
        for dup in swept:
            dup.equipment_returned = True
            dup.return_date = today
            dup.amount_paid = Decimal("0.00")

        tx.step("update_clearance_items")
        returned = ClearanceItemStatus.RETURNED.value
        request_ids = {r.clearance_request_id for r in [record, *swept] if r.clearance_request_id is not None}
        for request_id in sorted(request_ids):
            item = ClearanceInventoryItem.query.filter_by(
                clearance_request_id=request_id,
                inventory_id=record.inventory_id,
            ).first()
            if item is not None and validate_item_transition("return", item.status, returned):
                item.status = returned
                item.return_date = today
                if remarks:
                    item.remarks = remarks
        clearance_status_cache.invalidate_on_commit(record.inventory_id)

        write_audit(
            entity_type="accountability_record",
            entity_id=record.id,
            action="accountability.return",
            actor=actor,
            diff={
                "record_type": {"old": previous_type, "new": record.record_type},
                "condition_after_return": condition.value,
                "inventory_id": record.inventory_id,
                "swept_record_ids": [r.id for r in swept],
            },
        )

        tx.step("recompute_summaries")
        _recompute_keys({(r.personnel_id, r.clearance_request_id) for r in [record, *swept]})

    logger.info(
        "Equipment %s returned (%s) against record %s", record.inventory_id, condition.value, record.id,
        extra={"personnel_id": record.personnel_id, "equipment_id": record.inventory_id,
               "event_type": "equipment_returned"},
    )
    return record


def return_all_equipment(personnel_id, clearance_request_id=None, remarks=None, actor="system") -> list:
    """Return every unsettled LOST/DAMAGED item for one summary key.

    Lost items come back Good, damaged items go Under Repair.
    """
    with transaction("return_all_equipment") as tx:
        tx.step("load_records")
        if db.session.get(Personnel, personnel_id) is None:
            raise NotFoundError("Personnel", personnel_id)
        q = AccountabilityRecord.query.filter(
            AccountabilityRecord.personnel_id == personnel_id,
            AccountabilityRecord.is_settled.is_(False),
            AccountabilityRecord.record_type.in_(CHARGEABLE_TYPES),
        )
        if clearance_request_id is None:
            q = q.filter(AccountabilityRecord.clearance_request_id.is_(None))
        else:
            q = q.filter(AccountabilityRecord.clearance_request_id == clearance_request_id)
        records = q.order_by(AccountabilityRecord.id).all()

        tx.step("return_each")
        returned = []
        for rec in records:
            if rec.is_settled:
                # settled by an earlier return in this batch
                continue
            condition = (
                EquipmentCondition.GOOD if rec.record_type == AccountabilityType.LOST.value
                else EquipmentCondition.UNDER_REPAIR
            )
            returned.append(return_equipment(rec.id, condition, remarks=remarks, actor=actor))
    return returned


# ── Linking ──────────────────────────────────────────────────────────────────


def unlink_from_clearance(record_id, actor="system") -> AccountabilityRecord:
    """Detach an unsettled record from its clearance request (back to routine)."""
    with transaction("unlink_from_clearance") as tx:
        tx.step("load_record")
        record = db.session.get(AccountabilityRecord, record_id)
        if record is None:
            raise NotFoundError("AccountabilityRecord", record_id)
        if record.is_settled or record.clearance_request_id is None:
            raise InvalidStateError(
                "AccountabilityRecord", record_id,
                current="settled" if record.is_settled else "routine",
                expected=["unsettled clearance-linked"],
            )

        tx.step("unlink")
        old_request_id = record.clearance_request_id
        if _unsettled_for_key(record.personnel_id, record.inventory_id, None):
            logger.warning(
                "Unlinking record %s creates a duplicate routine record for personnel %s equipment %s",
                record.id, record.personnel_id, record.inventory_id,
                extra={"event_type": "duplicate_accountability"},
            )
        record.clearance_request_id = None
        record.source_type = SourceType.ROUTINE.value
        write_audit(
            entity_type="accountability_record",
            entity_id=record.id,
            action="accountability.unlink",
            actor=actor,
            diff={"clearance_request_id": {"old": old_request_id, "new": None}},
        )

        tx.step("recompute_summaries")
        _recompute_keys({(record.personnel_id, old_request_id), (record.personnel_id, None)})
    return record


# ── Queries & consistency ────────────────────────────────────────────────────


def list_records(personnel_id=None, clearance_request_id=None, unsettled_only=False) -> list:
    q = AccountabilityRecord.query
    if personnel_id is not None:
        q = q.filter(AccountabilityRecord.personnel_id == personnel_id)
    if clearance_request_id is not None:
        q = q.filter(AccountabilityRecord.clearance_request_id == clearance_request_id)
    if unsettled_only:
        q = q.filter(AccountabilityRecord.is_settled.is_(False))
    return q.order_by(AccountabilityRecord.id).all()


def find_duplicate_unsettled() -> list[dict]:
    """Keys (personnel, equipment, clearance) holding more than one unsettled charge."""
    rows = (
        db.session.query(
            AccountabilityRecord.personnel_id,
            AccountabilityRecord.inventory_id,
            AccountabilityRecord.clearance_request_id,
            func.count(AccountabilityRecord.id),
        )
        .filter(
            AccountabilityRecord.is_settled.is_(False),
            AccountabilityRecord.record_type.in_(CHARGEABLE_TYPES),
        )
        .group_by(
            AccountabilityRecord.personnel_id,
            AccountabilityRecord.inventory_id,
            AccountabilityRecord.clearance_request_id,
        )
        .having(func.count(AccountabilityRecord.id) > 1)
        .all()
    )
    result = []
    for personnel_id, inventory_id, clearance_request_id, count in rows:
        ids = [r.id for r in _unsettled_for_key(personnel_id, inventory_id, clearance_request_id)]
        result.append({
            "personnel_id": personnel_id,
            "inventory_id": inventory_id,
            "clearance_request_id": clearance_request_id,
            "count": count,
            "record_ids": ids,
        })
    return result


def assert_no_duplicates() -> None:
    """Raise ConsistencyError if any key holds duplicate unsettled charges."""
    duplicates = find_duplicate_unsettled()
    if duplicates:
        raise ConsistencyError(
            f"{len(duplicates)} duplicate unsettled accountability key(s) found",
            keys=duplicates,
        )
