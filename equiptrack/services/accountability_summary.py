"""
Personnel Accountability Summary maintenance.

The summary table is a materialised view of the ledger.  One function,
``recompute_summary``, derives a key's aggregate from scratch and upserts
it; every ledger mutation calls it inside its own transaction.  Nothing
else writes ``personnel_accountability_summaries``.

Key: (personnel_id, clearance_request_id).  ``None`` is its own key and
holds routine (non-clearance) accountability.

Invariant: for every key with ledger rows,
    total_outstanding_amount == sum(amount_due) over unsettled LOST/DAMAGED
    rows of that key, and accountability_status == UNSETTLED iff it is > 0.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func

from equiptrack.core.exceptions import ConsistencyError
from equiptrack.models import db
from equiptrack.models.accountability import (
    AccountabilityRecord,
    AccountabilityStatus,
    AccountabilityType,
    CHARGEABLE_TYPES,
    PersonnelAccountabilitySummary,
)
from equiptrack.models.clearance import ClearanceInventoryItem, ClearanceRequest
from equiptrack.models.inspection import Inspection, InspectionStatus
from equiptrack.models.inventory import EquipmentItem
from equiptrack.models.personnel import Personnel
from equiptrack.services.helpers.transaction import transaction

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

# Fields that come from the ledger; the rest are display snapshots
AGGREGATE_FIELDS = (
    "lost_equipment_count",
    "damaged_equipment_count",
    "lost_equipment_value",
    "damaged_equipment_value",
    "total_outstanding_amount",
    "accountability_status",
)

SNAPSHOT_FIELDS = (
    "personnel_name",
    "rank",
    "badge_number",
    "clearance_type",
    "clearance_status",
    "total_equipment_count",
    "last_inspection_date",
)


def _for_key(query, column, clearance_request_id):
    if clearance_request_id is None:
        return query.filter(column.is_(None))
    return query.filter(column == clearance_request_id)


def _get_summary(personnel_id, clearance_request_id):
    q = PersonnelAccountabilitySummary.query.filter(
        PersonnelAccountabilitySummary.personnel_id == personnel_id,
    )
    return _for_key(q, PersonnelAccountabilitySummary.clearance_request_id, clearance_request_id).first()


def _has_ledger_rows(personnel_id, clearance_request_id) -> bool:
    q = AccountabilityRecord.query.filter(AccountabilityRecord.personnel_id == personnel_id)
    q = _for_key(q, AccountabilityRecord.clearance_request_id, clearance_request_id)
    return db.session.query(q.exists()).scalar()


def _aggregate(personnel_id, clearance_request_id) -> dict:
    q = AccountabilityRecord.query.filter(
        AccountabilityRecord.personnel_id == personnel_id,
        AccountabilityRecord.is_settled.is_(False),
        AccountabilityRecord.record_type.in_(CHARGEABLE_TYPES),
    )
    rows = _for_key(q, AccountabilityRecord.clearance_request_id, clearance_request_id).all()

    lost = [r for r in rows if r.record_type == AccountabilityType.LOST.value]
    damaged = [r for r in rows if r.record_type == AccountabilityType.DAMAGED.value]
    lost_value = sum((Decimal(r.amount_due) for r in lost), Decimal("0")).quantize(_CENT)
    damaged_value = sum((Decimal(r.amount_due) for r in damaged), Decimal("0")).quantize(_CENT)
    total = (lost_value + damaged_value).quantize(_CENT)

    return {
        "lost_equipment_count": len(lost),
        "damaged_equipment_count": len(damaged),
        "lost_equipment_value": lost_value,
        "damaged_equipment_value": damaged_value,
        "total_outstanding_amount": total,
        "accountability_status": (
            AccountabilityStatus.UNSETTLED.value if total > 0 else AccountabilityStatus.SETTLED.value
        ),
    }


def _snapshots(personnel_id, clearance_request_id) -> dict:
    person = db.session.get(Personnel, personnel_id)
    request = db.session.get(ClearanceRequest, clearance_request_id) if clearance_request_id else None

    if request is not None:
        equipment_count = (
            ClearanceInventoryItem.query
            .filter_by(clearance_request_id=request.id)
            .count()
        )
    else:
        equipment_count = (
            EquipmentItem.query
            .filter_by(assigned_personnel_id=personnel_id, is_active=True)
            .count()
        )

    iq = db.session.query(func.max(Inspection.completed_at)).filter(
        Inspection.personnel_id == personnel_id,
        Inspection.status.in_([InspectionStatus.COMPLETED.value, InspectionStatus.FAILED.value]),
    )
    last_inspected = _for_key(iq, Inspection.clearance_request_id, clearance_request_id).scalar()

    return {
        "personnel_name": person.full_name if person else None,
        "rank": person.rank if person else None,
        "badge_number": person.badge_number if person else None,
        "clearance_type": request.type if request else None,
        "clearance_status": request.status if request else None,
        "total_equipment_count": equipment_count,
        "last_inspection_date": last_inspected.date() if last_inspected else None,
    }


def derive_summary(personnel_id, clearance_request_id=None) -> dict:
    """Compute the summary values for a key from the ledger.  Read-only."""
    values = _aggregate(personnel_id, clearance_request_id)
    values.update(_snapshots(personnel_id, clearance_request_id))
    return values


def _aggregate_of(summary) -> dict:
    return {f: getattr(summary, f) for f in AGGREGATE_FIELDS}


def _differs(summary, values: dict) -> list[str]:
    changed = []
    for field, new in values.items():
        old = getattr(summary, field)
        if isinstance(new, Decimal):
            old = Decimal(old if old is not None else 0)
        if old != new:
            changed.append(field)
    return changed


def recompute_summary(personnel_id, clearance_request_id=None):
    """Re-derive and upsert the summary row for (personnel, clearance request).

    Writes only when a value changed, so repeated calls are free.  A row is
    created the first time the key has any ledger rows.

    Returns:
        The PersonnelAccountabilitySummary, or None when the key has never
        had accountability.
    """
    with transaction("recompute_summary") as tx:
        tx.step("derive")
        values = derive_summary(personnel_id, clearance_request_id)

        tx.step("upsert")
        summary = _get_summary(personnel_id, clearance_request_id)
        if summary is None:
            if not _has_ledger_rows(personnel_id, clearance_request_id):
                return None
            summary = PersonnelAccountabilitySummary(
                personnel_id=personnel_id,
                clearance_request_id=clearance_request_id,
            )
            db.session.add(summary)
            changed = list(values)
        else:
            changed = _differs(summary, values)

        if not changed:
            return summary

        for field in changed:
            setattr(summary, field, values[field])
        summary.calculated_at = datetime.now(timezone.utc)

        logger.info(
            "Accountability summary recomputed for personnel %s / clearance %s: %s outstanding (%s)",
            personnel_id, clearance_request_id,
            values["total_outstanding_amount"], values["accountability_status"],
            extra={
                "personnel_id": personnel_id,
                "clearance_request_id": clearance_request_id,
                "event_type": "summary_recomputed",
            },
        )
        return summary


def get_summary(personnel_id, clearance_request_id=None):
    return _get_summary(personnel_id, clearance_request_id)


def list_summaries(personnel_id) -> list:
    return (
        PersonnelAccountabilitySummary.query
        .filter_by(personnel_id=personnel_id)
        .order_by(PersonnelAccountabilitySummary.clearance_request_id.is_(None).desc(),
                  PersonnelAccountabilitySummary.clearance_request_id)
        .all()
    )


def check_approval_eligibility(request_id, personnel_id) -> bool:
    """True iff no summary row exists for (personnel, request) or it is SETTLED."""
    summary = _get_summary(personnel_id, request_id)
    if summary is None:
        return True
    return summary.is_settled


def verify_summary(personnel_id, clearance_request_id=None) -> None:
    """Raise ConsistencyError if the stored summary disagrees with the ledger."""
    stored = _get_summary(personnel_id, clearance_request_id)
    derived = _aggregate(personnel_id, clearance_request_id)
    key = {"personnel_id": personnel_id, "clearance_request_id": clearance_request_id}

    if stored is None:
        if derived["total_outstanding_amount"] > 0:
            raise ConsistencyError(
                f"No summary row for personnel {personnel_id} / clearance {clearance_request_id} "
                f"but ledger has {derived['total_outstanding_amount']} outstanding",
                keys=[key],
            )
        return

    mismatched = _differs(stored, derived)
    if mismatched:
        raise ConsistencyError(
            f"Summary for personnel {personnel_id} / clearance {clearance_request_id} "
            f"is out of sync on {', '.join(mismatched)}",
            keys=[{**key, "fields": mismatched}],
        )


def _all_keys() -> list[tuple]:
    ledger_keys = db.session.query(
        AccountabilityRecord.personnel_id, AccountabilityRecord.clearance_request_id,
    ).distinct().all()
    summary_keys = db.session.query(
        PersonnelAccountabilitySummary.personnel_id,
        PersonnelAccountabilitySummary.clearance_request_id,
    ).all()
    keys = {(p, r) for p, r in ledger_keys} | {(p, r) for p, r in summary_keys}
    return sorted(keys, key=lambda k: (k[0], k[1] is not None, k[1] or 0))


def reconcile_all_summaries() -> dict:
    """Force a full recompute of every key; report the keys that had drifted."""
    drifted = []
    with transaction("reconcile_all_summaries") as tx:
        tx.step("collect_keys")
        keys = _all_keys()
        tx.step("recompute")
        for personnel_id, clearance_request_id in keys:
            stored = _get_summary(personnel_id, clearance_request_id)
            before = _aggregate_of(stored) if stored is not None else None
            derived = _aggregate(personnel_id, clearance_request_id)
            if before is None or _differs(stored, derived):
                if before is not None or derived["total_outstanding_amount"] > 0:
                    drifted.append({
                        "personnel_id": personnel_id,
                        "clearance_request_id": clearance_request_id,
                        "before": {k: str(v) for k, v in before.items()} if before else None,
                        "after": {k: str(v) for k, v in derived.items()},
                    })
            recompute_summary(personnel_id, clearance_request_id)

    if drifted:
        logger.warning("Reconciled %d drifted accountability summaries", len(drifted),
                       extra={"event_type": "summary_drift"})
    return {"checked": len(keys), "drifted": drifted}
