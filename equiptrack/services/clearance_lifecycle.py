"""
Clearance Request Lifecycle Service.

Manages clearance request status with:
  - Intake guard (one active Resignation-or-Retirement per person, no two
    active requests of the same type)
  - Automatic forward progress from item state (recompute_request_status)
  - Explicit approval / rejection
  - Audit trail (AuditLog)

Status flow:
    Pending → In Progress → Pending for Approval → Completed
    Pending | In Progress | Pending for Approval → Rejected

recompute_request_status only ever moves a request forward along
Pending → In Progress → Pending for Approval.  Completion always needs an
explicit approve_settlement call.

Usage:
    from equiptrack.services.clearance_lifecycle import approve_settlement

    request = approve_settlement(request_id=7, approved_by="admin")
"""

import logging
from datetime import datetime, timezone

from equiptrack.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from equiptrack.models import db
from equiptrack.models.accountability import (
    AccountabilityRecord,
    AccountabilityType,
    SETTLEMENT_CASH,
)
from equiptrack.models.audit import write_audit
from equiptrack.models.clearance import (
    ACTIVE_STATUSES,
    CLEARANCE_TRANSITIONS,
    EXCLUSIVE_TYPES,
    ClearanceInventoryItem,
    ClearanceItemStatus,
    ClearanceRequest,
    ClearanceStatus,
    ClearanceType,
    validate_clearance_transition,
    validate_item_transition,
)
from equiptrack.models.inventory import EquipmentCondition, EquipmentItem
from equiptrack.models.personnel import Personnel
from equiptrack.services import accountability_summary
from equiptrack.services.accountability_ledger import _sweep_pairs
from equiptrack.services.clearance_status_cache import clearance_status_cache
from equiptrack.services.helpers.transaction import transaction

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_type(clearance_type) -> ClearanceType:
    try:
        return ClearanceType(getattr(clearance_type, "value", clearance_type))
    except ValueError:
        raise ValidationError(
            f"Unknown clearance type '{clearance_type}'",
            details={"type": str(clearance_type), "valid": [t.value for t in ClearanceType]},
        )


def _active_requests(personnel_id) -> list:
    return (
        ClearanceRequest.query
        .filter(
            ClearanceRequest.personnel_id == personnel_id,
            ClearanceRequest.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        .order_by(ClearanceRequest.id)
        .all()
    )


def _lock_request(request_id) -> ClearanceRequest:
    """Load a request row with a row lock (no-op on SQLite)."""
    req = (
        ClearanceRequest.query
        .filter(ClearanceRequest.id == request_id)
        .with_for_update()
        .first()
    )
    if req is None:
        raise NotFoundError("ClearanceRequest", request_id)
    return req


def _exclusivity_conflict(clearance_type: ClearanceType, active: list):
    """Return the active request that blocks a new one of *clearance_type*, if any."""
    for existing in active:
        if existing.type == clearance_type.value:
            return existing
        if clearance_type in EXCLUSIVE_TYPES and existing.type in {t.value for t in EXCLUSIVE_TYPES}:
            return existing
    return None


def combined_clearance_type(types) -> str | None:
    """Merge the types of a person's open requests into one display label.

    Equipment Completion rides along with Retirement/Resignation:
    ["Retirement", "Equipment Completion"] → "Retirement & Equipment Completion".
    """
    values = [getattr(t, "value", t) for t in types if t]
    if not values:
        return None
    ordered = []
    for t in (ClearanceType.RETIREMENT.value, ClearanceType.RESIGNATION.value,
              ClearanceType.EQUIPMENT_COMPLETION.value):
        if t in values and t not in ordered:
            ordered.append(t)
    return " & ".join(ordered)


def _items(request_id) -> list:
    return (
        ClearanceInventoryItem.query
        .filter_by(clearance_request_id=request_id)
        .order_by(ClearanceInventoryItem.id)
        .all()
    )


def item_counts(request: ClearanceRequest) -> dict:
    counts = {"total": 0, "pending": 0, "cleared": 0, "damaged": 0, "lost": 0, "returned": 0}
    for item in _items(request.id):
        counts["total"] += 1
        key = item.status.lower()
        if key in counts:
            counts[key] += 1
    return counts


def get_available_transitions(request: ClearanceRequest) -> list[str]:
    """Manual actions valid for the request's current status."""
    return [
        action for action in ("approve", "force_approve", "reject")
        if validate_clearance_transition(action, request.status)
    ]


def _set_status(request, new_status: ClearanceStatus, action: str, actor: str, extra_diff=None):
    old = request.status
    request.status = new_status.value
    diff = {"status": {"old": old, "new": new_status.value}}
    if extra_diff:
        diff.update(extra_diff)
    write_audit(
        entity_type="clearance_request",
        entity_id=request.id,
        action=action,
        actor=actor,
        diff=diff,
    )
    clearance_status_cache.invalidate_request(request)
    logger.info(
        "Clearance request %s: %s → %s (%s)", request.id, old, new_status.value, action,
        extra={
            "clearance_request_id": request.id,
            "personnel_id": request.personnel_id,
            "event_type": "clearance_status_changed",
        },
    )


# ── Intake ───────────────────────────────────────────────────────────────────


def check_clearance_eligibility(personnel_id, clearance_type) -> dict:
    """Advisory intake pre-check.  Never raises for business reasons.

    Returns:
        {"eligible": bool, "reason": str | None,
         "blocking_request_id": int | None, "unsettled_lost_count": int}
    """
    ctype = _parse_type(clearance_type)
    if db.session.get(Personnel, personnel_id) is None:
        raise NotFoundError("Personnel", personnel_id)

    result = {"eligible": True, "reason": None, "blocking_request_id": None, "unsettled_lost_count": 0}

    blocking = _exclusivity_conflict(ctype, _active_requests(personnel_id))
    if blocking is not None:
        result.update(
            eligible=False,
            reason=f"An active {blocking.type} clearance (#{blocking.id}) already exists",
            blocking_request_id=blocking.id,
        )
        return result

    unsettled_lost = AccountabilityRecord.query.filter_by(
        personnel_id=personnel_id,
        record_type=AccountabilityType.LOST.value,
        is_settled=False,
    ).count()
    result["unsettled_lost_count"] = unsettled_lost
    if unsettled_lost:
        result.update(
            eligible=False,
            reason=f"{unsettled_lost} lost equipment record(s) are still unsettled",
        )
    return result


def create_clearance_request(
    personnel_id,
    clearance_type,
    reason=None,
    inventory_ids=None,
    link_existing_losses=True,
    actor="system",
) -> ClearanceRequest:
    """Open a clearance request and its per-equipment items.

    Items are created for the given inventory ids, or for every active item
    currently assigned to the person.  Equipment already in condition Lost
    starts as a Lost item; everything else starts Pending.  Unlinked LOST
    records are then merged in (``link_unlinked_loss_records``) and the
    status is recomputed once.

    Raises:
        InvalidStateError: an active request blocks this one.
    """
    from equiptrack.services.clearance_linking import link_unlinked_loss_records

    ctype = _parse_type(clearance_type)
    if personnel_id is None:
        raise ValidationError("personnel_id is required", details={"personnel_id": "required"})

    with transaction("create_clearance_request") as tx:
        tx.step("validate_references")
        # Intakes for one person serialize on the personnel row
        person = (
            Personnel.query
            .filter(Personnel.id == personnel_id)
            .with_for_update()
            .first()
        )
        if person is None:
            raise NotFoundError("Personnel", personnel_id)

        tx.step("check_exclusivity")
        blocking = _exclusivity_conflict(ctype, _active_requests(personnel_id))
        if blocking is not None:
            raise InvalidStateError(
                "ClearanceRequest", blocking.id,
                current=blocking.status,
                expected=[ClearanceStatus.COMPLETED, ClearanceStatus.REJECTED],
                message=(
                    f"Personnel {personnel_id} already has an active {blocking.type} "
                    f"clearance (#{blocking.id}, {blocking.status}); "
                    f"cannot open a {ctype.value} clearance"
                ),
            )

        tx.step("resolve_equipment")
        if inventory_ids is not None:
            equipment = []
            for inv_id in dict.fromkeys(inventory_ids):
                item = db.session.get(EquipmentItem, inv_id)
                if item is None:
                    raise NotFoundError("EquipmentItem", inv_id)
                equipment.append(item)
        else:
            equipment = (
                EquipmentItem.query
                .filter_by(assigned_personnel_id=personnel_id, is_active=True)
                .order_by(EquipmentItem.id)
                .all()
            )

        tx.step("insert_request")
        request = ClearanceRequest(
            personnel_id=personnel_id,
            type=ctype.value,
            status=ClearanceStatus.PENDING.value,
            reason=reason,
        )
        db.session.add(request)
        db.session.flush()

        for eq in equipment:
            status = (
                ClearanceItemStatus.LOST if eq.condition_status == EquipmentCondition.LOST.value
                else ClearanceItemStatus.PENDING
            )
            db.session.add(ClearanceInventoryItem(
                clearance_request_id=request.id,
                inventory_id=eq.id,
                personnel_id=personnel_id,
                status=status.value,
            ))
        db.session.flush()

        write_audit(
            entity_type="clearance_request",
            entity_id=request.id,
            action="clearance.create",
            actor=actor,
            diff={
                "personnel_id": personnel_id,
                "type": ctype.value,
                "inventory_ids": [eq.id for eq in equipment],
            },
        )
        clearance_status_cache.invalidate_request(request)

        if link_existing_losses:
            tx.step("link_losses")
            link_unlinked_loss_records(request.id, personnel_id, actor=actor)

        tx.step("recompute_status")
        recompute_request_status(request.id, actor=actor)

    logger.info(
        "Created %s clearance %s for personnel %s with %d items",
        ctype.value, request.id, personnel_id, len(equipment),
        extra={"clearance_request_id": request.id, "personnel_id": personnel_id,
               "event_type": "clearance_created"},
    )
    return request


# ── Automatic progress ───────────────────────────────────────────────────────


def _next_action(status: str, counts: dict, summary_settled):
    """The automatic action the forward rule picks for *status*, if any."""
    if status == ClearanceStatus.PENDING.value:
        if counts["pending"] == 0 or counts["cleared"] > 0:
            return "start"
        return None

    if status == ClearanceStatus.IN_PROGRESS.value and counts["pending"] == 0:
        if counts["damaged"] == 0 and counts["lost"] == 0:
            return "submit"
        if summary_settled():
            return "submit"
    return None


def recompute_request_status(request_id, actor="system") -> ClearanceStatus:
    """Advance a request as far as its items and accountability allow.

    Rules are applied to a fixpoint within one call, so an immediate second
    call finds nothing to do and writes nothing.  Terminal requests are
    returned untouched.
    """
    with transaction("recompute_request_status") as tx:
        tx.step("lock_request")
        request = _lock_request(request_id)
        if request.is_terminal:
            return ClearanceStatus(request.status)

        tx.step("count_items")
        counts = item_counts(request)

        settled_cache = {}

        def summary_settled():
            if "value" not in settled_cache:
                accountability_summary.recompute_summary(request.personnel_id, request.id)
                settled_cache["value"] = accountability_summary.check_approval_eligibility(
                    request.id, request.personnel_id,
                )
            return settled_cache["value"]

        tx.step("advance")
        start = request.status
        status = start
        while True:
            action = _next_action(status, counts, summary_settled)
            if action is None:
                break
            if not validate_clearance_transition(action, status):
                raise InvalidStateError(
                    "ClearanceRequest", request.id, current=status,
                    expected=CLEARANCE_TRANSITIONS[action]["from"],
                    message=f"Cannot {action} clearance {request.id} from {status}",
                )
            status = CLEARANCE_TRANSITIONS[action]["to"].value

        if status != start:
            _set_status(
                request, ClearanceStatus(status), "clearance.auto_advance", actor,
                extra_diff={"item_counts": counts},
            )
            tx.step("refresh_summary")
            accountability_summary.recompute_summary(request.personnel_id, request.id)

    return ClearanceStatus(request.status)


# ── Manual actions ───────────────────────────────────────────────────────────


def approve_settlement(
    request_id,
    approved_by,
    remarks=None,
    force=False,
    override_reason=None,
) -> ClearanceRequest:
    """Complete a clearance: settle its accountability and clear every item.

    Normally valid only from Pending for Approval.  An administrator may
    pass ``force=True`` to approve from In Progress as well; a non-empty
    ``override_reason`` is then mandatory and is kept on the request.

    Raises:
        ValidationError: approved_by missing, or force without override_reason.
        InvalidStateError: the request is not in an approvable status, or
            (without force) its accountability summary is not settled.
    """
    if not approved_by or not str(approved_by).strip():
        raise ValidationError("approved_by is required", details={"approved_by": "required"})
    if force and not (override_reason or "").strip():
        raise ValidationError(
            "override_reason is required for a forced approval",
            details={"override_reason": "required"},
        )

    action = "force_approve" if force else "approve"
    with transaction("approve_settlement") as tx:
        tx.step("lock_request")
        request = _lock_request(request_id)
        if not validate_clearance_transition(action, request.status):
            raise InvalidStateError(
                "ClearanceRequest", request.id,
                current=request.status,
                expected=CLEARANCE_TRANSITIONS[action]["from"],
            )

        if not force:
            tx.step("check_accountability")
            accountability_summary.recompute_summary(request.personnel_id, request.id)
            if not accountability_summary.check_approval_eligibility(request.id, request.personnel_id):
                raise InvalidStateError(
                    "ClearanceRequest", request.id,
                    current=request.status,
                    message=(
                        f"Clearance {request.id} has unsettled accountability; "
                        f"settle it or approve with an override"
                    ),
                )

        tx.step("settle_accountability")
        linked = AccountabilityRecord.query.filter_by(
            personnel_id=request.personnel_id,
            clearance_request_id=request.id,
            is_settled=False,
        ).all()
        pairs = {(r.personnel_id, r.inventory_id) for r in linked}
        settled = _sweep_pairs(pairs, SETTLEMENT_CASH, f"Settled by {approved_by}", approved_by)

        tx.step("close_out_items")
        cleared = ClearanceItemStatus.CLEARED.value
        for item in _items(request.id):
            if item.status != cleared and validate_item_transition("close_out", item.status, cleared):
                item.status = cleared

        tx.step("complete_request")
        now = datetime.now(timezone.utc)
        request.completed_at = now
        request.approved_at = now
        request.approved_by = str(approved_by).strip()
        request.remarks = remarks if remarks is not None else request.remarks
        request.is_override = bool(force)
        request.override_reason = override_reason.strip() if force else None
        _set_status(
            request, ClearanceStatus.COMPLETED,
            "clearance.override_approve" if force else "clearance.approve",
            request.approved_by,
            extra_diff={
                "settled_record_ids": [r.id for r in settled],
                "override_reason": request.override_reason,
            },
        )

        tx.step("recompute_summaries")
        keys = {(r.personnel_id, r.clearance_request_id) for r in settled}
        keys.add((request.personnel_id, request.id))
        for personnel_id, clearance_request_id in sorted(keys, key=lambda k: (k[0], k[1] is not None, k[1] or 0)):
            accountability_summary.recompute_summary(personnel_id, clearance_request_id)

    if force:
        logger.warning(
            "Clearance %s force-approved by %s: %s", request.id, request.approved_by, request.override_reason,
            extra={"clearance_request_id": request.id, "event_type": "clearance_override_approved"},
        )
    return request


def reject_clearance(request_id, reason, rejected_by="system") -> ClearanceRequest:
    """Reject an open clearance request.  Items and ledger are left as they are."""
    if not reason or not str(reason).strip():
        raise ValidationError("A rejection reason is required", details={"reason": "required"})

    with transaction("reject_clearance") as tx:
        tx.step("lock_request")
        request = _lock_request(request_id)
        if not validate_clearance_transition("reject", request.status):
            raise InvalidStateError(
                "ClearanceRequest", request.id,
                current=request.status,
                expected=CLEARANCE_TRANSITIONS["reject"]["from"],
            )
        tx.step("reject")
        request.rejection_reason = str(reason).strip()
        _set_status(
            request, ClearanceStatus.REJECTED, "clearance.reject", rejected_by,
            extra_diff={"reason": request.rejection_reason},
        )
        tx.step("refresh_summary")
        accountability_summary.recompute_summary(request.personnel_id, request.id)
    return request


# ── Queries ──────────────────────────────────────────────────────────────────


def get_clearance_request(request_id) -> ClearanceRequest:
    request = db.session.get(ClearanceRequest, request_id)
    if request is None:
        raise NotFoundError("ClearanceRequest", request_id)
    return request


def list_clearance_requests(status=None, personnel_id=None, clearance_type=None) -> list:
    q = ClearanceRequest.query
    if status:
        q = q.filter(ClearanceRequest.status == status)
    if personnel_id is not None:
        q = q.filter(ClearanceRequest.personnel_id == personnel_id)
    if clearance_type:
        q = q.filter(ClearanceRequest.type == clearance_type)
    return q.order_by(ClearanceRequest.created_at.desc(), ClearanceRequest.id.desc()).all()


def get_clearance_detail(request_id) -> dict:
    """Request with items, item counts, summary, eligibility and valid actions."""
    request = get_clearance_request(request_id)
    summary = accountability_summary.get_summary(request.personnel_id, request.id)
    data = request.to_dict(include_items=True)
    data["item_counts"] = item_counts(request)
    data["summary"] = summary.to_dict() if summary else None
    data["approval_eligible"] = accountability_summary.check_approval_eligibility(
        request.id, request.personnel_id,
    )
    data["available_transitions"] = get_available_transitions(request)
    open_types = [r.type for r in _active_requests(request.personnel_id)]
    data["combined_type"] = combined_clearance_type(open_types) if request.is_active else request.type
    return data
