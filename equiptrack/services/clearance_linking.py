"""
Clearance-Inventory linking.

Merges accountability recorded during routine inspections into a clearance
request opened afterwards: unsettled LOST records with no clearance request
are re-pointed at the request, and the equipment gets a Lost item row under
it so the request cannot advance while the loss is outstanding.
"""

import logging

from equiptrack.core.exceptions import NotFoundError, ValidationError
from equiptrack.models import db
from equiptrack.models.accountability import (
    AccountabilityRecord,
    AccountabilityType,
    SourceType,
)
from equiptrack.models.audit import write_audit
from equiptrack.models.clearance import (
    ClearanceInventoryItem,
    ClearanceItemStatus,
    ClearanceRequest,
)
from equiptrack.services.accountability_summary import recompute_summary
from equiptrack.services.clearance_status_cache import clearance_status_cache
from equiptrack.services.helpers.transaction import transaction

logger = logging.getLogger(__name__)


def link_unlinked_loss_records(clearance_request_id, personnel_id, actor="system") -> int:
    """Attach the person's unsettled routine LOST records to a clearance request.

    Returns:
        Number of records linked; 0 is not an error.

    Raises:
        NotFoundError: the request does not exist.
        ValidationError: the request belongs to someone else.
    """
    with transaction("link_unlinked_loss_records") as tx:
        tx.step("load_request")
        request = db.session.get(ClearanceRequest, clearance_request_id)
        if request is None:
            raise NotFoundError("ClearanceRequest", clearance_request_id)
        if request.personnel_id != personnel_id:
            raise ValidationError(
                f"Clearance request {clearance_request_id} does not belong to personnel {personnel_id}",
                details={"personnel_id": personnel_id, "request_personnel_id": request.personnel_id},
            )

        tx.step("find_records")
        records = (
            AccountabilityRecord.query
            .filter(
                AccountabilityRecord.personnel_id == personnel_id,
                AccountabilityRecord.clearance_request_id.is_(None),
                AccountabilityRecord.record_type == AccountabilityType.LOST.value,
                AccountabilityRecord.is_settled.is_(False),
            )
            .order_by(AccountabilityRecord.id)
            .all()
        )
        if not records:
            return 0

        tx.step("link_records")
        existing_items = {
            item.inventory_id: item
            for item in ClearanceInventoryItem.query.filter_by(clearance_request_id=request.id)
        }
        for rec in records:
            rec.clearance_request_id = request.id
            rec.source_type = SourceType.CLEARANCE_LINKED.value
            if rec.inventory_id not in existing_items:
                item = ClearanceInventoryItem(
                    clearance_request_id=request.id,
                    inventory_id=rec.inventory_id,
                    personnel_id=personnel_id,
                    status=ClearanceItemStatus.LOST.value,
                    inspection_id=rec.inspection_id,
                    remarks=rec.remarks,
                )
                db.session.add(item)
                existing_items[rec.inventory_id] = item
        db.session.flush()

        write_audit(
            entity_type="clearance_request",
            entity_id=request.id,
            action="clearance.link_losses",
            actor=actor,
            diff={"record_ids": [r.id for r in records]},
        )
        clearance_status_cache.invalidate_on_commit(*(r.inventory_id for r in records))

        tx.step("recompute_summaries")
        recompute_summary(personnel_id, None)
        recompute_summary(personnel_id, request.id)

    logger.info(
        "Linked %d routine loss records to clearance %s", len(records), clearance_request_id,
        extra={
            "personnel_id": personnel_id,
            "clearance_request_id": clearance_request_id,
            "record_ids": [r.id for r in records],
            "event_type": "losses_linked",
        },
    )
    return len(records)
