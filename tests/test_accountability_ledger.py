"""
Accountability ledger tests.

Covers record_loss (validation, duplicate policies), settlement sweeps
across every clearance key of a (personnel, equipment) pair, returns,
unlinking and the duplicate report.
"""

from decimal import Decimal

import pytest

from equiptrack.core.exceptions import (
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from equiptrack.models import db
from equiptrack.models.accountability import (
    AccountabilityRecord,
    AccountabilityStatus,
    SETTLEMENT_CASH,
    SETTLEMENT_EQUIPMENT_RETURNED,
    SourceType,
)
from equiptrack.models.audit import AuditLog
from equiptrack.models.clearance import ClearanceInventoryItem, ClearanceItemStatus
from equiptrack.models.inventory import STORAGE_LOCATION, EquipmentCondition, EquipmentItem
from equiptrack.services import accountability_ledger as ledger
from equiptrack.services.accountability_summary import get_summary


@pytest.fixture()
def holder(make_personnel):
    return make_personnel(first_name="Ramon")


# ═════════════════════════════════════════════════════════════════════════════
# compute_amount_due
# ═════════════════════════════════════════════════════════════════════════════


class TestComputeAmountDue:
    def test_lost_charges_purchase_value(self, make_equipment):
        eq = make_equipment(value="1000.00")
        assert ledger.compute_amount_due(eq, "LOST") == Decimal("1000.00")

    def test_lost_prefers_current_value(self, make_equipment):
        eq = make_equipment(value="1000.00", current_value="640.00")
        assert ledger.compute_amount_due(eq, "LOST") == Decimal("640.00")

    def test_damaged_charges_configured_rate(self, make_equipment):
        eq = make_equipment(value="801.00")
        assert ledger.compute_amount_due(eq, "DAMAGED") == Decimal("400.50")

    def test_returned_has_no_charge(self, make_equipment):
        eq = make_equipment()
        with pytest.raises(ValidationError):
            ledger.compute_amount_due(eq, "RETURNED")


# ═════════════════════════════════════════════════════════════════════════════
# record_loss
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordLoss:
    def test_creates_unsettled_routine_record_and_summary(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")

        assert rec.id is not None
        assert rec.is_settled is False
        assert rec.source_type == SourceType.ROUTINE.value
        assert rec.amount_due == Decimal("1000.00")

        summary = get_summary(holder.id, None)
        assert summary.total_outstanding_amount == Decimal("1000.00")
        assert summary.lost_equipment_count == 1
        assert summary.accountability_status == AccountabilityStatus.UNSETTLED.value

        audit = AuditLog.query.filter_by(action="accountability.record_loss").one()
        assert audit.entity_id == str(rec.id)

    def test_clearance_linked_record(self, holder, make_equipment, make_request):
        eq = make_equipment(holder=holder)
        req = make_request(holder)
        rec = ledger.record_loss(holder.id, eq.id, req.id, "DAMAGED", "250.50")
        assert rec.source_type == SourceType.CLEARANCE_LINKED.value
        assert get_summary(holder.id, req.id).damaged_equipment_value == Decimal("250.50")
        assert get_summary(holder.id, None) is None

    def test_negative_amount_rejected(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        with pytest.raises(ValidationError):
            ledger.record_loss(holder.id, eq.id, None, "LOST", "-1")
        assert AccountabilityRecord.query.count() == 0

    def test_non_numeric_amount_rejected(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        with pytest.raises(ValidationError):
            ledger.record_loss(holder.id, eq.id, None, "LOST", "a lot")

    def test_non_chargeable_type_rejected(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        with pytest.raises(ValidationError):
            ledger.record_loss(holder.id, eq.id, None, "RETURNED", "10")

    def test_missing_ids_rejected(self, holder):
        with pytest.raises(ValidationError):
            ledger.record_loss(holder.id, None, None, "LOST", "10")

    def test_unknown_personnel(self, make_equipment):
        eq = make_equipment()
        with pytest.raises(NotFoundError):
            ledger.record_loss(9999, eq.id, None, "LOST", "10")

    def test_unknown_clearance_request(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        with pytest.raises(NotFoundError):
            ledger.record_loss(holder.id, eq.id, 4242, "LOST", "10")


class TestDuplicatePolicy:
    def test_reuse_returns_existing_record(self, app, holder, make_equipment, monkeypatch):
        monkeypatch.setitem(app.config, "ACCOUNTABILITY_DUPLICATE_POLICY", "reuse")
        eq = make_equipment(holder=holder)
        first = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        second = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")

        assert second.id == first.id
        assert AccountabilityRecord.query.count() == 1
        assert get_summary(holder.id, None).total_outstanding_amount == Decimal("1000.00")

    def test_reject_raises_consistency_error(self, app, holder, make_equipment, monkeypatch):
        monkeypatch.setitem(app.config, "ACCOUNTABILITY_DUPLICATE_POLICY", "reject")
        eq = make_equipment(holder=holder)
        first = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")

        with pytest.raises(ConsistencyError) as exc_info:
            ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        assert exc_info.value.keys[0]["record_ids"] == [first.id]
        assert AccountabilityRecord.query.count() == 1

    def test_allow_inserts_and_reports_duplicate(self, app, holder, make_equipment, monkeypatch):
        monkeypatch.setitem(app.config, "ACCOUNTABILITY_DUPLICATE_POLICY", "allow")
        eq = make_equipment(holder=holder)
        ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")

        dupes = ledger.find_duplicate_unsettled()
        assert len(dupes) == 1
        assert dupes[0]["count"] == 2
        assert get_summary(holder.id, None).total_outstanding_amount == Decimal("2000.00")
        with pytest.raises(ConsistencyError):
            ledger.assert_no_duplicates()

    def test_unknown_policy_is_a_validation_error(self, app, holder, make_equipment, monkeypatch):
        monkeypatch.setitem(app.config, "ACCOUNTABILITY_DUPLICATE_POLICY", "merge")
        eq = make_equipment(holder=holder)
        ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        with pytest.raises(ValidationError):
            ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")

    def test_different_clearance_keys_are_not_duplicates(self, holder, make_equipment, make_request):
        eq = make_equipment(holder=holder)
        req = make_request(holder)
        a = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        b = ledger.record_loss(holder.id, eq.id, req.id, "LOST", "1000")
        assert a.id != b.id
        assert ledger.find_duplicate_unsettled() == []


# ═════════════════════════════════════════════════════════════════════════════
# Settlement
# ═════════════════════════════════════════════════════════════════════════════


class TestSettle:
    def test_sweeps_every_unsettled_record_for_the_pair(self, app, holder, make_equipment,
                                                         make_request, monkeypatch):
        monkeypatch.setitem(app.config, "ACCOUNTABILITY_DUPLICATE_POLICY", "allow")
        eq = make_equipment(holder=holder)
        other = make_equipment(holder=holder)
        req = make_request(holder)
        routine = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        ledger.record_loss(holder.id, eq.id, req.id, "LOST", "1000")
        untouched = ledger.record_loss(holder.id, other.id, None, "DAMAGED", "40")

        settled = ledger.settle([routine.id], SETTLEMENT_CASH, remarks="Paid at finance")

        assert len(settled) == 3
        remaining = AccountabilityRecord.query.filter_by(
            personnel_id=holder.id, inventory_id=eq.id, is_settled=False,
        ).count()
        assert remaining == 0
        assert all(r.amount_paid == r.amount_due for r in settled)
        assert all(r.settlement_method == SETTLEMENT_CASH for r in settled)
        assert db.session.get(AccountabilityRecord, untouched.id).is_settled is False

        assert get_summary(holder.id, req.id).accountability_status == AccountabilityStatus.SETTLED.value
        routine_summary = get_summary(holder.id, None)
        assert routine_summary.total_outstanding_amount == Decimal("40.00")
        assert routine_summary.damaged_equipment_count == 1
        assert routine_summary.lost_equipment_count == 0

    def test_already_settled_ids_change_nothing(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        assert len(ledger.settle([rec.id], SETTLEMENT_CASH)) == 1
        assert ledger.settle([rec.id], SETTLEMENT_CASH) == []

    def test_unknown_id_fails_the_whole_batch(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        with pytest.raises(NotFoundError):
            ledger.settle([rec.id, 9999], SETTLEMENT_CASH)
        assert db.session.get(AccountabilityRecord, rec.id).is_settled is False

    def test_empty_ids_and_missing_method(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        with pytest.raises(ValidationError):
            ledger.settle([], SETTLEMENT_CASH)
        with pytest.raises(ValidationError):
            ledger.settle([rec.id], "  ")

    def test_settle_equipment_by_pair(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        settled = ledger.settle_equipment(holder.id, [eq.id], "Salary Deduction")
        assert len(settled) == 1
        assert get_summary(holder.id, None).is_settled


# ═════════════════════════════════════════════════════════════════════════════
# Returns
# ═════════════════════════════════════════════════════════════════════════════


class TestReturnEquipment:
    def test_lost_item_returned_good_goes_back_to_storage(self, holder, make_equipment, make_request):
        eq = make_equipment(holder=holder, condition=EquipmentCondition.LOST.value)
        req = make_request(holder, items={eq: ClearanceItemStatus.LOST})
        rec = ledger.record_loss(holder.id, eq.id, req.id, "LOST", "1000")

        returned = ledger.return_equipment(rec.id, "Good", remarks="Found in locker")

        assert returned.record_type == "RETURNED"
        assert returned.is_settled is True
        assert returned.equipment_returned is True
        assert returned.settlement_method == SETTLEMENT_EQUIPMENT_RETURNED
        assert returned.amount_paid == Decimal("0.00")

        equipment = db.session.get(EquipmentItem, eq.id)
        assert equipment.condition_status == EquipmentCondition.GOOD.value
        assert equipment.current_location == STORAGE_LOCATION
        assert equipment.assigned_personnel_id is None

        item = ClearanceInventoryItem.query.filter_by(clearance_request_id=req.id).one()
        assert item.status == ClearanceItemStatus.RETURNED.value
        assert get_summary(holder.id, req.id).is_settled

    def test_damaged_item_becomes_repaired(self, holder, make_equipment):
        eq = make_equipment(holder=holder, condition=EquipmentCondition.DAMAGED.value)
        rec = ledger.record_loss(holder.id, eq.id, None, "DAMAGED", "300")

        returned = ledger.return_equipment(rec.id, "Under Repair")

        assert returned.record_type == "REPAIRED"
        equipment = db.session.get(EquipmentItem, eq.id)
        assert equipment.condition_status == EquipmentCondition.UNDER_REPAIR.value
        assert equipment.assigned_personnel_id == holder.id

    def test_cannot_return_as_lost(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        with pytest.raises(ValidationError):
            ledger.return_equipment(rec.id, "Lost")

    def test_settled_record_cannot_be_returned(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        ledger.settle([rec.id], SETTLEMENT_CASH)
        with pytest.raises(InvalidStateError):
            ledger.return_equipment(rec.id, "Good")

    def test_return_all_for_one_key(self, holder, make_equipment):
        lost = make_equipment(holder=holder)
        damaged = make_equipment(holder=holder)
        ledger.record_loss(holder.id, lost.id, None, "LOST", "1000")
        ledger.record_loss(holder.id, damaged.id, None, "DAMAGED", "200")

        returned = ledger.return_all_equipment(holder.id)

        assert sorted(r.record_type for r in returned) == ["REPAIRED", "RETURNED"]
        assert db.session.get(EquipmentItem, damaged.id).condition_status == "Under Repair"
        assert get_summary(holder.id, None).total_outstanding_amount == Decimal("0.00")


# ═════════════════════════════════════════════════════════════════════════════
# Unlink
# ═════════════════════════════════════════════════════════════════════════════


class TestUnlink:
    def test_moves_record_to_routine_key(self, holder, make_equipment, make_request):
        eq = make_equipment(holder=holder)
        req = make_request(holder)
        rec = ledger.record_loss(holder.id, eq.id, req.id, "LOST", "1000")

        ledger.unlink_from_clearance(rec.id, actor="admin")

        rec = db.session.get(AccountabilityRecord, rec.id)
        assert rec.clearance_request_id is None
        assert rec.source_type == SourceType.ROUTINE.value
        assert get_summary(holder.id, req.id).total_outstanding_amount == Decimal("0.00")
        assert get_summary(holder.id, None).total_outstanding_amount == Decimal("1000.00")

    def test_routine_record_cannot_be_unlinked(self, holder, make_equipment):
        eq = make_equipment(holder=holder)
        rec = ledger.record_loss(holder.id, eq.id, None, "LOST", "1000")
        with pytest.raises(InvalidStateError):
            ledger.unlink_from_clearance(rec.id)
