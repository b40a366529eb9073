"""
Inspection workflow tests: scheduling, outcome propagation, atomicity,
and the end-to-end clearance scenarios that run through inspections.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from equiptrack.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from equiptrack.models import db
from equiptrack.models.accountability import AccountabilityRecord, SETTLEMENT_CASH, SourceType
from equiptrack.models.audit import AuditLog
from equiptrack.models.clearance import ClearanceInventoryItem, ClearanceItemStatus, ClearanceRequest
from equiptrack.models.inspection import Inspection, InspectionStatus
from equiptrack.models.inventory import EquipmentCondition, EquipmentItem
from equiptrack.services import accountability_ledger as ledger
from equiptrack.services import clearance_lifecycle as lifecycle
from equiptrack.services import inspection_service
from equiptrack.services.accountability_summary import get_summary
from equiptrack.services.clearance_linking import link_unlinked_loss_records


@pytest.fixture()
def officer(make_personnel):
    return make_personnel(first_name="Ana", rank="Police Staff Sergeant")


@pytest.fixture()
def inspector(make_personnel):
    return make_personnel(first_name="Inspector", rank="Police Lieutenant")


def _item(request_id, equipment_id) -> ClearanceInventoryItem:
    return ClearanceInventoryItem.query.filter_by(
        clearance_request_id=request_id, inventory_id=equipment_id,
    ).one()


# ═════════════════════════════════════════════════════════════════════════════
# Condition mapping
# ═════════════════════════════════════════════════════════════════════════════


class TestConditionMapping:
    @pytest.mark.parametrize("condition,expected", [
        ("Good", ClearanceItemStatus.CLEARED),
        ("Needs Maintenance", ClearanceItemStatus.CLEARED),
        ("Under Repair", ClearanceItemStatus.CLEARED),
        ("Damaged", ClearanceItemStatus.DAMAGED),
        ("Lost", ClearanceItemStatus.LOST),
        (EquipmentCondition.LOST, ClearanceItemStatus.LOST),
    ])
    def test_mapping(self, condition, expected):
        assert inspection_service.map_condition_to_clearance_status(condition) == expected

    @pytest.mark.parametrize("condition", ["Retired", "Broken", ""])
    def test_rejected_conditions(self, condition):
        with pytest.raises(ValidationError):
            inspection_service.map_condition_to_clearance_status(condition)


# ═════════════════════════════════════════════════════════════════════════════
# Scheduling
# ═════════════════════════════════════════════════════════════════════════════


class TestScheduling:
    def test_schedule_sets_clearance_hint(self, officer, inspector, make_equipment):
        eq = make_equipment(holder=officer)
        req = lifecycle.create_clearance_request(officer.id, "Retirement")

        created = inspection_service.schedule_inspection([eq.id], inspector.id, date.today())

        assert len(created) == 1
        insp = created[0]
        assert insp.status == InspectionStatus.PENDING.value
        assert insp.clearance_request_id == req.id
        assert insp.personnel_id == officer.id
        assert insp.inspector_name == inspector.full_name

    def test_second_pending_inspection_fails_whole_batch(self, officer, inspector, make_equipment, make_inspection):
        a = make_equipment(holder=officer)
        b = make_equipment(holder=officer)
        make_inspection(b)

        with pytest.raises(InvalidStateError):
            inspection_service.schedule_inspection([a.id, b.id], inspector.id, date.today())
        assert Inspection.query.filter_by(equipment_id=a.id).count() == 0

    def test_schedule_requires_items_and_date(self, inspector):
        with pytest.raises(ValidationError):
            inspection_service.schedule_inspection([], inspector.id, date.today())
        with pytest.raises(ValidationError):
            inspection_service.schedule_inspection([1], inspector.id, None)

    def test_unknown_equipment(self, inspector):
        with pytest.raises(NotFoundError):
            inspection_service.schedule_inspection([999], inspector.id, date.today())

    def test_reschedule_and_cancel(self, officer, make_equipment, make_inspection):
        insp = make_inspection(make_equipment(holder=officer))
        new_date = date.today() + timedelta(days=7)

        inspection_service.reschedule_inspection(insp.id, new_date)
        assert db.session.get(Inspection, insp.id).rescheduled_date == new_date

        inspection_service.cancel_inspection(insp.id, reason="Officer on leave")
        cancelled = db.session.get(Inspection, insp.id)
        assert cancelled.status == InspectionStatus.CANCELLED.value
        assert cancelled.cancel_reason == "Officer on leave"

        with pytest.raises(InvalidStateError):
            inspection_service.reschedule_inspection(insp.id, new_date)

    def test_list_filters(self, officer, inspector, make_equipment, make_inspection):
        make_inspection(make_equipment(holder=officer), inspector=inspector)
        make_inspection(make_equipment(holder=officer), status=InspectionStatus.CANCELLED.value)
        assert len(inspection_service.list_inspections()) == 2
        assert len(inspection_service.list_inspections(status="PENDING")) == 1
        assert len(inspection_service.list_inspections(inspector_id=inspector.id)) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Outcome propagation
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordOutcome:
    def test_lost_outcome_creates_linked_record(self, officer, inspector, make_equipment, make_inspection):
        radio = make_equipment(holder=officer, value="1000.00", current_value="800.00")
        make_equipment(holder=officer)
        req = lifecycle.create_clearance_request(officer.id, "Retirement")
        insp = make_inspection(radio, inspector=inspector, clearance_request=req)

        result = inspection_service.record_inspection_outcome(
            insp.id, radio.id, "Lost", "Not presented at inspection",
        )

        assert result["clearance_status"] == "Lost"
        assert result["inspection"]["status"] == InspectionStatus.FAILED.value
        assert result["request_statuses"] == {req.id: "Pending"}
        assert len(result["record_ids"]) == 1

        rec = db.session.get(AccountabilityRecord, result["record_ids"][0])
        assert rec.clearance_request_id == req.id
        assert rec.amount_due == Decimal("800.00")
        assert rec.inspection_id == insp.id
        assert rec.source_type == SourceType.CLEARANCE_LINKED.value

        assert db.session.get(EquipmentItem, radio.id).condition_status == "Lost"
        item = _item(req.id, radio.id)
        assert item.status == "Lost"
        assert item.inspector_name == inspector.full_name
        assert get_summary(officer.id, req.id).total_outstanding_amount == Decimal("800.00")

    def test_damaged_outcome_charges_half(self, officer, make_equipment, make_inspection):
        vest = make_equipment(holder=officer, value="600.00")
        req = lifecycle.create_clearance_request(officer.id, "Resignation")
        insp = make_inspection(vest, clearance_request=req)

        result = inspection_service.record_inspection_outcome(insp.id, vest.id, "Damaged", "Torn panel")

        rec = db.session.get(AccountabilityRecord, result["record_ids"][0])
        assert rec.record_type == "DAMAGED"
        assert rec.amount_due == Decimal("300.00")
        assert result["request_statuses"] == {req.id: "In Progress"}

    def test_good_outcome_clears_and_advances(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        req = lifecycle.create_clearance_request(officer.id, "Retirement")
        insp = make_inspection(eq, clearance_request=req)

        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Good", "Serviceable")

        assert result["record_ids"] == []
        assert result["inspection"]["status"] == InspectionStatus.COMPLETED.value
        assert result["request_statuses"] == {req.id: "Pending for Approval"}
        assert _item(req.id, eq.id).status == "Cleared"
        assert AuditLog.query.filter_by(action="inspection.record_outcome").count() == 1

    def test_outcome_reaches_every_open_request(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        ret = lifecycle.create_clearance_request(officer.id, "Retirement")
        eqc = lifecycle.create_clearance_request(officer.id, "Equipment Completion")
        insp = make_inspection(eq)

        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")

        assert set(result["request_statuses"]) == {ret.id, eqc.id}
        assert len(result["record_ids"]) == 2
        assert _item(ret.id, eq.id).status == "Lost"
        assert _item(eqc.id, eq.id).status == "Lost"

    def test_routine_loss_is_charged_to_assignee(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer, value="250.00")
        insp = make_inspection(eq)

        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")

        rec = db.session.get(AccountabilityRecord, result["record_ids"][0])
        assert rec.clearance_request_id is None
        assert rec.personnel_id == officer.id
        assert rec.source_type == SourceType.ROUTINE.value
        assert result["request_statuses"] == {}

    def test_unassigned_loss_records_nothing(self, make_equipment, make_inspection):
        eq = make_equipment()
        insp = make_inspection(eq)
        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")
        assert result["record_ids"] == []
        assert AccountabilityRecord.query.count() == 0

    def test_wrong_equipment(self, officer, make_equipment, make_inspection):
        a = make_equipment(holder=officer)
        b = make_equipment(holder=officer)
        insp = make_inspection(a)
        with pytest.raises(InvalidStateError):
            inspection_service.record_inspection_outcome(insp.id, b.id, "Good", "ok")

    def test_closed_inspection_cannot_be_recorded_twice(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        insp = make_inspection(eq)
        inspection_service.record_inspection_outcome(insp.id, eq.id, "Good", "ok")
        with pytest.raises(InvalidStateError):
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "changed mind")
        assert AccountabilityRecord.query.count() == 0

    def test_findings_required(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        insp = make_inspection(eq)
        with pytest.raises(ValidationError):
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Good", "  ")

    def test_retired_is_not_an_outcome(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        insp = make_inspection(eq)
        with pytest.raises(ValidationError):
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Retired", "Decommissioned")


# ═════════════════════════════════════════════════════════════════════════════
# Atomicity
# ═════════════════════════════════════════════════════════════════════════════


class TestOutcomeAtomicity:
    @pytest.fixture()
    def scenario(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer)
        req = lifecycle.create_clearance_request(officer.id, "Retirement")
        insp = make_inspection(eq, clearance_request=req)
        return eq, req, insp

    def _assert_untouched(self, eq, req, insp):
        db.session.expire_all()
        assert db.session.get(EquipmentItem, eq.id).condition_status == "Good"
        assert _item(req.id, eq.id).status == "Pending"
        assert db.session.get(Inspection, insp.id).status == InspectionStatus.PENDING.value
        assert db.session.get(ClearanceRequest, req.id).status == "Pending"
        assert AccountabilityRecord.query.count() == 0
        assert get_summary(req.personnel_id, req.id) is None

    def test_store_failure_rolls_back_every_step(self, scenario, monkeypatch):
        eq, req, insp = scenario

        def _boom(*args, **kwargs):
            raise OperationalError("INSERT INTO accountability_records", {}, Exception("disk I/O error"))

        monkeypatch.setattr(ledger, "record_loss", _boom)

        with pytest.raises(PersistenceError) as exc_info:
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")

        err = exc_info.value
        assert err.operation == "record_inspection_outcome"
        assert err.step == "record_loss"
        assert err.cause == "OperationalError"
        self._assert_untouched(eq, req, insp)

    def test_nested_failure_reports_outer_step(self, scenario, monkeypatch):
        eq, req, insp = scenario

        def _boom(*args, **kwargs):
            raise OperationalError("UPDATE personnel_accountability_summary", {}, Exception("locked"))

        monkeypatch.setattr(ledger, "recompute_summary", _boom)

        with pytest.raises(PersistenceError) as exc_info:
            inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing")

        err = exc_info.value
        assert err.step == "record_loss"
        assert err.cause == "record_loss failed at step 'recompute_summary'"
        self._assert_untouched(eq, req, insp)


# ═════════════════════════════════════════════════════════════════════════════
# End-to-end scenarios
# ═════════════════════════════════════════════════════════════════════════════


class TestRetirementScenario:
    def test_loss_blocks_until_settled(self, officer, inspector, make_equipment):
        pistol = make_equipment(holder=officer, value="1000.00")
        radio = make_equipment(holder=officer, value="500.00")

        req = lifecycle.create_clearance_request(officer.id, "Retirement", reason="Compulsory retirement")
        assert req.status == "Pending"

        i1, i2 = inspection_service.schedule_inspection([pistol.id, radio.id], inspector.id, date.today())

        r1 = inspection_service.record_inspection_outcome(i1.id, pistol.id, "Lost", "Not presented")
        assert r1["request_statuses"][req.id] == "Pending"

        r2 = inspection_service.record_inspection_outcome(i2.id, radio.id, "Good", "Serviceable")
        assert r2["request_statuses"][req.id] == "In Progress"
        assert get_summary(officer.id, req.id).total_outstanding_amount == Decimal("1000.00")

        with pytest.raises(InvalidStateError):
            lifecycle.approve_settlement(req.id, "Col. Ramos")

        ledger.settle(r1["record_ids"], SETTLEMENT_CASH, remarks="OR #12345")
        assert lifecycle.recompute_request_status(req.id) == lifecycle.ClearanceStatus.PENDING_FOR_APPROVAL
        assert get_summary(officer.id, req.id).total_outstanding_amount == Decimal("0.00")

        done = lifecycle.approve_settlement(req.id, "Col. Ramos")
        assert done.status == "Completed"
        assert {i.status for i in ClearanceInventoryItem.query.filter_by(clearance_request_id=req.id)} == {"Cleared"}

    def test_loss_found_after_clearing_blocks_approval(self, officer, inspector, make_equipment):
        pistol = make_equipment(holder=officer, value="1000.00")
        req = lifecycle.create_clearance_request(officer.id, "Retirement")

        (first,) = inspection_service.schedule_inspection([pistol.id], inspector.id, date.today())
        r1 = inspection_service.record_inspection_outcome(first.id, pistol.id, "Good", "Serviceable")
        assert r1["request_statuses"][req.id] == "Pending for Approval"

        (second,) = inspection_service.schedule_inspection([pistol.id], inspector.id, date.today())
        assert second.clearance_request_id == req.id
        r2 = inspection_service.record_inspection_outcome(second.id, pistol.id, "Lost", "Missing at turnover")

        record = db.session.get(AccountabilityRecord, r2["record_ids"][0])
        assert record.clearance_request_id == req.id
        assert record.personnel_id == officer.id
        assert _item(req.id, pistol.id).status == "Lost"
        assert get_summary(officer.id, req.id).total_outstanding_amount == Decimal("1000.00")
        assert get_summary(officer.id, None) is None
        assert r2["request_statuses"][req.id] == "Pending for Approval"

        with pytest.raises(InvalidStateError):
            lifecycle.approve_settlement(req.id, "Col. Ramos")
        assert db.session.get(ClearanceRequest, req.id).status == "Pending for Approval"

        ledger.settle(r2["record_ids"], SETTLEMENT_CASH)
        assert lifecycle.approve_settlement(req.id, "Col. Ramos").status == "Completed"

    def test_damage_found_after_return_charges_the_request(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer, value="800.00")
        req = lifecycle.create_clearance_request(officer.id, "Retirement")
        item = _item(req.id, eq.id)
        item.status = ClearanceItemStatus.RETURNED.value
        db.session.commit()

        insp = make_inspection(eq, clearance_request=req)
        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Damaged", "Cracked frame")

        assert _item(req.id, eq.id).status == "Damaged"
        assert AccountabilityRecord.query.filter_by(clearance_request_id=req.id).count() == 1
        assert AccountabilityRecord.query.filter(AccountabilityRecord.clearance_request_id.is_(None)).count() == 0
        assert len(result["record_ids"]) == 1


class TestRoutineLossLinking:
    def test_routine_loss_moves_to_new_request(self, officer, make_equipment, make_inspection):
        eq = make_equipment(holder=officer, value="1500.00")
        insp = make_inspection(eq)
        result = inspection_service.record_inspection_outcome(insp.id, eq.id, "Lost", "Missing at audit")
        assert get_summary(officer.id, None).total_outstanding_amount == Decimal("1500.00")

        req = lifecycle.create_clearance_request(officer.id, "Retirement")

        rec = db.session.get(AccountabilityRecord, result["record_ids"][0])
        assert rec.clearance_request_id == req.id
        assert rec.source_type == SourceType.CLEARANCE_LINKED.value
        assert _item(req.id, eq.id).status == "Lost"
        assert get_summary(officer.id, None).total_outstanding_amount == Decimal("0.00")
        assert get_summary(officer.id, req.id).total_outstanding_amount == Decimal("1500.00")
        assert db.session.get(ClearanceRequest, req.id).status == "In Progress"

        assert link_unlinked_loss_records(req.id, officer.id) == 0

    def test_linking_adds_missing_lost_item(self, officer, make_equipment, make_request):
        eq = make_equipment(holder=officer)
        ledger.record_loss(officer.id, eq.id, None, "LOST", "100")
        req = make_request(officer)

        assert link_unlinked_loss_records(req.id, officer.id) == 1
        assert _item(req.id, eq.id).status == ClearanceItemStatus.LOST.value

    def test_damaged_records_are_not_linked(self, officer, make_equipment, make_request):
        eq = make_equipment(holder=officer)
        ledger.record_loss(officer.id, eq.id, None, "DAMAGED", "100")
        req = make_request(officer)
        assert link_unlinked_loss_records(req.id, officer.id) == 0

    def test_request_of_someone_else(self, officer, make_personnel, make_request):
        other = make_personnel()
        req = make_request(other)
        with pytest.raises(ValidationError):
            link_unlinked_loss_records(req.id, officer.id)

    def test_unknown_request(self, officer):
        with pytest.raises(NotFoundError):
            link_unlinked_loss_records(999, officer.id)
