"""
Accountability domain models.

Models:
    - AccountabilityRecord: ledger row charging one person for one lost or
      damaged equipment item, optionally tied to a clearance request.
      Settled, never deleted.
    - PersonnelAccountabilitySummary: materialised aggregate of the
      unsettled LOST/DAMAGED ledger rows per (personnel, clearance request).
      A NULL clearance request is its own key (routine accountability).

The summary is derived data.  Only ``accountability_summary.recompute_summary``
writes it.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from equiptrack.models import db


class AccountabilityType(str, Enum):
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    RETURNED = "RETURNED"
    REPAIRED = "REPAIRED"


class SourceType(str, Enum):
    ROUTINE = "routine"
    CLEARANCE_LINKED = "clearance-linked"


class AccountabilityStatus(str, Enum):
    UNSETTLED = "UNSETTLED"
    SETTLED = "SETTLED"


# Record types that carry an outstanding charge while unsettled
CHARGEABLE_TYPES = (AccountabilityType.LOST.value, AccountabilityType.DAMAGED.value)

SETTLEMENT_CASH = "Cash Payment"
SETTLEMENT_EQUIPMENT_RETURNED = "Equipment Returned"
SETTLEMENT_REPLACEMENT = "Replacement"
SETTLEMENT_SALARY_DEDUCTION = "Salary Deduction"

SETTLEMENT_METHODS = frozenset({
    SETTLEMENT_CASH,
    SETTLEMENT_EQUIPMENT_RETURNED,
    SETTLEMENT_REPLACEMENT,
    SETTLEMENT_SALARY_DEDUCTION,
})


def _money(value):
    return str(value) if value is not None else None


class AccountabilityRecord(db.Model):
    __tablename__ = "accountability_records"
    __table_args__ = (
        db.CheckConstraint("amount_due >= 0", name="ck_accountability_amount_non_negative"),
        db.CheckConstraint(
            "record_type IN ('LOST', 'DAMAGED', 'RETURNED', 'REPAIRED')",
            name="ck_accountability_record_type",
        ),
        db.CheckConstraint(
            "source_type IN ('routine', 'clearance-linked')",
            name="ck_accountability_source_type",
        ),
        db.Index("idx_accountability_personnel_settled", "personnel_id", "is_settled"),
        db.Index("idx_accountability_personnel_item", "personnel_id", "inventory_id"),
        db.Index("idx_accountability_clearance", "clearance_request_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="CASCADE"),
        nullable=False,
    )
    inventory_id = db.Column(
        db.Integer,
        db.ForeignKey("inventory.id", ondelete="CASCADE"),
        nullable=False,
    )
    inspection_id = db.Column(
        db.Integer,
        db.ForeignKey("inspections.id", ondelete="SET NULL"),
        nullable=True,
    )
    clearance_request_id = db.Column(
        db.Integer,
        db.ForeignKey("clearance_requests.id", ondelete="SET NULL"),
        nullable=True,
    )

    record_type = db.Column(
        db.String(20), nullable=False,
        comment="LOST | DAMAGED | RETURNED | REPAIRED",
    )
    source_type = db.Column(
        db.String(20), nullable=False, default=SourceType.ROUTINE.value,
        comment="routine | clearance-linked",
    )
    amount_due = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    amount_paid = db.Column(db.Numeric(12, 2), nullable=True)
    record_date = db.Column(db.Date, nullable=False, default=date.today)
    remarks = db.Column(db.Text, nullable=True)

    # Settlement
    is_settled = db.Column(db.Boolean, nullable=False, default=False)
    settlement_date = db.Column(db.Date, nullable=True)
    settlement_method = db.Column(db.String(50), nullable=True)
    settlement_remarks = db.Column(db.Text, nullable=True)

    # Return
    equipment_returned = db.Column(db.Boolean, nullable=False, default=False)
    return_date = db.Column(db.Date, nullable=True)
    return_remarks = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    equipment = db.relationship("EquipmentItem")

    @property
    def is_chargeable(self) -> bool:
        return not self.is_settled and self.record_type in CHARGEABLE_TYPES

    def to_dict(self):
        return {
            "id": self.id,
            "personnel_id": self.personnel_id,
            "inventory_id": self.inventory_id,
            "item_code": self.equipment.item_code if self.equipment else None,
            "item_name": self.equipment.item_name if self.equipment else None,
            "inspection_id": self.inspection_id,
            "clearance_request_id": self.clearance_request_id,
            "record_type": self.record_type,
            "source_type": self.source_type,
            "amount_due": _money(self.amount_due),
            "amount_paid": _money(self.amount_paid),
            "record_date": self.record_date.isoformat() if self.record_date else None,
            "remarks": self.remarks,
            "is_settled": self.is_settled,
            "settlement_date": self.settlement_date.isoformat() if self.settlement_date else None,
            "settlement_method": self.settlement_method,
            "settlement_remarks": self.settlement_remarks,
            "equipment_returned": self.equipment_returned,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "return_remarks": self.return_remarks,
        }

    def __repr__(self):
        state = "settled" if self.is_settled else "unsettled"
        return f"<AccountabilityRecord {self.id}: {self.record_type} {self.amount_due} ({state})>"


class PersonnelAccountabilitySummary(db.Model):
    """
    Denormalised accountability aggregate.

    Key: (personnel_id, clearance_request_id).  SQL UNIQUE treats NULLs as
    distinct, so the NULL key gets its own partial unique index.
    """

    __tablename__ = "personnel_accountability_summaries"
    __table_args__ = (
        db.UniqueConstraint(
            "personnel_id", "clearance_request_id",
            name="uq_accountability_summary_key",
        ),
        db.Index(
            "uq_accountability_summary_routine",
            "personnel_id",
            unique=True,
            sqlite_where=db.text("clearance_request_id IS NULL"),
            postgresql_where=db.text("clearance_request_id IS NULL"),
        ),
        db.CheckConstraint(
            "accountability_status IN ('UNSETTLED', 'SETTLED')",
            name="ck_accountability_summary_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="CASCADE"),
        nullable=False,
    )
    clearance_request_id = db.Column(
        db.Integer,
        db.ForeignKey("clearance_requests.id", ondelete="CASCADE"),
        nullable=True,
    )

    # Snapshots captured at recompute time
    personnel_name = db.Column(db.String(255), nullable=True)
    rank = db.Column(db.String(60), nullable=True)
    badge_number = db.Column(db.String(40), nullable=True)
    clearance_type = db.Column(db.String(30), nullable=True)
    clearance_status = db.Column(db.String(30), nullable=True)

    # Aggregates
    total_equipment_count = db.Column(db.Integer, nullable=False, default=0)
    lost_equipment_count = db.Column(db.Integer, nullable=False, default=0)
    damaged_equipment_count = db.Column(db.Integer, nullable=False, default=0)
    lost_equipment_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    damaged_equipment_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_outstanding_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    accountability_status = db.Column(
        db.String(20), nullable=False, default=AccountabilityStatus.SETTLED.value,
        comment="UNSETTLED iff total_outstanding_amount > 0",
    )
    last_inspection_date = db.Column(db.Date, nullable=True)
    calculated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_settled(self) -> bool:
        return self.accountability_status == AccountabilityStatus.SETTLED.value

    def to_dict(self):
        return {
            "id": self.id,
            "personnel_id": self.personnel_id,
            "clearance_request_id": self.clearance_request_id,
            "personnel_name": self.personnel_name,
            "rank": self.rank,
            "badge_number": self.badge_number,
            "clearance_type": self.clearance_type,
            "clearance_status": self.clearance_status,
            "total_equipment_count": self.total_equipment_count,
            "lost_equipment_count": self.lost_equipment_count,
            "damaged_equipment_count": self.damaged_equipment_count,
            "lost_equipment_value": _money(self.lost_equipment_value),
            "damaged_equipment_value": _money(self.damaged_equipment_value),
            "total_outstanding_amount": _money(self.total_outstanding_amount),
            "accountability_status": self.accountability_status,
            "last_inspection_date": self.last_inspection_date.isoformat() if self.last_inspection_date else None,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }

    def __repr__(self):
        key = self.clearance_request_id if self.clearance_request_id is not None else "routine"
        return f"<PersonnelAccountabilitySummary {self.personnel_id}/{key}: {self.accountability_status}>"
