"""
Inspection model.

An inspection is scheduled against one equipment item and closed by
``inspection_service.record_inspection_outcome``.  At most one PENDING
inspection may exist per equipment item; a partial unique index enforces it
on both SQLite and PostgreSQL.
"""

from datetime import datetime, timezone
from enum import Enum

from equiptrack.models import db


class InspectionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Inspection(db.Model):
    __tablename__ = "inspections"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_inspections_status",
        ),
        db.Index(
            "uq_inspections_pending_equipment",
            "equipment_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        db.Index("idx_inspections_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    equipment_id = db.Column(
        db.Integer,
        db.ForeignKey("inventory.id", ondelete="CASCADE"),
        nullable=False,
    )
    inspector_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="SET NULL"),
        nullable=True,
    )
    inspector_name = db.Column(db.String(255), nullable=True)
    personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="SET NULL"),
        nullable=True,
        comment="Person accountable for the item when the inspection was scheduled",
    )
    clearance_request_id = db.Column(
        db.Integer,
        db.ForeignKey("clearance_requests.id", ondelete="SET NULL"),
        nullable=True,
        comment="Hint: the active clearance that prompted this inspection",
    )

    scheduled_date = db.Column(db.Date, nullable=False)
    rescheduled_date = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=InspectionStatus.PENDING.value,
        comment="PENDING | COMPLETED | FAILED | CANCELLED",
    )
    findings = db.Column(db.Text, nullable=True)
    recommendations = db.Column(db.Text, nullable=True)
    equipment_status_after = db.Column(db.String(30), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

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

    def to_dict(self):
        return {
            "id": self.id,
            "equipment_id": self.equipment_id,
            "inspector_id": self.inspector_id,
            "inspector_name": self.inspector_name,
            "personnel_id": self.personnel_id,
            "clearance_request_id": self.clearance_request_id,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "rescheduled_date": self.rescheduled_date.isoformat() if self.rescheduled_date else None,
            "status": self.status,
            "findings": self.findings,
            "recommendations": self.recommendations,
            "equipment_status_after": self.equipment_status_after,
            "cancel_reason": self.cancel_reason,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Inspection {self.id}: equipment={self.equipment_id} [{self.status}]>"
