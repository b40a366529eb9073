"""
Equipment registry model.

The registry itself is maintained elsewhere; the accountability core only
reads and writes the condition and assignment columns of an item.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from equiptrack.models import db


class EquipmentCondition(str, Enum):
    GOOD = "Good"
    NEEDS_MAINTENANCE = "Needs Maintenance"
    DAMAGED = "Damaged"
    UNDER_REPAIR = "Under Repair"
    RETIRED = "Retired"
    LOST = "Lost"


EQUIPMENT_CONDITIONS = [c.value for c in EquipmentCondition]

STORAGE_LOCATION = "Storage"


def _money(value):
    return str(value) if value is not None else None


class EquipmentItem(db.Model):
    """A trackable piece of equipment, optionally assigned to one person."""

    __tablename__ = "inventory"
    __table_args__ = (
        db.CheckConstraint(
            "condition_status IN ('Good', 'Needs Maintenance', 'Damaged', "
            "'Under Repair', 'Retired', 'Lost')",
            name="ck_inventory_condition_status",
        ),
        db.Index("idx_inventory_assigned", "assigned_personnel_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_code = db.Column(db.String(50), unique=True, nullable=False)
    item_name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(100), nullable=True)
    condition_status = db.Column(
        db.String(30), nullable=False, default=EquipmentCondition.GOOD.value,
        comment="Good | Needs Maintenance | Damaged | Under Repair | Retired | Lost",
    )

    # Weak assignment reference; the person does not own the item's lifetime
    assigned_personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to = db.Column(
        db.String(255), nullable=True,
        comment="Display name of the assignee captured at assignment time",
    )
    assigned_date = db.Column(db.Date, nullable=True)
    unassigned_date = db.Column(db.Date, nullable=True)

    value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    current_value = db.Column(
        db.Numeric(12, 2), nullable=True,
        comment="Depreciated value; when set it is the basis for accountability amounts",
    )
    current_location = db.Column(db.String(150), nullable=True)
    last_checked = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    assigned_personnel = db.relationship("Personnel")

    @property
    def accountability_basis(self) -> Decimal:
        """Value charged for a loss: current value when known, purchase value otherwise."""
        if self.current_value is not None:
            return Decimal(self.current_value)
        return Decimal(self.value or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "item_code": self.item_code,
            "item_name": self.item_name,
            "category": self.category,
            "condition_status": self.condition_status,
            "assigned_personnel_id": self.assigned_personnel_id,
            "assigned_to": self.assigned_to,
            "assigned_date": self.assigned_date.isoformat() if self.assigned_date else None,
            "unassigned_date": self.unassigned_date.isoformat() if self.unassigned_date else None,
            "value": _money(self.value),
            "current_value": _money(self.current_value),
            "current_location": self.current_location,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<EquipmentItem {self.id}: {self.item_code} [{self.condition_status}]>"
