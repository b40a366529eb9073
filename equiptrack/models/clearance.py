"""
Clearance domain models.

Models:
    - ClearanceRequest: one personnel clearance (Resignation / Retirement /
      Equipment Completion) and its lifecycle status.
    - ClearanceInventoryItem: per-equipment tracking row under a request.

Status transition tables live here next to the models, keyed by action.
Services consult them and raise ``InvalidStateError`` for anything else.

ClearanceRequest (CLEARANCE_TRANSITIONS):
    start          Pending                                  -> In Progress
    submit         In Progress                              -> Pending for Approval
    approve        Pending for Approval                     -> Completed
    force_approve  In Progress | Pending for Approval       -> Completed
    reject         Pending | In Progress | Pending for Approval -> Rejected

ClearanceInventoryItem (ITEM_TRANSITIONS):
    inspect        Pending            -> Cleared | Damaged | Lost
    reinspect      Cleared | Returned -> Damaged | Lost
    return         Damaged | Lost     -> Returned
    close_out      any                -> Cleared
"""

from datetime import datetime, timezone
from enum import Enum

from equiptrack.models import db


class ClearanceType(str, Enum):
    RESIGNATION = "Resignation"
    RETIREMENT = "Retirement"
    EQUIPMENT_COMPLETION = "Equipment Completion"


class ClearanceStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    PENDING_FOR_APPROVAL = "Pending for Approval"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class ClearanceItemStatus(str, Enum):
    PENDING = "Pending"
    CLEARED = "Cleared"
    DAMAGED = "Damaged"
    LOST = "Lost"
    RETURNED = "Returned"


# Retirement and Resignation exclude each other while either is active
EXCLUSIVE_TYPES = frozenset({ClearanceType.RESIGNATION, ClearanceType.RETIREMENT})

ACTIVE_STATUSES = (ClearanceStatus.PENDING, ClearanceStatus.IN_PROGRESS)
TERMINAL_STATUSES = (ClearanceStatus.COMPLETED, ClearanceStatus.REJECTED)
OPEN_STATUSES = (
    ClearanceStatus.PENDING,
    ClearanceStatus.IN_PROGRESS,
    ClearanceStatus.PENDING_FOR_APPROVAL,
)

CLEARANCE_TRANSITIONS = {
    "start": {"from": [ClearanceStatus.PENDING], "to": ClearanceStatus.IN_PROGRESS},
    "submit": {"from": [ClearanceStatus.IN_PROGRESS], "to": ClearanceStatus.PENDING_FOR_APPROVAL},
    "approve": {"from": [ClearanceStatus.PENDING_FOR_APPROVAL], "to": ClearanceStatus.COMPLETED},
    "force_approve": {
        "from": [ClearanceStatus.IN_PROGRESS, ClearanceStatus.PENDING_FOR_APPROVAL],
        "to": ClearanceStatus.COMPLETED,
    },
    "reject": {
        "from": [
            ClearanceStatus.PENDING,
            ClearanceStatus.IN_PROGRESS,
            ClearanceStatus.PENDING_FOR_APPROVAL,
        ],
        "to": ClearanceStatus.REJECTED,
    },
}

ITEM_TRANSITIONS = {
    "inspect": {
        "from": [ClearanceItemStatus.PENDING],
        "to": [ClearanceItemStatus.CLEARED, ClearanceItemStatus.DAMAGED, ClearanceItemStatus.LOST],
    },
    "reinspect": {
        "from": [ClearanceItemStatus.CLEARED, ClearanceItemStatus.RETURNED],
        "to": [ClearanceItemStatus.DAMAGED, ClearanceItemStatus.LOST],
    },
    "return": {
        "from": [ClearanceItemStatus.DAMAGED, ClearanceItemStatus.LOST],
        "to": [ClearanceItemStatus.RETURNED],
    },
    "close_out": {
        "from": list(ClearanceItemStatus),
        "to": [ClearanceItemStatus.CLEARED],
    },
}


def validate_clearance_transition(action: str, current: str) -> bool:
    """Return True if *action* may be applied to a request in *current*."""
    rule = CLEARANCE_TRANSITIONS.get(action)
    if rule is None:
        return False
    return current in rule["from"]


def validate_item_transition(action: str, current: str, new: str) -> bool:
    """Return True if an item may move from *current* to *new* via *action*."""
    rule = ITEM_TRANSITIONS.get(action)
    if rule is None:
        return False
    return current in rule["from"] and new in rule["to"]


def _enum_check(column, enum_cls):
    values = ", ".join(f"'{m.value}'" for m in enum_cls)
    return f"{column} IN ({values})"


class ClearanceRequest(db.Model):
    """A personnel clearance request gated on equipment accountability."""

    __tablename__ = "clearance_requests"
    __table_args__ = (
        db.CheckConstraint(_enum_check("type", ClearanceType), name="ck_clearance_requests_type"),
        db.CheckConstraint(_enum_check("status", ClearanceStatus), name="ck_clearance_requests_status"),
        db.Index("idx_clearance_requests_personnel_status", "personnel_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="CASCADE"),
        nullable=False,
    )
    type = db.Column(
        db.String(30), nullable=False,
        comment="Resignation | Retirement | Equipment Completion",
    )
    status = db.Column(
        db.String(30), nullable=False, default=ClearanceStatus.PENDING.value,
        comment="Pending | In Progress | Pending for Approval | Completed | Rejected",
    )
    reason = db.Column(db.Text, nullable=True, comment="Free text captured at intake")
    remarks = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_override = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when an administrator approved outside Pending for Approval",
    )
    override_reason = db.Column(db.Text, nullable=True)
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

    personnel = db.relationship("Personnel")
    items = db.relationship(
        "ClearanceInventoryItem",
        backref="clearance_request",
        cascade="all, delete-orphan",
        order_by="ClearanceInventoryItem.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "personnel_id": self.personnel_id,
            "personnel_name": self.personnel.full_name if self.personnel else None,
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "remarks": self.remarks,
            "rejection_reason": self.rejection_reason,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "is_override": self.is_override,
            "override_reason": self.override_reason,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<ClearanceRequest {self.id}: {self.type} [{self.status}]>"


class ClearanceInventoryItem(db.Model):
    """One equipment item tracked under one clearance request."""

    __tablename__ = "clearance_inventory"
    __table_args__ = (
        db.UniqueConstraint(
            "clearance_request_id", "inventory_id",
            name="uq_clearance_inventory_request_item",
        ),
        db.CheckConstraint(_enum_check("status", ClearanceItemStatus), name="ck_clearance_inventory_status"),
        db.Index("idx_clearance_inventory_item_status", "inventory_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    clearance_request_id = db.Column(
        db.Integer,
        db.ForeignKey("clearance_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    inventory_id = db.Column(
        db.Integer,
        db.ForeignKey("inventory.id", ondelete="CASCADE"),
        nullable=False,
    )
    personnel_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="CASCADE"),
        nullable=False,
    )
    status = db.Column(
        db.String(20), nullable=False, default=ClearanceItemStatus.PENDING.value,
        comment="Pending | Cleared | Damaged | Lost | Returned",
    )
    inspection_id = db.Column(
        db.Integer,
        db.ForeignKey("inspections.id", ondelete="SET NULL"),
        nullable=True,
    )
    inspector_id = db.Column(
        db.Integer,
        db.ForeignKey("personnel.id", ondelete="SET NULL"),
        nullable=True,
    )
    inspector_name = db.Column(db.String(255), nullable=True)
    inspection_date = db.Column(db.Date, nullable=True)
    return_date = db.Column(db.Date, nullable=True)
    remarks = db.Column(db.Text, nullable=True)

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
            "clearance_request_id": self.clearance_request_id,
            "inventory_id": self.inventory_id,
            "item_code": self.equipment.item_code if self.equipment else None,
            "item_name": self.equipment.item_name if self.equipment else None,
            "personnel_id": self.personnel_id,
            "status": self.status,
            "inspection_id": self.inspection_id,
            "inspector_id": self.inspector_id,
            "inspector_name": self.inspector_name,
            "inspection_date": self.inspection_date.isoformat() if self.inspection_date else None,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "remarks": self.remarks,
        }

    def __repr__(self):
        return f"<ClearanceInventoryItem {self.id}: request={self.clearance_request_id} item={self.inventory_id} [{self.status}]>"
