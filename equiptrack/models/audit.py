"""
EquipTrack: Audit model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import datetime, timezone

from flask import g, has_request_context

from equiptrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "clearance_request", "clearance_item", "accountability_record",
    "inspection", "equipment",
}

AUDIT_ACTIONS = {
    # Clearance lifecycle
    "clearance.create",
    "clearance.auto_advance",
    "clearance.approve",
    "clearance.override_approve",
    "clearance.reject",
    "clearance.link_losses",
    # Accountability ledger
    "accountability.record_loss",
    "accountability.settle",
    "accountability.return",
    "accountability.unlink",
    # Inspection workflow
    "inspection.schedule",
    "inspection.reschedule",
    "inspection.cancel",
    "inspection.record_outcome",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries an old→new snapshot for
    status changes and the business payload (amounts, record ids) otherwise.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="clearance_request | accountability_record | inspection | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity as string",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="clearance.approve | accountability.settle | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Username or 'system'",
    )
    request_id = db.Column(
        db.String(32), nullable=True,
        comment="X-Request-ID of the HTTP request that caused the change",
    )

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    request_id = None
    if has_request_context():
        request_id = getattr(g, "request_id", None)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        request_id=request_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
