"""initial equiptrack schema

Revision ID: 4c1e7a9b2d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates the personnel directory projection, equipment registry,
inspections, clearance requests and items, the accountability ledger,
its per-(personnel, clearance) summary and the audit trail.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "4c1e7a9b2d10"
down_revision = None
branch_labels = None
depends_on = None


def _table_names():
    bind = op.get_bind()
    return set(sa_inspect(bind).get_table_names())


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    tables = _table_names()

    if "personnel" not in tables:
        op.create_table(
            "personnel",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("middle_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("username", sa.String(length=100), nullable=True),
            sa.Column("rank", sa.String(length=60), nullable=True),
            sa.Column("badge_number", sa.String(length=40), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
        )
        op.create_index("ix_personnel_badge_number", "personnel", ["badge_number"], unique=False)

    if "inventory" not in tables:
        op.create_table(
            "inventory",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("item_code", sa.String(length=50), nullable=False),
            sa.Column("item_name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("condition_status", sa.String(length=30), nullable=False),
            sa.Column("assigned_personnel_id", sa.Integer(), nullable=True),
            sa.Column("assigned_to", sa.String(length=255), nullable=True),
            sa.Column("assigned_date", sa.Date(), nullable=True),
            sa.Column("unassigned_date", sa.Date(), nullable=True),
            sa.Column("value", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("current_value", sa.Numeric(precision=12, scale=2), nullable=True),
            sa.Column("current_location", sa.String(length=150), nullable=True),
            sa.Column("last_checked", sa.Date(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.CheckConstraint(
                "condition_status IN ('Good', 'Needs Maintenance', 'Damaged', "
                "'Under Repair', 'Retired', 'Lost')",
                name="ck_inventory_condition_status",
            ),
            sa.ForeignKeyConstraint(["assigned_personnel_id"], ["personnel.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("item_code"),
        )
        op.create_index("idx_inventory_assigned", "inventory", ["assigned_personnel_id"], unique=False)

    if "clearance_requests" not in tables:
        op.create_table(
            "clearance_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("personnel_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("approved_by", sa.String(length=150), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_override", sa.Boolean(), nullable=False),
            sa.Column("override_reason", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.CheckConstraint(
                "type IN ('Resignation', 'Retirement', 'Equipment Completion')",
                name="ck_clearance_requests_type",
            ),
            sa.CheckConstraint(
                "status IN ('Pending', 'In Progress', 'Pending for Approval', "
                "'Completed', 'Rejected')",
                name="ck_clearance_requests_status",
            ),
            sa.ForeignKeyConstraint(["personnel_id"], ["personnel.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "idx_clearance_requests_personnel_status",
            "clearance_requests", ["personnel_id", "status"], unique=False,
        )

    if "inspections" not in tables:
        op.create_table(
            "inspections",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("equipment_id", sa.Integer(), nullable=False),
            sa.Column("inspector_id", sa.Integer(), nullable=True),
            sa.Column("inspector_name", sa.String(length=255), nullable=True),
            sa.Column("personnel_id", sa.Integer(), nullable=True),
            sa.Column("clearance_request_id", sa.Integer(), nullable=True),
            sa.Column("scheduled_date", sa.Date(), nullable=False),
            sa.Column("rescheduled_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("findings", sa.Text(), nullable=True),
            sa.Column("recommendations", sa.Text(), nullable=True),
            sa.Column("equipment_status_after", sa.String(length=30), nullable=True),
            sa.Column("cancel_reason", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.CheckConstraint(
                "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED')",
                name="ck_inspections_status",
            ),
            sa.ForeignKeyConstraint(["equipment_id"], ["inventory.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["inspector_id"], ["personnel.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["personnel_id"], ["personnel.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(
                ["clearance_request_id"], ["clearance_requests.id"], ondelete="SET NULL",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_inspections_status", "inspections", ["status"], unique=False)
        # One PENDING inspection per equipment item
        op.create_index(
            "uq_inspections_pending_equipment",
            "inspections", ["equipment_id"], unique=True,
            postgresql_where=sa.text("status = 'PENDING'"),
            sqlite_where=sa.text("status = 'PENDING'"),
        )

    if "clearance_inventory" not in tables:
        op.create_table(
            "clearance_inventory",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("clearance_request_id", sa.Integer(), nullable=False),
            sa.Column("inventory_id", sa.Integer(), nullable=False),
            sa.Column("personnel_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("inspection_id", sa.Integer(), nullable=True),
            sa.Column("inspector_id", sa.Integer(), nullable=True),
            sa.Column("inspector_name", sa.String(length=255), nullable=True),
            sa.Column("inspection_date", sa.Date(), nullable=True),
            sa.Column("return_date", sa.Date(), nullable=True),
            sa.Column("remarks", sa.Text(), nullable=True),
            *_timestamps(),
            sa.CheckConstraint(
                "status IN ('Pending', 'Cleared', 'Damaged', 'Lost', 'Returned')",
                name="ck_clearance_inventory_status",
            ),
            sa.ForeignKeyConstraint(
                ["clearance_request_id"], ["clearance_requests.id"], ondelete="CASCADE",
            ),
            sa.ForeignKeyConstraint(["inventory_id"], ["inventory.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["personnel_id"], ["personnel.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["inspector_id"], ["personnel.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "clearance_request_id", "inventory_id",
                name="uq_clearance_inventory_request_item",
            ),
        )
        op.create_index(
            "ix_clearance_inventory_clearance_request_id",
            "clearance_inventory", ["clearance_request_id"], unique=False,
        )
        op.create_index(
            "idx_clearance_inventory_item_status",
            "clearance_inventory", ["inventory_id", "status"], unique=False,
        )

    if "accountability_records" not in tables:
        op.create_table(
            "accountability_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("personnel_id", sa.Integer(), nullable=False),
            sa.Column("inventory_id", sa.Integer(), nullable=False),
            sa.Column("inspection_id", sa.Integer(), nullable=True),
            sa.Column("clearance_request_id", sa.Integer(), nullable=True),
            sa.Column("record_type", sa.String(length=20), nullable=False),
            sa.Column("source_type", sa.String(length=20), nullable=False),
            sa.Column("amount_due", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("amount_paid", sa.Numeric(precision=12, scale=2), nullable=True),
            sa.Column("record_date", sa.Date(), nullable=False),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("is_settled", sa.Boolean(), nullable=False),
            sa.Column("settlement_date", sa.Date(), nullable=True),
            sa.Column("settlement_method", sa.String(length=50), nullable=True),
            sa.Column("settlement_remarks", sa.Text(), nullable=True),
            sa.Column("equipment_returned", sa.Boolean(), nullable=False),
            sa.Column("return_date", sa.Date(), nullable=True),
            sa.Column("return_remarks", sa.Text(), nullable=True),
            *_timestamps(),
            sa.CheckConstraint("amount_due >= 0", name="ck_accountability_amount_non_negative"),
            sa.CheckConstraint(
                "record_type IN ('LOST', 'DAMAGED', 'RETURNED', 'REPAIRED')",
                name="ck_accountability_record_type",
            ),
            sa.CheckConstraint(
                "source_type IN ('routine', 'clearance-linked')",
                name="ck_accountability_source_type",
            ),
            sa.ForeignKeyConstraint(["personnel_id"], ["personnel.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["inventory_id"], ["inventory.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(
                ["clearance_request_id"], ["clearance_requests.id"], ondelete="SET NULL",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "idx_accountability_personnel_settled",
            "accountability_records", ["personnel_id", "is_settled"], unique=False,
        )
        op.create_index(
            "idx_accountability_personnel_item",
            "accountability_records", ["personnel_id", "inventory_id"], unique=False,
        )
        op.create_index(
            "idx_accountability_clearance",
            "accountability_records", ["clearance_request_id"], unique=False,
        )

    if "personnel_accountability_summaries" not in tables:
        op.create_table(
            "personnel_accountability_summaries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("personnel_id", sa.Integer(), nullable=False),
            sa.Column("clearance_request_id", sa.Integer(), nullable=True),
            sa.Column("personnel_name", sa.String(length=255), nullable=True),
            sa.Column("rank", sa.String(length=60), nullable=True),
            sa.Column("badge_number", sa.String(length=40), nullable=True),
            sa.Column("clearance_type", sa.String(length=30), nullable=True),
            sa.Column("clearance_status", sa.String(length=30), nullable=True),
            sa.Column("total_equipment_count", sa.Integer(), nullable=False),
            sa.Column("lost_equipment_count", sa.Integer(), nullable=False),
            sa.Column("damaged_equipment_count", sa.Integer(), nullable=False),
            sa.Column("lost_equipment_value", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("damaged_equipment_value", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("total_outstanding_amount", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("accountability_status", sa.String(length=20), nullable=False),
            sa.Column("last_inspection_date", sa.Date(), nullable=True),
            sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "accountability_status IN ('UNSETTLED', 'SETTLED')",
                name="ck_accountability_summary_status",
            ),
            sa.ForeignKeyConstraint(["personnel_id"], ["personnel.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["clearance_request_id"], ["clearance_requests.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "personnel_id", "clearance_request_id",
                name="uq_accountability_summary_key",
            ),
        )
        # UNIQUE treats NULLs as distinct; the routine key needs its own index
        op.create_index(
            "uq_accountability_summary_routine",
            "personnel_accountability_summaries", ["personnel_id"], unique=True,
            postgresql_where=sa.text("clearance_request_id IS NULL"),
            sqlite_where=sa.text("clearance_request_id IS NULL"),
        )

    if "audit_logs" not in tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("request_id", sa.String(length=32), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)
        op.create_index("idx_audit_actor", "audit_logs", ["actor"], unique=False)
        op.create_index("idx_audit_action", "audit_logs", ["action"], unique=False)
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"], unique=False)


def downgrade():
    tables = _table_names()
    for name in (
        "audit_logs",
        "personnel_accountability_summaries",
        "accountability_records",
        "clearance_inventory",
        "inspections",
        "clearance_requests",
        "inventory",
        "personnel",
    ):
        if name in tables:
            op.drop_table(name)
