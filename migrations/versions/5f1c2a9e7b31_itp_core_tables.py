"""itp_core_tables

Creates the ITP tracker tables:
  - projects, lots                       — project / lot hierarchy
  - itp_templates, itp_checklist_items   — reusable ordered checklists
  - itp_instances                        — template bound to a lot (+ JSON snapshot)
  - ncrs                                 — non-conformance reports
  - itp_completions                      — completion ledger, one row per instance+item
  - itp_completion_attachments           — evidence references
  - test_results                         — lot test results (conformance signal)
  - notifications                        — in-app notifications

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5f1c2a9e7b31
Revises:
Create Date: 2026-10-19 09:12:44.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5f1c2a9e7b31'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Project / Lot ─────────────────────────────────────────────────────
    if "projects" not in existing:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("code", sa.String(length=30), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "lots" not in existing:
        op.create_table(
            "lots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("lot_number", sa.String(length=50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("activity_type", sa.String(length=100), nullable=True),
            sa.Column(
                "status", sa.String(length=30), nullable=False, server_default="not_started",
                comment="not_started | in_progress | awaiting_test | completed | ncr_raised | conformed | claimed",
            ),
            sa.Column("conformed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("conformed_by", sa.String(length=150), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "lot_number", name="uq_lot_project_number"),
        )
        op.create_index("ix_lots_project_id", "lots", ["project_id"])

    # ── Templates ─────────────────────────────────────────────────────────
    if "itp_templates" not in existing:
        op.create_table(
            "itp_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("activity_type", sa.String(length=100), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_itp_templates_project_id", "itp_templates", ["project_id"])

    if "itp_checklist_items" not in existing:
        op.create_table(
            "itp_checklist_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("responsible_party", sa.String(length=30), nullable=False,
                      server_default="contractor"),
            sa.Column("point_type", sa.String(length=20), nullable=False, server_default="standard",
                      comment="standard | witness | hold_point"),
            sa.Column("evidence_required", sa.String(length=20), nullable=False, server_default="none",
                      comment="none | photo | test | document"),
            sa.Column("test_type", sa.String(length=100), nullable=True),
            sa.Column("acceptance_criteria", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["itp_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_itp_checklist_items_template_id", "itp_checklist_items", ["template_id"])

    if "itp_instances" not in existing:
        op.create_table(
            "itp_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("lot_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=True),
            sa.Column("template_snapshot", sa.JSON(), nullable=False),
            sa.Column("assigned_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_id"], ["itp_templates.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_itp_instances_lot_id", "itp_instances", ["lot_id"], unique=True)

    # ── NCR ───────────────────────────────────────────────────────────────
    if "ncrs" not in existing:
        op.create_table(
            "ncrs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("lot_id", sa.Integer(), nullable=True),
            sa.Column("ncr_number", sa.String(length=30), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False),
            sa.Column("severity", sa.String(length=10), nullable=False, server_default="minor"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="open"),
            sa.Column("qm_approval_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("checklist_item_id", sa.Integer(), nullable=True),
            sa.Column("completion_id", sa.Integer(), nullable=True),
            sa.Column("raised_by", sa.String(length=150), nullable=True),
            sa.Column("closed_by", sa.String(length=150), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "ncr_number", name="uq_ncr_project_number"),
        )
        op.create_index("ix_ncrs_project_id", "ncrs", ["project_id"])
        op.create_index("ix_ncrs_lot_id", "ncrs", ["lot_id"])

    # ── Completion ledger ─────────────────────────────────────────────────
    if "itp_completions" not in existing:
        op.create_table(
            "itp_completions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("itp_instance_id", sa.Integer(), nullable=False),
            sa.Column("checklist_item_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | completed | not_applicable | failed"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.String(length=150), nullable=True),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_by", sa.String(length=150), nullable=True),
            sa.Column("witness_present", sa.Boolean(), nullable=True),
            sa.Column("witness_name", sa.String(length=200), nullable=True),
            sa.Column("witness_company", sa.String(length=200), nullable=True),
            sa.Column("linked_ncr_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["itp_instance_id"], ["itp_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["linked_ncr_id"], ["ncrs.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("itp_instance_id", "checklist_item_id", name="uq_completion_instance_item"),
        )
        op.create_index("ix_itp_completions_itp_instance_id", "itp_completions", ["itp_instance_id"])

    if "itp_completion_attachments" not in existing:
        op.create_table(
            "itp_completion_attachments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("completion_id", sa.Integer(), nullable=False),
            sa.Column("filename", sa.String(length=255), nullable=False),
            sa.Column("file_url", sa.String(length=1000), nullable=False),
            sa.Column("caption", sa.Text(), nullable=True),
            sa.Column("gps_latitude", sa.Float(), nullable=True),
            sa.Column("gps_longitude", sa.Float(), nullable=True),
            sa.Column("uploaded_by", sa.String(length=150), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["completion_id"], ["itp_completions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_itp_completion_attachments_completion_id",
                        "itp_completion_attachments", ["completion_id"])

    # ── Test results / notifications ──────────────────────────────────────
    if "test_results" not in existing:
        op.create_table(
            "test_results",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("lot_id", sa.Integer(), nullable=False),
            sa.Column("test_type", sa.String(length=100), nullable=False),
            sa.Column("pass_fail", sa.String(length=10), nullable=False, server_default="pending"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="entered"),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_results_lot_id", "test_results", ["lot_id"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("notification_type", sa.String(length=40), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("link_url", sa.String(length=500), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_notification_type", "notifications", ["notification_type"])


def downgrade():
    for table in (
        "notifications",
        "test_results",
        "itp_completion_attachments",
        "itp_completions",
        "ncrs",
        "itp_instances",
        "itp_checklist_items",
        "itp_templates",
        "lots",
        "projects",
    ):
        op.drop_table(table)
