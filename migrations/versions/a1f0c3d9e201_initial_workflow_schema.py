"""initial_workflow_schema

Create shops, users, inspections, the approval workflow tables, the
versioned per-shop config overrides, timeout firings, the audit log and
the scheduled job registry.

Revision ID: a1f0c3d9e201
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1f0c3d9e201"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_fk():
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def _override_child(name, *columns, constraints=()):
    op.create_table(
        name,
        sa.Column("override_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        *columns,
        sa.ForeignKeyConstraint(["override_id"], ["workflow_config_overrides.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        *constraints,
    )
    op.create_index(f"ix_{name}_override_id", name, ["override_id"])


def upgrade():
    # ── Shops & users ────────────────────────────────────────────────────
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=200), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("role", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
    )
    op.create_index("ix_users_tenant_role", "users", ["tenant_id", "role"])

    # ── Inspections ──────────────────────────────────────────────────────
    op.create_table(
        "inspections",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference_number", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("urgency_level", sa.String(length=20), nullable=False),
        sa.Column("assigned_technician_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("customer_phone", sa.String(length=40), nullable=True),
        sa.Column("customer_email", sa.String(length=200), nullable=True),
        sa.Column("vehicle_description", sa.String(length=200), nullable=True),
        sa.Column("odometer_reading", sa.Integer(), nullable=True),
        sa.Column("previous_odometer_reading", sa.Integer(), nullable=True),
        sa.Column("vehicle_available", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flagged_for_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("state_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["assigned_technician_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "reference_number", name="uq_inspection_tenant_ref"),
    )
    op.create_index("ix_inspections_tenant_id", "inspections", ["tenant_id"])
    op.create_index(
        "ix_inspections_tenant_status_entered", "inspections",
        ["tenant_id", "status", "state_entered_at"],
    )

    op.create_table(
        "inspection_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("inspection_id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("component", sa.String(length=120), nullable=False),
        sa.Column("condition", sa.String(length=30), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("photo_count", sa.Integer(), nullable=False),
        sa.Column("voice_note_count", sa.Integer(), nullable=False),
        sa.Column("cost_estimate", sa.Float(), nullable=True),
        sa.Column("measurement_value", sa.Float(), nullable=True),
        sa.Column("measurement_min", sa.Float(), nullable=True),
        sa.Column("measurement_max", sa.Float(), nullable=True),
        sa.Column("measurement_unit", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_inspection_items_inspection_id", "inspection_items", ["inspection_id"])

    # ── Approval workflow ────────────────────────────────────────────────
    op.create_table(
        "approval_workflows",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("inspection_id", sa.Integer(), nullable=False),
        sa.Column("submitted_by", sa.Integer(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("assigned_to", sa.Integer(), nullable=True),
        sa.Column("priority", sa.String(length=20), nullable=False),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("manager_comments", sa.Text(), nullable=True),
        sa.Column("requested_changes", sa.JSON(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_to", sa.Integer(), nullable=True),
        sa.Column("review_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_started_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["submitted_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_to"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["approved_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["escalated_to"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["review_started_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_workflows_tenant_id", "approval_workflows", ["tenant_id"])
    op.create_index("ix_approval_workflows_inspection_id", "approval_workflows", ["inspection_id"])
    op.create_index(
        "ix_approval_workflows_tenant_status_priority", "approval_workflows",
        ["tenant_id", "status", "priority"],
    )
    op.create_index(
        "uq_approval_workflows_one_pending", "approval_workflows", ["inspection_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "approval_history",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("inspection_id", sa.Integer(), nullable=False),
        sa.Column("workflow_id", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("from_state", sa.String(length=30), nullable=True),
        sa.Column("to_state", sa.String(length=30), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_history_tenant_id", "approval_history", ["tenant_id"])
    op.create_index("ix_approval_history_workflow_id", "approval_history", ["workflow_id"])
    op.create_index(
        "ix_approval_history_inspection_created", "approval_history", ["inspection_id", "created_at"],
    )

    op.create_table(
        "workflow_timeout_firings",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("inspection_id", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=30), nullable=False),
        sa.Column("state_entered_key", sa.String(length=40), nullable=False),
        sa.Column("kind", sa.String(length=80), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["inspection_id"], ["inspections.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("inspection_id", "state", "state_entered_key", "kind", name="uq_timeout_firing"),
    )
    op.create_index("ix_workflow_timeout_firings_tenant_id", "workflow_timeout_firings", ["tenant_id"])

    # ── Per-shop config overrides ────────────────────────────────────────
    op.create_table(
        "workflow_config_overrides",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "version", name="uq_workflow_override_tenant_version"),
    )
    op.create_index("ix_workflow_config_overrides_tenant_id", "workflow_config_overrides", ["tenant_id"])
    op.create_index("ix_workflow_override_active", "workflow_config_overrides", ["tenant_id", "is_active"])

    _override_child(
        "workflow_override_business_rules",
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        constraints=(sa.UniqueConstraint("override_id", "key", name="uq_override_business_rule_key"),),
    )
    _override_child(
        "workflow_override_transitions",
        sa.Column("name", sa.String(length=60), nullable=True),
        sa.Column("from_state", sa.String(length=30), nullable=False),
        sa.Column("to_state", sa.String(length=30), nullable=False),
        sa.Column("allowed_roles", sa.JSON(), nullable=True),
        sa.Column("required_conditions", sa.JSON(), nullable=True),
        sa.Column("optional_conditions", sa.JSON(), nullable=True),
        sa.Column("validation_checks", sa.JSON(), nullable=True),
        sa.Column("pre_actions", sa.JSON(), nullable=True),
        sa.Column("post_actions", sa.JSON(), nullable=True),
        sa.Column("auto_triggers", sa.JSON(), nullable=True),
        sa.Column("history_action", sa.String(length=40), nullable=True),
    )
    _override_child(
        "workflow_override_disabled_notifications",
        sa.Column("trigger_event", sa.String(length=80), nullable=False),
    )
    _override_child(
        "workflow_override_validation_rules",
        sa.Column("rule_name", sa.String(length=80), nullable=False),
        sa.Column("scope", sa.String(length=20), nullable=False),
        sa.Column("validation_logic", sa.String(length=60), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warning_message", sa.Text(), nullable=True),
        sa.Column("params", sa.JSON(), nullable=True),
    )
    _override_child(
        "workflow_override_timeout_rules",
        sa.Column("state", sa.String(length=30), nullable=False),
        sa.Column("timeout_minutes", sa.Integer(), nullable=False),
        sa.Column("escalation_action", sa.String(length=40), nullable=True),
        sa.Column("notify_before_minutes", sa.JSON(), nullable=True),
        sa.Column("auto_action", sa.String(length=40), nullable=True),
    )
    _override_child(
        "workflow_override_escalation_rules",
        sa.Column("priority", sa.String(length=20), nullable=False),
        sa.Column("threshold_minutes", sa.Integer(), nullable=False),
        sa.Column("escalate_to_role", sa.String(length=30), nullable=False),
        sa.Column("notify_immediately", sa.Boolean(), nullable=True),
    )

    # ── Audit & scheduling ───────────────────────────────────────────────
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
    op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_action", "audit_logs", ["action"])
    op.create_index("idx_audit_ts", "audit_logs", ["occurred_at"])

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("schedule_type", sa.String(length=30), nullable=True),
        sa.Column("schedule_config", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(length=20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_name"),
    )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_table("audit_logs")
    for name in (
        "workflow_override_escalation_rules",
        "workflow_override_timeout_rules",
        "workflow_override_validation_rules",
        "workflow_override_disabled_notifications",
        "workflow_override_transitions",
        "workflow_override_business_rules",
    ):
        op.drop_table(name)
    op.drop_table("workflow_config_overrides")
    op.drop_table("workflow_timeout_firings")
    op.drop_table("approval_history")
    op.drop_table("approval_workflows")
    op.drop_table("inspection_items")
    op.drop_table("inspections")
    op.drop_table("users")
    op.drop_table("tenants")
