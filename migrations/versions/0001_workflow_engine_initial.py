"""workflow_engine_initial

Create workflow, task, notification, preference, audit, user and
scheduled-job tables.

Revision ID: 0001_workflow_engine
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0001_workflow_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "workflows" not in existing_tables:
        op.create_table(
            "workflows",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="PENDING"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="NORMAL"),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("assigned_to", sa.String(length=150), nullable=True),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("orchestrator_execution_id", sa.String(length=100), nullable=True),
            sa.Column("orchestrator_status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_workflow_status", "workflows", ["status"])
        op.create_index("idx_workflow_assigned", "workflows", ["assigned_to"])

    if "task_executions" not in existing_tables:
        op.create_table(
            "task_executions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("task_type", sa.String(length=60), nullable=False),
            sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="PENDING"),
            sa.Column("interrupt_type", sa.String(length=40), nullable=True),
            sa.Column("executor_type", sa.String(length=10), nullable=False, server_default="AI"),
            sa.Column("sla_hours", sa.Float(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sla_due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sla_status", sa.String(length=20), nullable=False, server_default="ON_TIME"),
            sa.Column("sla_breached_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("output_data", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("sla_hours IS NULL OR sla_hours > 0", name="ck_task_sla_hours_positive"),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_task_sla_scan", "task_executions", ["sla_status", "sla_due_at"])
        op.create_index("idx_task_workflow", "task_executions", ["workflow_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=150), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("priority", sa.String(length=10), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("action_url", sa.String(length=500), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("show_popup", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("dedup_key", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "dedup_key", name="uq_notification_user_dedup"),
        )
        op.create_index("idx_notification_user_created", "notifications", ["user_id", "created_at"])

    if "notification_preferences" not in existing_tables:
        op.create_table(
            "notification_preferences",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=150), nullable=False),
            sa.Column("show_popups_for_urgent", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("show_popups_for_high", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("show_popups_for_normal", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_popups_for_low", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("enable_task_interrupts", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("enable_workflow_failures", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("enable_task_completions", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("enable_sla_warnings", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notification_preferences_user_id", "notification_preferences",
                        ["user_id"], unique=True)

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("actor_type", sa.String(length=10), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("resource_type", sa.String(length=30), nullable=False),
            sa.Column("resource_id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=True),
            sa.Column("before", sa.JSON(), nullable=True),
            sa.Column("after", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_resource", "audit_events", ["resource_type", "resource_id"])
        op.create_index("idx_audit_workflow", "audit_events", ["workflow_id"])
        op.create_index("idx_audit_action", "audit_events", ["action"])
        op.create_index("idx_audit_created", "audit_events", ["created_at"])

    if "user_profiles" not in existing_tables:
        op.create_table(
            "user_profiles",
            sa.Column("id", sa.String(length=150), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=40), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_user_profiles_role", "user_profiles", ["role"])

    if "scheduled_jobs" not in existing_tables:
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
    for table in (
        "scheduled_jobs",
        "user_profiles",
        "audit_events",
        "notification_preferences",
        "notifications",
        "task_executions",
        "workflows",
    ):
        op.drop_table(table)
