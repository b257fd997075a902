"""smokey_initial_schema

Create the planning engine tables: clients, decisions, timeline phases,
plans, plan tasks, checkpoints, tool sessions and the audit trail.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f7b901"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "clients" not in existing_tables:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("canonical_url", sa.String(length=500), nullable=False),
            sa.Column("contract_start_date", sa.Date(), nullable=False),
            sa.Column("contract_length_months", sa.Integer(), nullable=False, server_default="12"),
            sa.Column("plan_tier", sa.String(length=20), nullable=False, server_default="starter"),
            _ts("created_at"),
            sa.CheckConstraint("plan_tier IN ('starter','growth','enterprise')",
                               name="ck_client_plan_tier"),
            sa.CheckConstraint("contract_length_months BETWEEN 1 AND 36",
                               name="ck_client_contract_length"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "timeline_phases" not in existing_tables:
        op.create_table(
            "timeline_phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("phase_name", sa.String(length=200), nullable=False),
            sa.Column("month_offset", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("scheduled_month", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("scheduled_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="upcoming"),
            sa.Column("plan_type", sa.String(length=50), nullable=False),
            sa.Column("tool_sequence", sa.JSON(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint(
                "status IN ('upcoming','rescheduled','in_progress','completed','skipped')",
                name="ck_phase_status",
            ),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_timeline_phases_client_id", "timeline_phases", ["client_id"])
        op.create_index("idx_phase_client_date", "timeline_phases",
                        ["client_id", "scheduled_date"])

    if "decisions" not in existing_tables:
        op.create_table(
            "decisions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("decision_type", sa.String(length=30), nullable=False),
            sa.Column("signal_id", sa.String(length=100), nullable=True),
            sa.Column("summary", sa.String(length=500), nullable=False),
            sa.Column("reasoning", sa.Text(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=False),
            sa.Column("context", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            _ts("created_at"),
            sa.CheckConstraint(
                "decision_type IN ('create_plan','pause_plan','resume_plan',"
                "'branch_plan','complete_plan','queue_plan')",
                name="ck_decision_type",
            ),
            sa.CheckConstraint("confidence BETWEEN 0 AND 1", name="ck_decision_confidence"),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_decisions_client_id", "decisions", ["client_id"])
        op.create_index("idx_decision_client_created", "decisions", ["client_id", "created_at"])

    if "plans" not in existing_tables:
        op.create_table(
            "plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("plan_type", sa.String(length=50), nullable=False),
            sa.Column("objective", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
            sa.Column("scheduled_month", sa.Integer(), nullable=True),
            sa.Column("depends_on_plan_id", sa.Integer(), nullable=True),
            sa.Column("blocking", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("reassess_after"),
            sa.Column("source_decision_id", sa.Integer(), nullable=True),
            sa.Column("branch_reason", sa.Text(), nullable=True),
            sa.Column("timeline_phase_id", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            _ts("started_at"),
            _ts("completed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.CheckConstraint(
                "status IN ('queued','active','paused','completed','aborted')",
                name="ck_plan_status",
            ),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["depends_on_plan_id"], ["plans.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["source_decision_id"], ["decisions.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["timeline_phase_id"], ["timeline_phases.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_plans_client_id", "plans", ["client_id"])
        op.create_index("ix_plans_depends_on_plan_id", "plans", ["depends_on_plan_id"])
        op.create_index("ix_plans_source_decision_id", "plans", ["source_decision_id"])
        op.create_index("ix_plans_timeline_phase_id", "plans", ["timeline_phase_id"])
        op.create_index("idx_plan_client_status", "plans", ["client_id", "status"])
        op.create_index("idx_plan_reassess", "plans", ["status", "reassess_after"])

    if "plan_tasks" not in existing_tables:
        op.create_table(
            "plan_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("task_number", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("tool", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("has_checkpoint", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("tool_output", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("executed_by", sa.String(length=150), nullable=True),
            _ts("started_at"),
            _ts("completed_at"),
            _ts("created_at"),
            sa.UniqueConstraint("plan_id", "task_number", name="uq_task_plan_number"),
            sa.CheckConstraint("status IN ('pending','in_progress','done','failed')",
                               name="ck_task_status"),
            sa.CheckConstraint("task_number >= 1", name="ck_task_number_positive"),
            sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_plan_tasks_plan_id", "plan_tasks", ["plan_id"])

    if "checkpoints" not in existing_tables:
        op.create_table(
            "checkpoints",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("result", sa.String(length=20), nullable=False),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("reasoning", sa.Text(), nullable=True),
            sa.Column("method", sa.String(length=30), nullable=False),
            sa.Column("metrics", sa.JSON(), nullable=True),
            sa.Column("evaluated_by", sa.String(length=150), nullable=True),
            _ts("evaluated_at"),
            sa.CheckConstraint("result IN ('pass','fail','needs_review')",
                               name="ck_checkpoint_result"),
            sa.CheckConstraint("method IN ('automatic','automatic_with_audit','manual')",
                               name="ck_checkpoint_method"),
            sa.ForeignKeyConstraint(["task_id"], ["plan_tasks.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id"),
        )

    if "tool_sessions" not in existing_tables:
        op.create_table(
            "tool_sessions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("tool", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="created"),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("results", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("launched_at"),
            _ts("completed_at"),
            sa.CheckConstraint("status IN ('created','launched','completed','failed')",
                               name="ck_tool_session_status"),
            sa.ForeignKeyConstraint(["task_id"], ["plan_tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tool_sessions_task_id", "tool_sessions", ["task_id"])
        op.create_index("ix_tool_sessions_plan_id", "tool_sessions", ["plan_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_client", "audit_logs", ["client_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())
    for table in ("audit_logs", "tool_sessions", "checkpoints", "plan_tasks",
                  "plans", "decisions", "timeline_phases", "clients"):
        if table in existing_tables:
            op.drop_table(table)
