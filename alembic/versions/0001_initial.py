"""Plans, execution history, lessons and guardrails.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), **kwargs)


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("goal_hash", sa.String(32), nullable=False),
        sa.Column("status", sa.String(), server_default="draft"),
        sa.Column("strategy", sa.String(), server_default="balanced"),
        sa.Column("current_version", sa.Integer(), server_default="1"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_plans_goal_hash", "plans", ["goal_hash"])

    op.create_table(
        "plan_versions",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("plan_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("plans.id", ondelete="CASCADE")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("strategy", sa.String(), nullable=False),
        sa.Column("estimated_minutes", sa.Float(), server_default="0"),
        sa.Column("risk_level", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("plan_id", "version", name="uq_plan_version"),
    )

    op.create_table(
        "plan_adaptations",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("plan_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("plans.id", ondelete="CASCADE")),
        sa.Column("from_version", sa.Integer(), nullable=False),
        sa.Column("to_version", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("changes", postgresql.JSONB(), server_default="{}"),
        sa.Column("impact", postgresql.JSONB(), server_default="{}"),
        _timestamp("created_at"),
    )

    op.create_table(
        "event_log",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("plan_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("plans.id", ondelete="CASCADE")),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("agent", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
    )

    # Learning tables are not tied to a plan row.
    op.create_table(
        "execution_history",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("goal_hash", sa.String(32), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("estimated_minutes", sa.Float(), nullable=False),
        sa.Column("actual_minutes", sa.Float(), nullable=True),
        sa.Column("depends_on", postgresql.ARRAY(sa.String()), server_default="{}"),
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("status", sa.String(), server_default="running"),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_execution_history_goal_hash", "execution_history", ["goal_hash"])
    op.create_index("ix_execution_history_agent_task", "execution_history", ["agent_type", "task_type"])
    op.create_index("ix_execution_history_started", "execution_history", ["started_at"])

    op.create_table(
        "lessons",
        sa.Column("signature", sa.String(64), primary_key=True),
        sa.Column("lesson_type", sa.String(), nullable=False),
        sa.Column("pattern", postgresql.JSONB(), nullable=False),
        sa.Column("recommendation", sa.Text(), nullable=False),
        sa.Column("details", postgresql.JSONB(), server_default="{}"),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("times_applied", sa.Integer(), server_default="0"),
        sa.Column("times_successful", sa.Integer(), server_default="0"),
        sa.Column("times_failed", sa.Integer(), server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("last_applied_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_lessons_lesson_type", "lessons", ["lesson_type"])

    op.create_table(
        "guardrails",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", postgresql.JSONB(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("guardrails")
    op.drop_index("ix_lessons_lesson_type", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_execution_history_started", table_name="execution_history")
    op.drop_index("ix_execution_history_agent_task", table_name="execution_history")
    op.drop_index("ix_execution_history_goal_hash", table_name="execution_history")
    op.drop_table("execution_history")
    op.drop_table("event_log")
    op.drop_table("plan_adaptations")
    op.drop_table("plan_versions")
    op.drop_index("ix_plans_goal_hash", table_name="plans")
    op.drop_table("plans")
