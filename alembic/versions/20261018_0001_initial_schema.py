"""Create events, job queue, agent run, step and artifact tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("processing_status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_tenant_id", "events", ["tenant_id"], unique=False)
    op.create_index("ix_events_user_id", "events", ["user_id"], unique=False)
    op.create_index("ix_events_event_type", "events", ["event_type"], unique=False)
    op.create_index("ix_events_entity_id", "events", ["entity_id"], unique=False)
    op.create_index(
        "ix_events_processing_status",
        "events",
        ["processing_status"],
        unique=False,
    )
    op.create_index(
        "idx_events_tenant_created",
        "events",
        ["tenant_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "cm_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("priority BETWEEN 1 AND 9", name="ck_cm_jobs_priority_range"),
        sa.ForeignKeyConstraint(["event_id"], ["events.event_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_cm_jobs_tenant_id", "cm_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_cm_jobs_user_id", "cm_jobs", ["user_id"], unique=False)
    op.create_index("ix_cm_jobs_event_id", "cm_jobs", ["event_id"], unique=False)
    op.create_index("ix_cm_jobs_job_type", "cm_jobs", ["job_type"], unique=False)
    op.create_index("ix_cm_jobs_status", "cm_jobs", ["status"], unique=False)
    op.create_index("ix_cm_jobs_priority", "cm_jobs", ["priority"], unique=False)
    op.create_index("ix_cm_jobs_worker_id", "cm_jobs", ["worker_id"], unique=False)
    op.create_index(
        "idx_cm_jobs_queue",
        "cm_jobs",
        ["status", "priority", "retry_after", "created_at"],
        unique=False,
    )

    op.create_table(
        "agent_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("planner", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("steps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("meta_json", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_agent_runs_org_id", "agent_runs", ["org_id"], unique=False)
    op.create_index("ix_agent_runs_job_id", "agent_runs", ["job_id"], unique=False)
    op.create_index("ix_agent_runs_planner", "agent_runs", ["planner"], unique=False)
    op.create_index("ix_agent_runs_status", "agent_runs", ["status"], unique=False)
    op.create_index(
        "idx_agent_runs_org_started",
        "agent_runs",
        ["org_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "agent_steps",
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("step_no", sa.Integer(), nullable=False),
        sa.Column("tool", sa.String(), nullable=False),
        sa.Column("input_hash", sa.String(), nullable=False),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("output_ref", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["agent_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("step_id"),
        sa.UniqueConstraint("run_id", "step_no", name="uq_agent_steps_run_step"),
    )
    op.create_index("ix_agent_steps_run_id", "agent_steps", ["run_id"], unique=False)
    op.create_index("ix_agent_steps_tool", "agent_steps", ["tool"], unique=False)
    op.create_index("ix_agent_steps_status", "agent_steps", ["status"], unique=False)

    op.create_table(
        "tool_artifacts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("ref", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["step_id"], ["agent_steps.step_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tool_artifacts_step_id", "tool_artifacts", ["step_id"], unique=False)
    op.create_index("ix_tool_artifacts_kind", "tool_artifacts", ["kind"], unique=False)
    op.create_index(
        "idx_tool_artifacts_step_kind",
        "tool_artifacts",
        ["step_id", "kind"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_tool_artifacts_step_kind", table_name="tool_artifacts")
    op.drop_index("ix_tool_artifacts_kind", table_name="tool_artifacts")
    op.drop_index("ix_tool_artifacts_step_id", table_name="tool_artifacts")
    op.drop_table("tool_artifacts")
    op.drop_index("ix_agent_steps_status", table_name="agent_steps")
    op.drop_index("ix_agent_steps_tool", table_name="agent_steps")
    op.drop_index("ix_agent_steps_run_id", table_name="agent_steps")
    op.drop_table("agent_steps")
    op.drop_index("idx_agent_runs_org_started", table_name="agent_runs")
    op.drop_index("ix_agent_runs_status", table_name="agent_runs")
    op.drop_index("ix_agent_runs_planner", table_name="agent_runs")
    op.drop_index("ix_agent_runs_job_id", table_name="agent_runs")
    op.drop_index("ix_agent_runs_org_id", table_name="agent_runs")
    op.drop_table("agent_runs")
    op.drop_index("idx_cm_jobs_queue", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_worker_id", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_priority", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_status", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_job_type", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_event_id", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_user_id", table_name="cm_jobs")
    op.drop_index("ix_cm_jobs_tenant_id", table_name="cm_jobs")
    op.drop_table("cm_jobs")
    op.drop_index("idx_events_tenant_created", table_name="events")
    op.drop_index("ix_events_processing_status", table_name="events")
    op.drop_index("ix_events_entity_id", table_name="events")
    op.drop_index("ix_events_event_type", table_name="events")
    op.drop_index("ix_events_user_id", table_name="events")
    op.drop_index("ix_events_tenant_id", table_name="events")
    op.drop_table("events")
