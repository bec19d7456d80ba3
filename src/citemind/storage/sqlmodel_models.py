"""SQLModel ORM tables for events, jobs and agent runs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_events_tenant_created", "tenant_id", "created_at"),)

    event_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    user_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    entity_type: str | None = None
    entity_id: str | None = Field(default=None, index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    processing_status: str = Field(default="pending", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobRecord(SQLModel, table=True):
    __tablename__ = "cm_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_cm_jobs_queue", "status", "priority", "retry_after", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    user_id: str | None = Field(default=None, index=True)
    event_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("events.event_id", ondelete="SET NULL"), index=True),
    )
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=5, index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    meta_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AgentRunRecord(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_runs_org_started", "org_id", "started_at"),)

    run_id: str = Field(primary_key=True)
    org_id: str = Field(index=True)
    job_id: str | None = Field(default=None, index=True)
    planner: str = Field(index=True)
    status: str = Field(index=True)
    cost_usd: float = Field(default=0.0)
    tokens_in: int = Field(default=0)
    tokens_out: int = Field(default=0)
    steps: int = Field(default=0)
    meta_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None


class AgentStepRecord(SQLModel, table=True):
    __tablename__ = "agent_steps"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("run_id", "step_no", name="uq_agent_steps_run_step"),)

    step_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_no: int
    tool: str = Field(index=True)
    input_hash: str
    tokens_in: int = Field(default=0)
    tokens_out: int = Field(default=0)
    cost_usd: float = Field(default=0.0)
    duration_ms: int = Field(default=0)
    status: str = Field(index=True)
    output_ref: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ToolArtifactRecord(SQLModel, table=True):
    __tablename__ = "tool_artifacts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tool_artifacts_step_kind", "step_id", "kind"),)

    id: int | None = Field(default=None, primary_key=True)
    step_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_steps.step_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    ref: str = Field(sa_column=Column(Text, nullable=False))
    size_bytes: int
    content: str | None = Field(default=None, sa_column=Column(Text))
    meta_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
