"""Domain models for events, the job queue and agent runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventProcessingStatus(str, Enum):
    """Routing state of a stored event."""

    PENDING = "pending"
    PROCESSED = "processed"
    IGNORED = "ignored"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Closed set of job kinds the engine knows how to execute."""

    PR_INSIGHT_GENERATION = "pr_insight_generation"
    VISIBILITY_SCORE_UPDATE = "visibility_score_update"
    FOLLOWUP_RECOMMENDATIONS = "followup_recommendations"
    CONTENT_ANALYSIS = "content_analysis"
    VISIBILITY_COMPREHENSIVE_REFRESH = "visibility_comprehensive_refresh"
    AI_PLATFORM_ANALYSIS = "ai_platform_analysis"


class RunStatus(str, Enum):
    """Agent run lifecycle; every value except RUNNING is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_EXCEEDED = "budget_exceeded"


class FailureClass(str, Enum):
    """Why a run did not complete; drives the job retry policy."""

    DISABLED = "disabled"
    BUDGET_EXCEEDED = "budget_exceeded"
    VALIDATION_REJECTED = "validation_rejected"
    EMERGENCY_STOP = "emergency_stop"
    TOOL_TRANSIENT = "tool_transient"
    TOOL_ERROR = "tool_error"
    PERSISTENCE = "persistence"
    UNEXPECTED = "unexpected"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.BUDGET_EXCEEDED},
)


@dataclass(slots=True)
class EventCreate:
    """Inbound domain event as received from the API layer."""

    tenant_id: str
    event_type: str
    user_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class EventView:
    """Stored event."""

    event_id: str
    tenant_id: str
    user_id: str | None
    event_type: str
    entity_type: str | None
    entity_id: str | None
    payload: dict[str, Any]
    processing_status: EventProcessingStatus
    created_at: datetime
    processed_at: datetime | None


@dataclass(slots=True)
class JobSpec:
    """One job the router derived from an event."""

    job_type: JobType
    priority: int
    payload: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    tenant_id: str
    job_type: JobType
    priority: int = 5
    user_id: str | None = None
    event_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    max_retries: int = 3
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    tenant_id: str
    user_id: str | None
    event_id: str | None
    job_type: JobType
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    meta: dict[str, Any]
    retry_count: int
    max_retries: int
    retry_after: datetime | None
    worker_id: str | None
    error_message: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def org_id(self) -> str:
        """Organization owning runs for this job: meta.org_id, else the tenant."""

        org_id = self.meta.get("org_id")
        if isinstance(org_id, str) and org_id:
            return org_id
        return self.tenant_id


@dataclass(slots=True)
class EnqueueResult:
    """Outcome of routing one event into jobs."""

    event_id: str
    created: list[JobView] = field(default_factory=list)
    failed_job_types: list[JobType] = field(default_factory=list)

    @property
    def job_ids(self) -> list[str]:
        return [job.job_id for job in self.created]


@dataclass(slots=True)
class AgentRunView:
    """Stored agent run with its totals."""

    run_id: str
    org_id: str
    job_id: str | None
    planner: str
    status: RunStatus
    cost_usd: float
    tokens_in: int
    tokens_out: int
    steps: int
    meta: dict[str, Any]
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int | None


@dataclass(slots=True)
class AgentStepView:
    """Stored step audit record."""

    step_id: str
    run_id: str
    step_no: int
    tool: str
    input_hash: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    duration_ms: int
    status: StepStatus
    output_ref: str | None
    error_message: str | None
    created_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class ArtifactWrite:
    """Artifact produced by a step, already reduced to a reference."""

    kind: str
    ref: str
    size_bytes: int
    content: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ArtifactView:
    id: int
    step_id: str
    kind: str
    ref: str
    size_bytes: int
    content: str | None
    meta: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class StepUsage:
    """Actual consumption reported for a completed step."""

    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0


@dataclass(slots=True)
class JobDetails:
    """Job with the runs executed for it."""

    job: JobView
    runs: list[AgentRunView]


@dataclass(slots=True)
class RunDetails:
    """Run with its ordered steps and artifacts."""

    run: AgentRunView
    steps: list[AgentStepView]
    artifacts: list[ArtifactView]
