"""Controllers for event, job, worker and run CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from citemind.agentic.runner import AgentRunner
from citemind.config import Settings
from citemind.orchestrator.event_router import EventRouter
from citemind.orchestrator.handlers import build_default_registry
from citemind.orchestrator.metrics import build_run_metrics, render_stats_lines
from citemind.orchestrator.models import EventCreate, JobStatus
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.orchestrator.worker import JobWorker
from citemind.storage.common import utc_now
from citemind.telemetry.collector import TelemetryCollector
from citemind.tools.router import build_tool_router

REF_PREVIEW_CHARS = 80


@dataclass(slots=True)
class EventEmitCommand:
    """CLI input for emitting a domain event."""

    db_path: Path | None
    event_type: str
    tenant_id: str
    user_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class RunInspectCommand:
    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class RunStatsCommand:
    db_path: Path | None
    hours: int


class OrchestratorCliController:
    """Coordinates event intake, worker and inspection CLI operations."""

    def emit_event(self, command: EventEmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _telemetry(settings) as telemetry:
            router = EventRouter(
                repository,
                telemetry,
                max_retries=settings.worker.max_retries,
            )
            result = router.emit(
                EventCreate(
                    tenant_id=command.tenant_id,
                    user_id=command.user_id,
                    event_type=command.event_type,
                    entity_type=command.entity_type,
                    entity_id=command.entity_id,
                    payload=command.payload,
                ),
            )

        lines = [
            f"Event stored: event_id={result.event_id} type={command.event_type}",
            f"Jobs enqueued: {len(result.created)}",
        ]
        for job in result.created:
            lines.append(
                f"  {job.job_id} type={job.job_type.value} priority={job.priority} "
                f"status={job.status.value}",
            )
        if result.failed_job_types:
            lines.append(
                "Jobs failed to enqueue: "
                + ", ".join(job_type.value for job_type in result.failed_job_types),
            )
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            retry_after = job.retry_after.isoformat() if job.retry_after is not None else "-"
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"priority={job.priority} retries={job.retry_count}/{job.max_retries} "
                f"retry_after={retry_after}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Tenant: {job.tenant_id}",
            f"Event: {job.event_id or '-'}",
            f"Priority: {job.priority}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Worker: {job.worker_id or '-'}",
            f"Error: {job.error_message or '-'}",
            f"Payload: {_compact_json(job.payload)}",
            f"Runs: {len(details.runs)}",
        ]
        for run in details.runs:
            lines.append(
                f"  {run.run_id} status={run.status.value} steps={run.steps} "
                f"cost=${run.cost_usd:.4f} started_at={run.started_at.isoformat()}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        tools = build_tool_router(settings.tools)
        try:
            with _repository(settings) as repository, _telemetry(settings) as telemetry:
                worker = JobWorker(
                    repository,
                    AgentRunner(repository, tools, telemetry, settings.agent),
                    build_default_registry(),
                    settings.worker,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            tools.close()

        lines = [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"budget_exceeded={summary.budget_exceeded} idle_polls={summary.idle_polls}",
        ]
        if not settings.agent.enabled:
            lines.append("Agent execution is disabled; set CITEMIND_ENABLED=true to run jobs.")
        return lines

    def inspect_run(self, command: RunInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_run_details(run_id=command.run_id)
        if details is None:
            return [f"Run not found: {command.run_id}"]

        run = details.run
        lines = [
            f"Run: {run.run_id}",
            f"Job: {run.job_id or '-'}",
            f"Org: {run.org_id}",
            f"Planner: {run.planner}",
            f"Status: {run.status.value}",
            f"Cost: ${run.cost_usd:.4f}",
            f"Tokens: in={run.tokens_in} out={run.tokens_out}",
            f"Duration: {run.duration_ms if run.duration_ms is not None else '-'} ms",
            f"Meta: {_compact_json(run.meta)}",
            f"Steps: {len(details.steps)}",
        ]
        for step in details.steps:
            lines.append(
                f"  #{step.step_no} {step.tool} status={step.status.value} "
                f"cost=${step.cost_usd:.4f} tokens={step.tokens_in}/{step.tokens_out} "
                f"duration={step.duration_ms}ms output={_preview(step.output_ref)}",
            )
            if step.error_message:
                lines.append(f"     error: {step.error_message}")
        lines.append(f"Artifacts: {len(details.artifacts)}")
        for artifact in details.artifacts:
            lines.append(
                f"  {artifact.kind} size={artifact.size_bytes}B ref={_preview(artifact.ref)}",
            )
        return lines

    def stats(self, command: RunStatsCommand) -> list[str]:
        """Show run status, cost and step metrics for a time window."""

        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            runs = repository.list_runs(since=cutoff, limit=None)
            steps = repository.list_steps(run_ids=[run.run_id for run in runs])

        snapshot = build_run_metrics(runs, steps)
        return render_stats_lines(snapshot=snapshot, hours=command.hours)


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _telemetry(settings: Settings) -> Iterator[TelemetryCollector]:
    telemetry = TelemetryCollector.from_settings(settings.telemetry)
    telemetry.start()
    try:
        yield telemetry
    finally:
        telemetry.shutdown()


def _compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _preview(value: str | None) -> str:
    if not value:
        return "-"
    if len(value) <= REF_PREVIEW_CHARS:
        return value
    return value[:REF_PREVIEW_CHARS] + "..."
