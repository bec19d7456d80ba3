from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from citemind.agentic.runner import AgentRunner
from citemind.config import AgentSettings, WorkerSettings
from citemind.errors import ToolInvocationError
from citemind.orchestrator.handlers import build_default_registry
from citemind.orchestrator.models import (
    JobCreate,
    JobStatus,
    JobType,
    JobView,
    RunStatus,
)
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.orchestrator.worker import JobWorker
from citemind.telemetry.collector import TelemetryCollector
from citemind.tools.base import ToolInvocation, ToolResult
from citemind.tools.demo import build_demo_invokers
from citemind.tools.router import ToolRouter

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Job Queue Reliability"),
]


class FlakyDbInvoker:
    """Fails the first `failures` calls with a transient error, then delegates to the demo."""

    def __init__(self, failures: int, message: str = "database temporarily unavailable") -> None:
        self.failures = failures
        self.message = message
        self.calls = 0
        self._delegate = build_demo_invokers()["db_query"]

    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolInvocationError(self.message, tool=invocation.tool, transient=True)
        return self._delegate.invoke(invocation)


def _settings() -> WorkerSettings:
    return WorkerSettings(
        worker_id="test-worker",
        poll_interval_seconds=0.0,
        retry_base_seconds=30,
        retry_max_seconds=60,
    )


def _worker(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    *,
    agent: AgentSettings | None = None,
    overrides: dict[str, object] | None = None,
) -> JobWorker:
    invokers = {**build_demo_invokers(), **(overrides or {})}
    runner = AgentRunner(
        repository,
        ToolRouter(invokers),  # type: ignore[arg-type]
        telemetry,
        agent or AgentSettings(enabled=True),
    )
    return JobWorker(repository, runner, build_default_registry(), _settings())


def _enqueue(
    repository: OrchestratorRepository,
    job_type: JobType = JobType.VISIBILITY_SCORE_UPDATE,
    *,
    priority: int = 5,
    max_retries: int = 3,
) -> JobView:
    return repository.enqueue_job(
        JobCreate(
            tenant_id="org-1",
            job_type=job_type,
            priority=priority,
            payload={"press_release_id": "pr-1", "entity_id": "pr-1", "platform": "anthropic"},
            meta={"score_types": ["media_coverage"]},
            max_retries=max_retries,
        ),
    )


def test_worker_completes_job_through_an_agent_run(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository)

    summary = _worker(repository, telemetry).run_once()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status is JobStatus.COMPLETED
    assert details.job.worker_id == "test-worker"
    assert details.job.finished_at is not None
    assert details.job.result is not None
    assert details.job.result["job_type"] == "visibility_score_update"
    assert details.job.result["steps_executed"] == 3
    [run] = details.runs
    assert run.status is RunStatus.COMPLETED
    assert run.org_id == "org-1"
    assert run.planner == "visibility_score_update"
    assert run.steps == 3


def test_org_id_from_job_meta_owns_the_run(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = repository.enqueue_job(
        JobCreate(
            tenant_id="tenant-1",
            job_type=JobType.AI_PLATFORM_ANALYSIS,
            priority=3,
            payload={"entity_id": "brand", "platform": "openai"},
            meta={"org_id": "org-9"},
        ),
    )

    _worker(repository, telemetry).run_once()

    [run] = repository.list_runs(job_id=job.job_id)
    assert run.org_id == "org-9"


def test_transient_tool_failure_is_requeued_with_backoff(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = _enqueue(repository)
    flaky = FlakyDbInvoker(failures=1)
    worker = _worker(repository, telemetry, overrides={"db_query": flaky})
    monkeypatch.setattr(worker, "compute_retry_delay", lambda *, retry_number: 120.0)
    started = datetime.now(tz=UTC)

    summary = worker.run_once()

    assert (summary.processed, summary.retried, summary.failed) == (1, 1, 0)
    retried = repository.get_job(job_id=job.job_id)
    assert retried is not None
    assert retried.status is JobStatus.PENDING
    assert retried.retry_count == 1
    assert retried.worker_id is None
    assert retried.error_message == "database temporarily unavailable"
    assert retried.retry_after is not None
    assert (retried.retry_after - started).total_seconds() >= 119
    [run] = repository.list_runs(job_id=job.job_id)
    assert run.meta["failure_class"] == "tool_transient"

    # Not claimable until the retry delay elapses.
    assert worker.run_once().idle_polls == 1
    assert flaky.calls == 1


def test_retry_delay_is_capped_exponential_backoff(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    worker = _worker(repository, telemetry)

    delays = [worker.compute_retry_delay(retry_number=number) for number in range(1, 8)]

    assert all(0 <= delay <= 60 for delay in delays)
    assert worker.compute_retry_delay(retry_number=1) <= 30


def test_budget_exceeded_job_is_failed_without_retry(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository)
    worker = _worker(repository, telemetry, agent=AgentSettings(enabled=True, max_steps=1))

    summary = worker.run_once()

    assert (summary.failed, summary.retried, summary.budget_exceeded) == (1, 0, 1)
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status is JobStatus.FAILED
    assert failed.retry_count == 0
    assert "Step limit exceeded: 2 > 1" in (failed.error_message or "")
    [run] = repository.list_runs(job_id=job.job_id)
    assert run.status is RunStatus.BUDGET_EXCEEDED


def test_disabled_engine_fails_job_without_creating_runs(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository)
    worker = _worker(repository, telemetry, agent=AgentSettings(enabled=False))

    summary = worker.run_once()

    assert (summary.processed, summary.failed, summary.retried) == (1, 1, 0)
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status is JobStatus.FAILED
    assert failed.error_message == "CiteMind disabled"
    assert repository.list_runs() == []


def test_exhausted_retries_fail_the_job(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository, max_retries=0)
    worker = _worker(repository, telemetry, overrides={"db_query": FlakyDbInvoker(failures=9)})

    summary = worker.run_once()

    assert (summary.failed, summary.retried) == (1, 0)
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status is JobStatus.FAILED


def test_permanent_tool_error_fails_without_retry(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    class RejectingDbInvoker:
        def invoke(self, invocation: ToolInvocation) -> ToolResult:
            raise ToolInvocationError("HTTP 400 bad request", tool=invocation.tool)

    job = _enqueue(repository)
    worker = _worker(repository, telemetry, overrides={"db_query": RejectingDbInvoker()})

    summary = worker.run_once()

    assert (summary.failed, summary.retried) == (1, 0)
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status is JobStatus.FAILED
    assert failed.retry_count == 0
    [run] = repository.list_runs(job_id=job.job_id)
    assert run.meta["failure_class"] == "tool_error"


def test_critic_rejection_is_not_retried(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository)
    worker = _worker(
        repository,
        telemetry,
        agent=AgentSettings(enabled=True, min_confidence=1.0),
    )

    summary = worker.run_once()

    assert (summary.failed, summary.retried) == (1, 0)
    [run] = repository.list_runs(job_id=job.job_id)
    assert run.status is RunStatus.FAILED
    assert run.meta["error"] == "Critic validation failed"


def test_request_stop_emergency_stops_the_active_run(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    job = _enqueue(repository)
    worker: JobWorker | None = None

    class StoppingDbInvoker:
        def invoke(self, invocation: ToolInvocation) -> ToolResult:
            assert worker is not None
            worker.request_stop(reason="operator shutdown")
            return ToolResult(output={"rows": []}, cost_usd=0.0)

    worker = _worker(repository, telemetry, overrides={"db_query": StoppingDbInvoker()})

    summary = worker.run_once()

    assert worker.stop_requested is True
    assert summary.retried == 1
    [run] = repository.list_runs(job_id=job.job_id)
    assert run.status is RunStatus.FAILED
    assert run.meta["failure_class"] == "emergency_stop"
    assert run.meta["error"] == "Emergency stop: operator shutdown"
    assert not worker.runner.governor.is_tracking(run.run_id)

    # A stopped worker no longer claims work.
    _enqueue(repository, JobType.AI_PLATFORM_ANALYSIS, priority=1)
    assert worker.run_once().idle_polls == 1


def test_run_loop_follows_priority_and_stops_when_idle(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    low = _enqueue(repository, JobType.VISIBILITY_SCORE_UPDATE, priority=7)
    high = _enqueue(repository, JobType.AI_PLATFORM_ANALYSIS, priority=2)
    worker = _worker(repository, telemetry)

    first = worker.run_loop(max_jobs=1)
    assert first.processed == 1
    high_after = repository.get_job(job_id=high.job_id)
    low_after = repository.get_job(job_id=low.job_id)
    assert high_after is not None
    assert low_after is not None
    assert high_after.status is JobStatus.COMPLETED
    assert low_after.status is JobStatus.PENDING

    rest = worker.run_loop(max_idle_polls=1)
    assert rest.processed == 1
    assert rest.succeeded == 1
    assert rest.idle_polls == 1


@pytest.mark.parametrize(
    "job_type",
    [
        JobType.PR_INSIGHT_GENERATION,
        JobType.FOLLOWUP_RECOMMENDATIONS,
        JobType.CONTENT_ANALYSIS,
        JobType.VISIBILITY_COMPREHENSIVE_REFRESH,
    ],
)
def test_every_job_type_completes_with_demo_tools(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    job_type: JobType,
) -> None:
    job = _enqueue(repository, job_type)

    summary = _worker(repository, telemetry).run_once()

    assert summary.succeeded == 1
    completed = repository.get_job(job_id=job.job_id)
    assert completed is not None
    assert completed.status is JobStatus.COMPLETED
