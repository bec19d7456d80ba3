"""Queue worker that executes jobs as budget-governed agent runs."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from citemind.agentic.runner import AgentRunner, Executor, RunContext, RunOutcome
from citemind.config import WorkerSettings
from citemind.errors import EmergencyStopError, PersistenceError
from citemind.orchestrator.failure_classifier import is_retryable
from citemind.orchestrator.handlers import HandlerRegistry
from citemind.orchestrator.models import FailureClass, JobView, RunStatus
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    budget_exceeded: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.budget_exceeded += other.budget_exceeded
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims ready jobs and runs each one through the agent runner."""

    def __init__(
        self,
        store: OrchestratorRepository,
        runner: AgentRunner,
        registry: HandlerRegistry,
        settings: WorkerSettings,
    ) -> None:
        self.store = store
        self.runner = runner
        self.registry = registry
        self.settings = settings
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._active_run_id: str | None = None

    @property
    def worker_id(self) -> str:
        return self.settings.worker_id

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.store.claim_next_ready_job(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Worker %s claimed %s job %s (attempt %d)",
            self.worker_id,
            job.job_type.value,
            job.job_id,
            job.retry_count + 1,
        )
        try:
            outcome = self.runner.execute_job(
                job.org_id,
                job.job_id,
                job.job_type.value,
                self._track_active_run(self.registry.executor_for(job)),
                job_type=job.job_type,
            )
        except PersistenceError as error:
            logger.exception("Agent run bookkeeping failed for job %s", job.job_id)
            outcome = RunOutcome(
                success=False,
                error=str(error),
                errors=[str(error)],
                failure_class=FailureClass.PERSISTENCE,
            )
        finally:
            self._active_run_id = None

        self._finalize_job(job, outcome, summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle, max_jobs is reached or a stop signal arrives.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.settings.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, reason: str) -> None:
        """Stop after the current job; an active run is emergency-stopped."""

        self._stop_requested = True
        run_id = self._active_run_id
        if run_id is None:
            logger.info("Worker %s stopping: %s", self.worker_id, reason)
            return
        try:
            self.runner.governor.emergency_stop(run_id, reason)
        except EmergencyStopError:
            logger.warning("Worker %s stopping, run %s emergency-stopped", self.worker_id, run_id)

    def compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _track_active_run(self, executor: Executor) -> Executor:
        def _execute(context: RunContext) -> Any:
            self._active_run_id = context.run_id
            return executor(context)

        return _execute

    def _finalize_job(self, job: JobView, outcome: RunOutcome, summary: WorkerRunSummary) -> None:
        if outcome.success:
            if self.store.complete_job(job_id=job.job_id, result=_result_payload(outcome.result)):
                summary.succeeded = 1
            logger.info("Job %s completed by run %s", job.job_id, outcome.run_id)
            return

        if outcome.status is RunStatus.BUDGET_EXCEEDED:
            summary.budget_exceeded = 1
        error_message = outcome.error or "Agent run failed"
        if is_retryable(outcome.failure_class) and job.retry_count < job.max_retries:
            retry_number = job.retry_count + 1
            delay_seconds = self.compute_retry_delay(retry_number=retry_number)
            if self.store.schedule_retry(
                job_id=job.job_id,
                retry_after=utc_now() + timedelta(seconds=delay_seconds),
                error_message=error_message,
            ):
                summary.retried = 1
            logger.warning(
                "Job %s failed (%s), retry %d/%d in %.1fs: %s",
                job.job_id,
                _failure_class_value(outcome.failure_class),
                retry_number,
                job.max_retries,
                delay_seconds,
                error_message,
            )
            return

        if self.store.fail_job(job_id=job.job_id, error_message=error_message):
            summary.failed = 1
        logger.warning(
            "Job %s failed (%s): %s",
            job.job_id,
            _failure_class_value(outcome.failure_class),
            error_message,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=f"received {name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _result_payload(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    if isinstance(result, Mapping):
        return dict(result)
    return {"value": result}


def _failure_class_value(value: FailureClass | None) -> str:
    if value is None:
        return "unknown"
    return value.value
