"""Agent run coordinator: budget-gated steps, critic gate and audit trail."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from citemind.agentic.critic import Critic, CriticConfig
from citemind.agentic.governor import BudgetStatus, Governor
from citemind.config import AgentSettings
from citemind.errors import BudgetExceededError, CriticRejectedError, PersistenceError
from citemind.orchestrator.failure_classifier import classify_error
from citemind.orchestrator.models import (
    ArtifactWrite,
    FailureClass,
    JobType,
    RunStatus,
    StepUsage,
)
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.telemetry.collector import TelemetryCollector
from citemind.tools.base import ToolArtifact, ToolInvocation, ToolInvoker, ToolResult

logger = logging.getLogger(__name__)

DISABLED_ERROR = "CiteMind disabled"
INLINE_ARTIFACT_MAX_BYTES = 10 * 1024


@dataclass(slots=True)
class RunOutcome:
    """What a job execution attempt produced."""

    success: bool
    run_id: str | None = None
    status: RunStatus | None = None
    result: Any = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class RunContext:
    """Handle given to job executors; every step goes through the owning runner."""

    run_id: str
    org_id: str
    job_id: str | None
    planner: str
    settings: AgentSettings
    runner: AgentRunner = field(repr=False)

    def execute_step(self, invocation: ToolInvocation) -> ToolResult:
        return self.runner.execute_step(self.run_id, invocation)

    def budget_status(self) -> BudgetStatus | None:
        return self.runner.governor.get_budget_status(self.run_id)


Executor = Callable[[RunContext], Any]


class AgentRunner:
    """Executes one job attempt as an audited, budget-governed run."""

    def __init__(  # noqa: PLR0913
        self,
        store: OrchestratorRepository,
        tools: ToolInvoker,
        telemetry: TelemetryCollector,
        settings: AgentSettings,
        critic: Critic | None = None,
        governor: Governor | None = None,
    ) -> None:
        self.store = store
        self.tools = tools
        self.telemetry = telemetry
        self.settings = settings
        self.critic = critic or Critic(CriticConfig(min_confidence=settings.min_confidence))
        self.governor = governor or Governor.from_settings(settings)
        self._locks_guard = threading.Lock()
        self._step_locks: dict[str, threading.Lock] = {}

    def execute_job(  # noqa: PLR0913
        self,
        org_id: str,
        job_id: str | None,
        planner: str,
        executor: Executor,
        *,
        job_type: JobType | None = None,
    ) -> RunOutcome:
        """Run `executor` inside a fresh run and decide the run's terminal status.

        This is the only place that classifies failures and emits the matching
        telemetry; errors raised by steps or the executor end up here.
        """

        if not self.settings.enabled:
            logger.info("CiteMind disabled, skipping agent execution of job %s", job_id)
            return RunOutcome(
                success=False,
                error=DISABLED_ERROR,
                failure_class=FailureClass.DISABLED,
            )

        try:
            run = self.store.create_run(
                org_id=org_id,
                job_id=job_id,
                planner=planner,
                meta={
                    "model_primary": self.settings.model_primary,
                    "model_fallback": self.settings.model_fallback,
                    "max_steps": self.governor.max_steps,
                    "cost_cap": self.governor.cost_cap_usd,
                },
            )
        except PersistenceError:
            logger.exception("Failed to create run for job %s", job_id)
            raise
        run_id = run.run_id
        context = RunContext(
            run_id=run_id,
            org_id=org_id,
            job_id=job_id,
            planner=planner,
            settings=self.settings,
            runner=self,
        )
        labels = {"run_id": run_id, "org_id": org_id, "job_id": job_id, "planner": planner}
        started = time.monotonic()

        try:
            with self.governor.execute_with_budget(run_id):
                result = executor(context)
            verdict = (
                self.critic.validate_for_job(job_type, result)
                if job_type is not None
                else self.critic.validate_result(result)
            )
            if not verdict.valid:
                raise CriticRejectedError(verdict)
        except BudgetExceededError as error:
            self._finalize(
                run_id,
                RunStatus.BUDGET_EXCEEDED,
                {"error": str(error), "budget_kind": error.kind},
            )
            self.telemetry.track_citemind_event(
                "agent_budget_exceeded",
                {**labels, "kind": error.kind, "limit": error.limit, "current": error.current},
            )
            logger.warning("Agent run %s stopped: %s", run_id, error)
            return RunOutcome(
                success=False,
                run_id=run_id,
                status=RunStatus.BUDGET_EXCEEDED,
                error=str(error),
                errors=[str(error)],
                failure_class=FailureClass.BUDGET_EXCEEDED,
            )
        except CriticRejectedError as error:
            verdict = error.verdict
            self._finalize(
                run_id,
                RunStatus.FAILED,
                {
                    "error": "Critic validation failed",
                    "validation_errors": verdict.errors,
                    "critic_confidence": verdict.confidence,
                },
            )
            self.telemetry.track_citemind_event(
                "agent_run_failed",
                {**labels, "reason": "critic_rejected", "confidence": verdict.confidence},
            )
            logger.warning("Agent run %s rejected by critic: %s", run_id, error)
            return RunOutcome(
                success=False,
                run_id=run_id,
                status=RunStatus.FAILED,
                result=result,
                error=str(error),
                errors=list(verdict.errors),
                failure_class=FailureClass.VALIDATION_REJECTED,
            )
        except Exception as error:  # noqa: BLE001
            classification = classify_error(error)
            failure_class = classification.failure_class
            self._finalize(
                run_id,
                RunStatus.FAILED,
                {
                    "error": str(error),
                    "error_type": type(error).__name__,
                    **classification.to_meta(),
                },
            )
            self.telemetry.track_citemind_event(
                "agent_run_failed",
                {**labels, "reason": failure_class.value, "error_type": type(error).__name__},
            )
            self.telemetry.track_error(error, labels)
            logger.error("Agent run %s failed: %s", run_id, error, exc_info=error)
            return RunOutcome(
                success=False,
                run_id=run_id,
                status=RunStatus.FAILED,
                error=str(error),
                errors=[str(error)],
                failure_class=failure_class,
            )
        finally:
            with self._locks_guard:
                self._step_locks.pop(run_id, None)

        self._finalize(
            run_id,
            RunStatus.COMPLETED,
            {"critic_confidence": verdict.confidence, "critic_warnings": verdict.warnings},
        )
        finished = self.store.get_run(run_id=run_id)
        self.telemetry.track_citemind_event(
            "agent_run_completed",
            {
                **labels,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "cost_usd": finished.cost_usd if finished else None,
                "steps": finished.steps if finished else None,
            },
        )
        return RunOutcome(success=True, run_id=run_id, status=RunStatus.COMPLETED, result=result)

    def execute_step(self, run_id: str, invocation: ToolInvocation) -> ToolResult:
        """Record, gate, invoke and account for one tool call of a run."""

        with self._step_lock(run_id):
            step_no = self.store.next_step_no(run_id=run_id)
            step_id = self.store.create_step(
                run_id=run_id,
                step_no=step_no,
                tool=invocation.tool,
                input_hash=invocation.input_hash(),
            )
            started = time.monotonic()
            try:
                self.governor.validate_step(run_id, step_no, invocation)
                result = self.tools.invoke(invocation)
            except Exception as error:
                self.store.fail_step(
                    step_id=step_id,
                    error_message=str(error),
                    duration_ms=_elapsed_ms(started),
                )
                logger.info(
                    "Step %d (%s) of run %s failed: %s",
                    step_no,
                    invocation.tool,
                    run_id,
                    error,
                )
                raise

            cost = result.cost_usd
            if cost is None:
                cost = self.governor.estimate_step_cost(invocation)
            usage = StepUsage(
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                cost_usd=cost,
                duration_ms=_elapsed_ms(started),
            )
            output_ref = self._store_artifacts(step_id, result.artifacts)
            self.store.complete_step(step_id=step_id, usage=usage, output_ref=output_ref)
            self.store.increment_run_totals(run_id=run_id, usage=usage)
            run = self.store.get_run(run_id=run_id)
            if run is not None:
                self.governor.record_actual_cost(run_id, run.cost_usd)
            logger.debug(
                "Step %d (%s) of run %s completed: $%.4f, %d/%d tokens",
                step_no,
                invocation.tool,
                run_id,
                usage.cost_usd,
                usage.tokens_in,
                usage.tokens_out,
            )
            return result

    @contextmanager
    def _step_lock(self, run_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._step_locks.setdefault(run_id, threading.Lock())
        with lock:
            yield

    def _store_artifacts(self, step_id: str, artifacts: list[ToolArtifact]) -> str | None:
        refs: list[str] = []
        for index, artifact in enumerate(artifacts, start=1):
            write = build_artifact_write(step_id, index, artifact)
            self.store.add_artifact(step_id=step_id, artifact=write)
            refs.append(write.ref)
        return ",".join(refs) if refs else None

    def _finalize(self, run_id: str, status: RunStatus, meta: dict[str, Any]) -> None:
        try:
            applied = self.store.finalize_run(run_id=run_id, status=status, meta_updates=meta)
        except PersistenceError:
            logger.exception("Failed to finalize run %s as %s", run_id, status.value)
            raise
        if not applied:
            logger.warning("Run %s was already finalized; %s ignored", run_id, status.value)


def build_artifact_write(step_id: str, index: int, artifact: ToolArtifact) -> ArtifactWrite:
    """Inline small artifacts into the reference; keep large ones in the artifact row."""

    content = json.dumps(artifact.content, ensure_ascii=False, default=str)
    size_bytes = len(content.encode("utf-8"))
    if size_bytes < INLINE_ARTIFACT_MAX_BYTES:
        return ArtifactWrite(
            kind=artifact.kind,
            ref=f"inline:{content}",
            size_bytes=size_bytes,
            meta=artifact.meta,
        )
    return ArtifactWrite(
        kind=artifact.kind,
        ref=f"artifact:{step_id}:{index}",
        size_bytes=size_bytes,
        content=content,
        meta=artifact.meta,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
