"""Per-run budget enforcement: step and cost ceilings, fail closed."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from citemind.agentic.pricing import estimate_step_cost
from citemind.config import AgentSettings
from citemind.errors import BudgetExceededError, EmergencyStopError
from citemind.tools.base import ToolInvocation

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BudgetViolation:
    """Structured record of a rejected step."""

    kind: str
    limit: float
    current: float
    message: str


@dataclass(slots=True, frozen=True)
class BudgetUsage:
    used: float
    limit: float
    remaining: float


@dataclass(slots=True, frozen=True)
class BudgetStatus:
    """Snapshot of a run's consumption against both ceilings."""

    steps: BudgetUsage
    cost: BudgetUsage


@dataclass(slots=True)
class _RunBudget:
    steps: int = 0
    cost: float = 0.0


class Governor:
    """Tracks step count and running cost of every open run.

    A run is tracked only inside `execute_with_budget`; the lock guards the map
    itself, while each entry is only mutated by the thread executing its run.
    """

    def __init__(self, *, max_steps: int, cost_cap_usd: float) -> None:
        self.max_steps = max_steps
        self.cost_cap_usd = cost_cap_usd
        self._lock = threading.Lock()
        self._budgets: dict[str, _RunBudget] = {}
        self._stopped: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> Governor:
        return cls(max_steps=settings.max_steps, cost_cap_usd=settings.cost_cap_usd)

    @contextmanager
    def execute_with_budget(self, run_id: str) -> Iterator[None]:
        """Open a zeroed budget for `run_id` and drop it on every exit path.

        A run stopped after its last step gate still fails when the scope closes.
        """

        with self._lock:
            if run_id in self._budgets:
                raise RuntimeError(f"Budget tracking already open for run {run_id}")
            self._budgets[run_id] = _RunBudget()
            self._stopped.pop(run_id, None)
        try:
            yield
        finally:
            with self._lock:
                self._budgets.pop(run_id, None)
                reason = self._stopped.pop(run_id, None)
        if reason is not None:
            raise EmergencyStopError(run_id, reason)

    def is_tracking(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._budgets

    def validate_step(self, run_id: str, step_no: int, invocation: ToolInvocation) -> None:
        """Pre-flight gate; raises before the tool is invoked if a ceiling would be crossed."""

        with self._lock:
            reason = self._stopped.get(run_id)
            budget = self._budgets.get(run_id)
        if reason is not None:
            raise EmergencyStopError(run_id, reason)
        if budget is None:
            raise RuntimeError(f"No budget tracking for run {run_id}")

        if step_no > self.max_steps:
            self._reject(
                run_id,
                BudgetViolation(
                    kind="steps",
                    limit=self.max_steps,
                    current=step_no,
                    message=f"Step limit exceeded: {step_no} > {self.max_steps}",
                ),
            )

        estimated_cost = self.estimate_step_cost(invocation)
        projected_total = budget.cost + estimated_cost
        if projected_total > self.cost_cap_usd:
            self._reject(
                run_id,
                BudgetViolation(
                    kind="cost",
                    limit=self.cost_cap_usd,
                    current=projected_total,
                    message=(
                        f"Cost limit would be exceeded: ${projected_total:.4f} > "
                        f"${self.cost_cap_usd}"
                    ),
                ),
            )

        budget.steps = step_no
        budget.cost = projected_total

    def record_actual_cost(self, run_id: str, cost_usd: float) -> None:
        """Replace the estimated running cost with the run's actual cumulative cost."""

        with self._lock:
            budget = self._budgets.get(run_id)
        if budget is None:
            return
        budget.cost = cost_usd
        if cost_usd > self.cost_cap_usd:
            logger.warning(
                "Run %s actual cost $%.4f exceeds cap $%s",
                run_id,
                cost_usd,
                self.cost_cap_usd,
            )

    @staticmethod
    def estimate_step_cost(invocation: ToolInvocation) -> float:
        return estimate_step_cost(invocation)

    def get_budget_status(self, run_id: str) -> BudgetStatus | None:
        with self._lock:
            budget = self._budgets.get(run_id)
        if budget is None:
            return None
        return BudgetStatus(
            steps=BudgetUsage(
                used=budget.steps,
                limit=self.max_steps,
                remaining=self.max_steps - budget.steps,
            ),
            cost=BudgetUsage(
                used=budget.cost,
                limit=self.cost_cap_usd,
                remaining=self.cost_cap_usd - budget.cost,
            ),
        )

    def can_proceed(self, run_id: str, additional_cost: float = 0.0) -> bool:
        with self._lock:
            budget = self._budgets.get(run_id)
            stopped = run_id in self._stopped
        if budget is None or stopped:
            return False
        return budget.cost + additional_cost <= self.cost_cap_usd

    def emergency_stop(self, run_id: str, reason: str) -> None:
        """Drop tracking for a run so its next step gate fails, then raise."""

        logger.error("Emergency stop for run %s: %s", run_id, reason)
        with self._lock:
            if self._budgets.pop(run_id, None) is not None:
                self._stopped[run_id] = reason
        raise EmergencyStopError(run_id, reason)

    def _reject(self, run_id: str, violation: BudgetViolation) -> None:
        logger.error(
            "Budget violation for run %s: %s",
            run_id,
            violation.message,
            extra={"budget_violation": asdict(violation), "run_id": run_id},
        )
        raise BudgetExceededError(
            violation.message,
            kind=violation.kind,
            limit=violation.limit,
            current=violation.current,
        )
