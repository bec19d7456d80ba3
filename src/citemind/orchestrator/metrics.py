"""Run and step metrics for the stats command."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from citemind.orchestrator.models import AgentRunView, AgentStepView, RunStatus, StepStatus


@dataclass(slots=True)
class PlannerMetric:
    """Cost and token totals for runs of one planner."""

    planner: str
    runs: int = 0
    cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0


@dataclass(slots=True)
class ToolMetric:
    """Step counts and cost for one tool."""

    tool: str
    steps: int = 0
    failed: int = 0
    cost_usd: float = 0.0


@dataclass(slots=True)
class RunMetricsSnapshot:
    """Aggregated run metrics used by `runs stats`."""

    run_count: int
    status_counts: dict[str, int]
    budget_exceeded_share: float | None
    total_cost_usd: float
    total_tokens_in: int
    total_tokens_out: int
    planners: list[PlannerMetric]
    tools: list[ToolMetric]
    step_count: int
    step_duration_p50_ms: float
    step_duration_p90_ms: float


def build_run_metrics(
    runs: list[AgentRunView],
    steps: list[AgentStepView],
) -> RunMetricsSnapshot:
    """Build one metrics snapshot from run and step views."""

    status_counts = Counter[str]()
    planners: dict[str, PlannerMetric] = {}
    for run in runs:
        status_counts[run.status.value] += 1
        planner = planners.setdefault(run.planner, PlannerMetric(planner=run.planner))
        planner.runs += 1
        planner.cost_usd += run.cost_usd
        planner.tokens_in += run.tokens_in
        planner.tokens_out += run.tokens_out

    tools: dict[str, ToolMetric] = {}
    durations: list[float] = []
    for step in steps:
        metric = tools.setdefault(step.tool, ToolMetric(tool=step.tool))
        metric.steps += 1
        metric.cost_usd += step.cost_usd
        if step.status is StepStatus.FAILED:
            metric.failed += 1
        durations.append(float(step.duration_ms))

    return RunMetricsSnapshot(
        run_count=len(runs),
        status_counts=dict(sorted(status_counts.items())),
        budget_exceeded_share=_safe_ratio(
            numerator=status_counts[RunStatus.BUDGET_EXCEEDED.value],
            denominator=len(runs),
        ),
        total_cost_usd=sum(run.cost_usd for run in runs),
        total_tokens_in=sum(run.tokens_in for run in runs),
        total_tokens_out=sum(run.tokens_out for run in runs),
        planners=[planners[name] for name in sorted(planners)],
        tools=[tools[name] for name in sorted(tools)],
        step_count=len(steps),
        step_duration_p50_ms=_percentile(durations, 0.50),
        step_duration_p90_ms=_percentile(durations, 0.90),
    )


def render_stats_lines(*, snapshot: RunMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Agent runs (window={hours}h): {snapshot.run_count}",
        "Run status: " + (_fmt_key_value(snapshot.status_counts) or "none"),
        f"Budget exceeded share: {_fmt_ratio(snapshot.budget_exceeded_share)}",
        (
            f"Totals: cost=${snapshot.total_cost_usd:.4f} "
            f"tokens_in={snapshot.total_tokens_in} tokens_out={snapshot.total_tokens_out}"
        ),
    ]
    for planner in snapshot.planners:
        lines.append(
            f"Planner {planner.planner}: runs={planner.runs} "
            f"cost=${planner.cost_usd:.4f} "
            f"tokens_in={planner.tokens_in} tokens_out={planner.tokens_out}",
        )
    for tool in snapshot.tools:
        lines.append(
            f"Tool {tool.tool}: steps={tool.steps} failed={tool.failed} "
            f"cost=${tool.cost_usd:.4f}",
        )
    lines.append(
        f"Step duration: n={snapshot.step_count} "
        f"p50={snapshot.step_duration_p50_ms:.0f}ms "
        f"p90={snapshot.step_duration_p90_ms:.0f}ms",
    )
    return lines


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
