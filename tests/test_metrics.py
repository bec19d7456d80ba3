from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from citemind.orchestrator.metrics import build_run_metrics, render_stats_lines
from citemind.orchestrator.models import AgentRunView, AgentStepView, RunStatus, StepStatus

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Run metrics"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _run(run_id: str, status: RunStatus, planner: str, cost: float) -> AgentRunView:
    return AgentRunView(
        run_id=run_id,
        org_id="org-1",
        job_id=None,
        planner=planner,
        status=status,
        cost_usd=cost,
        tokens_in=100,
        tokens_out=10,
        steps=1,
        meta={},
        started_at=NOW,
        finished_at=NOW,
        duration_ms=5,
    )


def _step(run_id: str, tool: str, duration_ms: int, *, failed: bool = False) -> AgentStepView:
    return AgentStepView(
        step_id=f"{run_id}-{tool}-{duration_ms}",
        run_id=run_id,
        step_no=1,
        tool=tool,
        input_hash="h",
        tokens_in=0,
        tokens_out=0,
        cost_usd=0.01,
        duration_ms=duration_ms,
        status=StepStatus.FAILED if failed else StepStatus.COMPLETED,
        output_ref=None,
        error_message=None,
        created_at=NOW,
        finished_at=NOW,
    )


def test_metrics_aggregate_status_planner_and_tool() -> None:
    runs = [
        _run("r1", RunStatus.COMPLETED, "pr_insight_generation", 0.02),
        _run("r2", RunStatus.BUDGET_EXCEEDED, "pr_insight_generation", 0.30),
        _run("r3", RunStatus.FAILED, "content_analysis", 0.01),
        _run("r4", RunStatus.COMPLETED, "content_analysis", 0.03),
    ]
    steps = [
        _step("r1", "llm_call", 100),
        _step("r2", "llm_call", 300),
        _step("r2", "db_query", 10, failed=True),
        _step("r3", "db_query", 20),
    ]

    snapshot = build_run_metrics(runs, steps)

    assert snapshot.run_count == 4
    assert snapshot.status_counts == {"budget_exceeded": 1, "completed": 2, "failed": 1}
    assert snapshot.budget_exceeded_share == pytest.approx(0.25)
    assert snapshot.total_cost_usd == pytest.approx(0.36)
    assert [planner.planner for planner in snapshot.planners] == [
        "content_analysis",
        "pr_insight_generation",
    ]
    assert snapshot.planners[1].cost_usd == pytest.approx(0.32)
    db_query, llm_call = snapshot.tools
    assert (db_query.tool, db_query.steps, db_query.failed) == ("db_query", 2, 1)
    assert (llm_call.tool, llm_call.steps, llm_call.failed) == ("llm_call", 2, 0)
    assert snapshot.step_duration_p50_ms == pytest.approx(60.0)

    lines = render_stats_lines(snapshot=snapshot, hours=6)
    assert lines[0] == "Agent runs (window=6h): 4"
    assert lines[1] == "Run status: budget_exceeded=1 completed=2 failed=1"
    assert lines[2] == "Budget exceeded share: 25.00%"
    assert "Planner content_analysis: runs=2 cost=$0.0400" in lines
    assert "Tool db_query: steps=2 failed=1 cost=$0.0200" in lines
    assert lines[-1].startswith("Step duration: n=4 p50=60ms")


def test_empty_window_renders_placeholders() -> None:
    lines = render_stats_lines(snapshot=build_run_metrics([], []), hours=24)

    assert lines == [
        "Agent runs (window=24h): 0",
        "Run status: none",
        "Budget exceeded share: n/a",
        "Totals: cost=$0.0000 tokens_in=0 tokens_out=0",
        "Step duration: n=0 p50=0ms p90=0ms",
    ]
