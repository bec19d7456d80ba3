from __future__ import annotations

import logging
import threading

import allure
import pytest

from citemind.agentic.governor import Governor
from citemind.agentic.pricing import estimate_step_cost
from citemind.config import AgentSettings
from citemind.errors import BudgetExceededError, EmergencyStopError
from citemind.tools.base import ToolInvocation

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Budget Governor"),
]


def _db_query(index: int = 0) -> ToolInvocation:
    return ToolInvocation(tool="db_query", input={"operation": "select", "id": index})


def test_five_cheap_steps_pass_and_sixth_is_rejected() -> None:
    governor = Governor(max_steps=5, cost_cap_usd=0.50)

    with governor.execute_with_budget("run-b"):
        for step_no in range(1, 6):
            governor.validate_step("run-b", step_no, _db_query(step_no))

        status = governor.get_budget_status("run-b")
        assert status is not None
        assert status.steps.used == 5
        assert status.steps.remaining == 0
        assert status.cost.used == pytest.approx(0.005)

        with pytest.raises(BudgetExceededError) as raised:
            governor.validate_step("run-b", 6, _db_query(6))

    assert raised.value.kind == "steps"
    assert raised.value.limit == 5
    assert raised.value.current == 6
    assert str(raised.value) == "Budget exceeded: Step limit exceeded: 6 > 5"


def test_cost_gate_rejects_projected_total_over_cap() -> None:
    governor = Governor(max_steps=10, cost_cap_usd=0.06)
    llm = ToolInvocation(tool="llm_call", input={"prompt": "hi"})

    with governor.execute_with_budget("run-cost"):
        governor.validate_step("run-cost", 1, llm)
        with pytest.raises(BudgetExceededError) as raised:
            governor.validate_step("run-cost", 2, llm)
        status = governor.get_budget_status("run-cost")

    assert raised.value.kind == "cost"
    assert raised.value.current == pytest.approx(0.10)
    assert "Cost limit would be exceeded" in str(raised.value)
    # The rejected step does not consume budget.
    assert status is not None
    assert status.steps.used == 1
    assert status.cost.used == pytest.approx(0.05)


def test_budget_status_is_idempotent() -> None:
    governor = Governor(max_steps=3, cost_cap_usd=1.0)
    with governor.execute_with_budget("run-idem"):
        governor.validate_step("run-idem", 1, _db_query())
        first = governor.get_budget_status("run-idem")
        second = governor.get_budget_status("run-idem")
        assert first == second
        assert governor.can_proceed("run-idem", additional_cost=0.5)
        assert not governor.can_proceed("run-idem", additional_cost=1.0)
        assert governor.get_budget_status("run-idem") == first


def test_budget_entry_is_removed_after_error() -> None:
    governor = Governor(max_steps=3, cost_cap_usd=1.0)

    with pytest.raises(ZeroDivisionError), governor.execute_with_budget("run-err"):
        assert governor.is_tracking("run-err")
        _ = 1 / 0

    assert not governor.is_tracking("run-err")
    assert governor.get_budget_status("run-err") is None
    with pytest.raises(RuntimeError):
        governor.validate_step("run-err", 1, _db_query())


def test_reopening_an_open_run_is_a_programming_error() -> None:
    governor = Governor(max_steps=3, cost_cap_usd=1.0)
    with governor.execute_with_budget("run-dup"):
        with pytest.raises(RuntimeError), governor.execute_with_budget("run-dup"):
            pass
        assert governor.is_tracking("run-dup")


def test_emergency_stop_fails_the_next_step_gate() -> None:
    governor = Governor(max_steps=5, cost_cap_usd=1.0)

    with pytest.raises(EmergencyStopError), governor.execute_with_budget("run-stop"):
        governor.validate_step("run-stop", 1, _db_query())
        with pytest.raises(EmergencyStopError):
            governor.emergency_stop("run-stop", "operator kill")

        assert governor.get_budget_status("run-stop") is None
        assert not governor.can_proceed("run-stop")
        with pytest.raises(EmergencyStopError) as raised:
            governor.validate_step("run-stop", 2, _db_query())

    assert raised.value.reason == "operator kill"
    # The stop marker is scoped to the run's lifetime.
    with governor.execute_with_budget("run-stop"):
        governor.validate_step("run-stop", 1, _db_query())


def test_stop_after_the_last_gate_fails_when_the_scope_closes() -> None:
    governor = Governor(max_steps=5, cost_cap_usd=1.0)

    with pytest.raises(EmergencyStopError) as raised, governor.execute_with_budget("run-late"):
        governor.validate_step("run-late", 1, _db_query())
        with pytest.raises(EmergencyStopError):
            governor.emergency_stop("run-late", "operator kill")

    assert raised.value.reason == "operator kill"
    assert not governor.is_tracking("run-late")


def test_record_actual_cost_replaces_estimate_and_warns_over_cap(
    caplog: pytest.LogCaptureFixture,
) -> None:
    governor = Governor(max_steps=5, cost_cap_usd=0.10)
    with governor.execute_with_budget("run-actual"):
        governor.validate_step("run-actual", 1, _db_query())
        with caplog.at_level(logging.WARNING, logger="citemind.agentic.governor"):
            governor.record_actual_cost("run-actual", 0.2)
        status = governor.get_budget_status("run-actual")
        assert status is not None
        assert status.cost.used == pytest.approx(0.2)
        with pytest.raises(BudgetExceededError):
            governor.validate_step("run-actual", 2, _db_query())

    assert "exceeds cap" in caplog.text


def test_budget_violation_is_logged_with_structured_record(
    caplog: pytest.LogCaptureFixture,
) -> None:
    governor = Governor(max_steps=1, cost_cap_usd=1.0)
    with caplog.at_level(logging.ERROR, logger="citemind.agentic.governor"):
        with governor.execute_with_budget("run-log"):
            with pytest.raises(BudgetExceededError):
                governor.validate_step("run-log", 2, _db_query())

    record = next(item for item in caplog.records if hasattr(item, "budget_violation"))
    assert record.budget_violation["kind"] == "steps"
    assert record.budget_violation["limit"] == 1
    assert record.budget_violation["current"] == 2


def test_step_cost_estimate_scales_with_input_size() -> None:
    small = ToolInvocation(tool="llm_call", input={"prompt": "short"})
    large = ToolInvocation(tool="llm_call", input={"prompt": "x" * 3000})
    unknown = ToolInvocation(tool="teleport", input={})

    assert estimate_step_cost(small) == pytest.approx(0.05)
    assert estimate_step_cost(large) == pytest.approx(0.05 * len(large.canonical_input()) / 1000)
    assert estimate_step_cost(unknown) == pytest.approx(0.01)


def test_concurrent_runs_are_tracked_independently() -> None:
    governor = Governor.from_settings(AgentSettings(max_steps=50, cost_cap_usd=10.0))
    errors: list[BaseException] = []

    def _run(run_id: str) -> None:
        try:
            with governor.execute_with_budget(run_id):
                for step_no in range(1, 21):
                    governor.validate_step(run_id, step_no, _db_query(step_no))
                status = governor.get_budget_status(run_id)
                assert status is not None
                assert status.steps.used == 20
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_run, args=(f"run-{index}",)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert not any(governor.is_tracking(f"run-{index}") for index in range(8))
