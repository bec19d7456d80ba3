"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from citemind.agentic.runner import AgentRunner
from citemind.config import AgentSettings, TelemetrySettings
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.telemetry.collector import TelemetryCollector
from citemind.telemetry.sinks import ErrorRecord, TelemetryEvent
from citemind.tools.demo import build_demo_invokers
from citemind.tools.router import ToolRouter


class RecordingAnalyticsSink:
    """Keeps every delivered batch in memory."""

    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    def send_batch(self, events: list[TelemetryEvent]) -> None:
        self.events.extend(events)

    def names(self) -> list[str]:
        return [item.event for item in self.events]

    def named(self, name: str) -> list[TelemetryEvent]:
        return [item for item in self.events if item.event == name]


class RecordingErrorSink:
    def __init__(self) -> None:
        self.records: list[ErrorRecord] = []

    def send(self, records: list[ErrorRecord]) -> None:
        self.records.extend(records)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CITEMIND_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "citemind.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def analytics_sink() -> RecordingAnalyticsSink:
    return RecordingAnalyticsSink()


@pytest.fixture()
def error_sink() -> RecordingErrorSink:
    return RecordingErrorSink()


@pytest.fixture()
def telemetry(
    analytics_sink: RecordingAnalyticsSink,
    error_sink: RecordingErrorSink,
) -> TelemetryCollector:
    return TelemetryCollector(
        TelemetrySettings(environment="test", batch_size=1000),
        analytics_sink=analytics_sink,
        error_sink=error_sink,
    )


@pytest.fixture()
def agent_settings() -> AgentSettings:
    return AgentSettings(enabled=True)


@pytest.fixture()
def demo_tools() -> ToolRouter:
    return ToolRouter(build_demo_invokers())


@pytest.fixture()
def runner(
    repository: OrchestratorRepository,
    demo_tools: ToolRouter,
    telemetry: TelemetryCollector,
    agent_settings: AgentSettings,
) -> AgentRunner:
    return AgentRunner(repository, demo_tools, telemetry, agent_settings)
