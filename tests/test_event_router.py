from __future__ import annotations

import allure
import pytest

from citemind.errors import PersistenceError
from citemind.orchestrator.event_router import EventRouter, build_job_specs
from citemind.orchestrator.models import (
    EventCreate,
    EventProcessingStatus,
    JobCreate,
    JobType,
)
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.telemetry.collector import TelemetryCollector

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Event routing"),
]


def _pr_event(tier: str, **payload: object) -> EventCreate:
    return EventCreate(
        tenant_id="org-1",
        user_id="user-1",
        event_type="pr.submitted",
        entity_type="press_release",
        entity_id="pr-42",
        payload={"submission_tier": tier, **payload},
    )


def test_premium_press_release_fans_out_into_three_jobs(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    router = EventRouter(repository, telemetry)

    result = router.emit(_pr_event("premium", keywords=["launch", "acme"]))

    jobs = {job.job_type: job for job in result.created}
    assert [job.job_type for job in result.created] == [
        JobType.PR_INSIGHT_GENERATION,
        JobType.VISIBILITY_SCORE_UPDATE,
        JobType.FOLLOWUP_RECOMMENDATIONS,
    ]
    assert [job.priority for job in result.created] == [2, 5, 7]
    assert result.failed_job_types == []
    insight = jobs[JobType.PR_INSIGHT_GENERATION]
    assert insight.payload["press_release_id"] == "pr-42"
    assert insight.payload["keywords"] == ["launch", "acme"]
    assert insight.meta["platforms"] == ["openai", "anthropic", "google"]
    assert insight.tenant_id == "org-1"
    assert insight.user_id == "user-1"
    assert insight.event_id == result.event_id

    event = repository.get_event(event_id=result.event_id)
    assert event is not None
    assert event.processing_status is EventProcessingStatus.PROCESSED
    assert event.processed_at is not None


def test_basic_press_release_has_no_followup_job(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    result = EventRouter(repository, telemetry).emit(_pr_event("basic"))

    assert [job.job_type for job in result.created] == [
        JobType.PR_INSIGHT_GENERATION,
        JobType.VISIBILITY_SCORE_UPDATE,
    ]
    assert len(repository.list_jobs_for_event(event_id=result.event_id)) == 2


def test_ai_analysis_event_creates_one_job_per_platform(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    result = EventRouter(repository, telemetry).emit(
        EventCreate(
            tenant_id="org-1",
            event_type="ai.analysis_requested",
            entity_id="brand-7",
            payload={
                "platforms": ["openai", "perplexity"],
                "analysis_type": "brand_mentions",
                "config": {"depth": 2},
            },
        ),
    )

    assert [job.meta["platform"] for job in result.created] == ["openai", "perplexity"]
    assert all(job.job_type is JobType.AI_PLATFORM_ANALYSIS for job in result.created)
    assert all(job.priority == 3 for job in result.created)
    assert result.created[0].meta["analysis_config"] == {"depth": 2}
    assert result.created[1].payload["analysis_type"] == "brand_mentions"


def test_ai_analysis_without_platforms_defaults_to_openai(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    result = EventRouter(repository, telemetry).emit(
        EventCreate(tenant_id="org-1", event_type="ai.analysis_requested", entity_id="b"),
    )

    assert [job.meta["platform"] for job in result.created] == ["openai"]
    assert result.created[0].meta["analysis_config"] == {}


def test_content_and_refresh_events_map_to_single_jobs(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    router = EventRouter(repository, telemetry)

    content = router.emit(
        EventCreate(tenant_id="org-1", event_type="content.created", entity_id="c-1"),
    )
    refresh = router.emit(
        EventCreate(tenant_id="org-1", event_type="visibility.refresh_requested", entity_id="e"),
    )

    assert [(job.job_type, job.priority) for job in content.created] == [
        (JobType.CONTENT_ANALYSIS, 4),
    ]
    assert content.created[0].payload["content_id"] == "c-1"
    assert [(job.job_type, job.priority) for job in refresh.created] == [
        (JobType.VISIBILITY_COMPREHENSIVE_REFRESH, 3),
    ]
    assert refresh.created[0].meta["lookback_days"] == 30


def test_unknown_event_type_is_ignored(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    analytics_sink,
) -> None:
    result = EventRouter(repository, telemetry).emit(
        EventCreate(tenant_id="org-1", event_type="billing.invoice_paid"),
    )

    assert result.created == []
    assert repository.list_jobs() == []
    event = repository.get_event(event_id=result.event_id)
    assert event is not None
    assert event.processing_status is EventProcessingStatus.IGNORED
    telemetry.flush()
    assert analytics_sink.events == []


def test_event_is_routed_at_most_once(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    router = EventRouter(repository, telemetry)
    first = router.emit(_pr_event("basic"))
    event = repository.get_event(event_id=first.event_id)
    assert event is not None

    again = router.enqueue_jobs_for_event(event)

    assert again.created == []
    assert len(repository.list_jobs()) == 2


def test_failed_insert_does_not_stop_the_remaining_jobs(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    error_sink,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original = repository.enqueue_job

    def _flaky_enqueue(payload: JobCreate):
        if payload.job_type is JobType.VISIBILITY_SCORE_UPDATE:
            raise PersistenceError("Failed to enqueue visibility_score_update job: disk I/O")
        return original(payload)

    monkeypatch.setattr(repository, "enqueue_job", _flaky_enqueue)

    result = EventRouter(repository, telemetry).emit(_pr_event("premium"))

    assert [job.job_type for job in result.created] == [
        JobType.PR_INSIGHT_GENERATION,
        JobType.FOLLOWUP_RECOMMENDATIONS,
    ]
    assert result.failed_job_types == [JobType.VISIBILITY_SCORE_UPDATE]
    telemetry.flush()
    assert len(error_sink.records) == 1
    assert error_sink.records[0].error_type == "PersistenceError"


def test_each_enqueued_job_emits_a_lifecycle_event(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
    analytics_sink,
) -> None:
    result = EventRouter(repository, telemetry).emit(_pr_event("basic"))
    telemetry.flush()

    enqueued = analytics_sink.named("citemind_job_enqueued")
    assert [item.properties["job_id"] for item in enqueued] == result.job_ids
    assert enqueued[0].properties["event_type"] == "pr.submitted"
    assert enqueued[0].properties["priority"] == 2
    assert enqueued[0].properties["citemind"] is True
    assert enqueued[0].properties["environment"] == "test"


def test_router_applies_configured_retry_limit(
    repository: OrchestratorRepository,
    telemetry: TelemetryCollector,
) -> None:
    result = EventRouter(repository, telemetry, max_retries=1).emit(_pr_event("basic"))

    assert {job.max_retries for job in result.created} == {1}


def test_build_job_specs_is_pure(repository: OrchestratorRepository) -> None:
    event = repository.create_event(_pr_event("premium"))

    first = build_job_specs(event)
    second = build_job_specs(event)

    assert first == second
    assert repository.list_jobs() == []
