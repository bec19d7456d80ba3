from __future__ import annotations

import allure
import pytest

from citemind.agentic.runner import AgentRunner
from citemind.config import AgentSettings
from citemind.orchestrator.handlers import (
    HandlerRegistry,
    build_default_registry,
    citation_platform,
    handle_content_analysis,
)
from citemind.orchestrator.models import JobCreate, JobType, RunStatus, StepStatus
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.telemetry.collector import TelemetryCollector
from citemind.tools.router import ToolRouter

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Job handlers"),
]


def _run_job(
    repository: OrchestratorRepository,
    runner: AgentRunner,
    job_type: JobType,
    *,
    payload: dict[str, object],
    meta: dict[str, object] | None = None,
):
    job = repository.enqueue_job(
        JobCreate(tenant_id="org-1", job_type=job_type, payload=payload, meta=meta or {}),
    )
    outcome = runner.execute_job(
        job.org_id,
        job.job_id,
        job_type.value,
        build_default_registry().executor_for(job),
        job_type=job_type,
    )
    details = repository.get_run_details(run_id=outcome.run_id) if outcome.run_id else None
    return outcome, details


def test_registry_requires_a_handler_for_every_job_type() -> None:
    with pytest.raises(ValueError, match="ai_platform_analysis"):
        HandlerRegistry({JobType.CONTENT_ANALYSIS: handle_content_analysis})

    registry = build_default_registry()
    assert registry.get("content_analysis") is handle_content_analysis


def test_pr_insight_runs_fetch_analyze_validate_cite_store(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.PR_INSIGHT_GENERATION,
        payload={
            "press_release_id": "pr-1",
            "keywords": ["acme", "launch"],
            "submission_tier": "premium",
        },
        meta={"platforms": ["anthropic", "google"]},
    )

    assert outcome.status is RunStatus.COMPLETED
    assert details is not None
    assert [step.tool for step in details.steps] == [
        "db_query",
        "llm_call",
        "llm_call",
        "citation_check",
        "db_query",
    ]
    result = outcome.result
    assert result["press_release_id"] == "pr-1"
    assert result["submission_tier"] == "premium"
    assert result["citation"]["platform"] == "claude"
    assert result["citation"]["query"] == "acme launch"
    assert result["steps_executed"] == 5
    assert result["insights"]["primary_analysis"]["model"] == runner.settings.model_primary
    assert result["insights"]["validation"]["model"] == runner.settings.model_fallback


def test_visibility_score_update_passes_analysis_through_the_critic(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.VISIBILITY_SCORE_UPDATE,
        payload={"press_release_id": "pr-1"},
        meta={"score_types": ["media_coverage"]},
    )

    assert outcome.success is True
    assert details is not None
    assert [step.tool for step in details.steps] == ["db_query", "content_analysis", "db_query"]
    assert 0 <= outcome.result["analysis"]["readability_score"] <= 100
    assert details.run.meta["critic_confidence"] >= runner.settings.min_confidence


def test_followup_recommendations_analyze_then_recommend(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.FOLLOWUP_RECOMMENDATIONS,
        payload={"press_release_id": "pr-1", "distribution_channels": ["wire"]},
        meta={"recommendation_types": ["social_media"]},
    )

    assert outcome.success is True
    assert details is not None
    assert [step.tool for step in details.steps] == ["content_analysis", "llm_call"]
    assert outcome.result["recommendation_types"] == ["social_media"]


def test_content_analysis_queries_each_platform_model(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.CONTENT_ANALYSIS,
        payload={"content_id": "c-1"},
        meta={"analysis_platforms": ["openai", "anthropic", "google"]},
    )

    assert outcome.success is True
    assert details is not None
    assert [step.tool for step in details.steps] == ["db_query", "llm_call", "llm_call", "llm_call"]
    analyses = outcome.result["analysis_results"]
    assert analyses["openai_analysis"]["model"] == "openai/gpt-4"
    assert analyses["anthropic_analysis"]["model"] == runner.settings.model_primary
    assert analyses["google_analysis"]["model"] == "google/gemini-1.5-pro"


def test_comprehensive_refresh_searches_every_source(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.VISIBILITY_COMPREHENSIVE_REFRESH,
        payload={"entity_id": "brand-7"},
        meta={"refresh_sources": ["news_mentions", "backlinks"], "lookback_days": 7},
    )

    assert outcome.success is True
    assert details is not None
    assert [step.tool for step in details.steps] == [
        "web_search",
        "web_search",
        "content_analysis",
        "db_query",
    ]
    assert sorted(outcome.result["signals"]) == ["backlinks", "news_mentions"]
    assert outcome.result["signals"]["backlinks"]["query"] == "brand-7"


def test_ai_platform_analysis_maps_provider_to_citation_platform(
    repository: OrchestratorRepository,
    runner: AgentRunner,
) -> None:
    outcome, details = _run_job(
        repository,
        runner,
        JobType.AI_PLATFORM_ANALYSIS,
        payload={"entity_id": "brand-7", "platform": "perplexity", "analysis_type": "mentions"},
    )

    assert outcome.success is True
    assert details is not None
    assert [step.tool for step in details.steps] == ["llm_call", "citation_check"]
    assert outcome.result["answer"]["model"] == "perplexity/sonar"
    assert outcome.result["citation"]["platform"] == "perplexity"


def test_budget_stop_mid_sequence_skips_remaining_steps(
    repository: OrchestratorRepository,
    demo_tools: ToolRouter,
    telemetry: TelemetryCollector,
) -> None:
    runner = AgentRunner(
        repository,
        demo_tools,
        telemetry,
        AgentSettings(enabled=True, max_steps=2),
    )

    outcome, details = _run_job(
        repository,
        runner,
        JobType.PR_INSIGHT_GENERATION,
        payload={"press_release_id": "pr-1"},
    )

    assert outcome.status is RunStatus.BUDGET_EXCEEDED
    assert details is not None
    assert [(step.tool, step.status) for step in details.steps] == [
        ("db_query", StepStatus.COMPLETED),
        ("llm_call", StepStatus.COMPLETED),
        ("llm_call", StepStatus.FAILED),
    ]


@pytest.mark.parametrize(
    ("provider", "platform"),
    [("openai", "chatgpt"), ("anthropic", "claude"), ("google", "gemini"), ("mistral", "mistral")],
)
def test_citation_platform_mapping(provider: str, platform: str) -> None:
    assert citation_platform(provider) == platform
