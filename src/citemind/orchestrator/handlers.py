"""Step sequences executed for each job type inside an agent run."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from citemind.agentic.runner import Executor, RunContext
from citemind.orchestrator.models import JobType, JobView
from citemind.storage.common import utc_now
from citemind.tools.base import ToolInvocation, ToolName

logger = logging.getLogger(__name__)

Handler = Callable[[RunContext, JobView], dict[str, Any]]

DEFAULT_CITATION_PLATFORMS = ("openai", "anthropic", "google")
DEFAULT_ANALYSIS_PLATFORMS = ("openai", "anthropic")
DEFAULT_REFRESH_SOURCES = ("google_search", "social_media", "news_mentions", "backlinks")

# Provider names used in job metadata -> AI platform probed for citations.
CITATION_PLATFORM_BY_PROVIDER = {
    "openai": "chatgpt",
    "anthropic": "claude",
    "google": "gemini",
    "perplexity": "perplexity",
}
PROVIDER_MODELS = {
    "openai": "openai/gpt-4",
    "google": "google/gemini-1.5-pro",
    "perplexity": "perplexity/sonar",
}


class HandlerRegistry:
    """Closed mapping JobType -> handler; refuses to exist with a gap."""

    def __init__(self, handlers: Mapping[JobType, Handler]) -> None:
        missing = [job_type.value for job_type in JobType if job_type not in handlers]
        if missing:
            raise ValueError(f"No handler registered for job types: {', '.join(missing)}")
        self._handlers = dict(handlers)

    def get(self, job_type: JobType | str) -> Handler:
        return self._handlers[JobType(job_type)]

    def executor_for(self, job: JobView) -> Executor:
        """Bind a job to its handler so the runner only sees `executor(context)`."""

        handler = self.get(job.job_type)

        def _execute(context: RunContext) -> dict[str, Any]:
            logger.debug(
                "Run %s executing %s job %s",
                context.run_id,
                job.job_type.value,
                job.job_id,
            )
            return handler(context, job)

        return _execute


def build_default_registry() -> HandlerRegistry:
    return HandlerRegistry(
        {
            JobType.PR_INSIGHT_GENERATION: handle_pr_insight_generation,
            JobType.VISIBILITY_SCORE_UPDATE: handle_visibility_score_update,
            JobType.FOLLOWUP_RECOMMENDATIONS: handle_followup_recommendations,
            JobType.CONTENT_ANALYSIS: handle_content_analysis,
            JobType.VISIBILITY_COMPREHENSIVE_REFRESH: handle_visibility_comprehensive_refresh,
            JobType.AI_PLATFORM_ANALYSIS: handle_ai_platform_analysis,
        },
    )


def handle_pr_insight_generation(context: RunContext, job: JobView) -> dict[str, Any]:
    press_release_id = job.payload.get("press_release_id")
    keywords = _string_list(job.payload.get("keywords"))
    providers = _string_list(job.meta.get("platforms")) or list(DEFAULT_CITATION_PLATFORMS)

    content = _step(
        context,
        ToolName.DB_QUERY,
        query="fetch_press_release",
        operation="select",
        table="press_releases",
        id=press_release_id,
    )
    primary = _step(
        context,
        ToolName.LLM_CALL,
        model=context.settings.model_primary,
        prompt=(
            "Analyze this press release for sentiment, reach potential "
            "and optimization opportunities"
        ),
        content=content,
        analysis_types=_string_list(job.meta.get("analysis_types")),
    )
    validation = _step(
        context,
        ToolName.LLM_CALL,
        model=context.settings.model_fallback,
        prompt="Review and validate this analysis",
        original_analysis=primary,
    )
    citation = _step(
        context,
        ToolName.CITATION_CHECK,
        content_id=press_release_id,
        platform=citation_platform(providers[0]),
        platforms=[citation_platform(provider) for provider in providers],
        query=" ".join(keywords),
        keywords=keywords,
    )
    insights = {
        "content": content,
        "primary_analysis": primary,
        "validation": validation,
        "citations": citation,
    }
    stored = _step(
        context,
        ToolName.DB_QUERY,
        query="store_pr_insights",
        operation="upsert",
        table="pr_insights",
        id=press_release_id,
        insights=insights,
    )
    return _result(
        context,
        job,
        press_release_id=press_release_id,
        submission_tier=job.payload.get("submission_tier"),
        insights=insights,
        citation=citation,
        storage_result=stored,
    )


def handle_visibility_score_update(context: RunContext, job: JobView) -> dict[str, Any]:
    press_release_id = job.payload.get("press_release_id")
    score_types = _string_list(job.meta.get("score_types"))

    metrics = _step(
        context,
        ToolName.DB_QUERY,
        query="collect_visibility_metrics",
        operation="select",
        table="visibility_metrics",
        id=press_release_id,
    )
    scores = _step(
        context,
        ToolName.CONTENT_ANALYSIS,
        metrics=metrics,
        score_types=score_types,
        focus="visibility",
    )
    updated = _step(
        context,
        ToolName.DB_QUERY,
        query="update_visibility_scores",
        operation="update",
        table="visibility_scores",
        id=press_release_id,
        scores=scores,
    )
    return _result(
        context,
        job,
        press_release_id=press_release_id,
        score_types=score_types,
        analysis=scores,
        updated=updated,
    )


def handle_followup_recommendations(context: RunContext, job: JobView) -> dict[str, Any]:
    press_release_id = job.payload.get("press_release_id")
    recommendation_types = _string_list(job.meta.get("recommendation_types"))

    performance = _step(
        context,
        ToolName.CONTENT_ANALYSIS,
        press_release_id=press_release_id,
        distribution_channels=job.payload.get("distribution_channels") or [],
        focus="performance",
    )
    recommendations = _step(
        context,
        ToolName.LLM_CALL,
        model=context.settings.model_primary,
        prompt="Generate followup recommendations based on performance data",
        performance_data=performance,
        recommendation_types=recommendation_types,
    )
    return _result(
        context,
        job,
        press_release_id=press_release_id,
        recommendation_types=recommendation_types,
        analysis=performance,
        recommendations=recommendations,
    )


def handle_content_analysis(context: RunContext, job: JobView) -> dict[str, Any]:
    content_id = job.payload.get("content_id")
    platforms = (
        _string_list(job.meta.get("analysis_platforms")) or list(DEFAULT_ANALYSIS_PLATFORMS)
    )

    content = _step(
        context,
        ToolName.DB_QUERY,
        query="fetch_content",
        operation="select",
        table="content",
        id=content_id,
    )
    results: dict[str, Any] = {"content": content}
    for platform in platforms:
        results[f"{platform}_analysis"] = _step(
            context,
            ToolName.LLM_CALL,
            model=provider_model(platform, context),
            prompt="Analyze content for readability, engagement and SEO",
            content=content,
            metrics=_string_list(job.meta.get("metrics")),
        )
    return _result(
        context,
        job,
        content_id=content_id,
        platforms=platforms,
        analysis_results=results,
    )


def handle_visibility_comprehensive_refresh(context: RunContext, job: JobView) -> dict[str, Any]:
    entity_id = job.payload.get("entity_id")
    sources = _string_list(job.meta.get("refresh_sources")) or list(DEFAULT_REFRESH_SOURCES)
    lookback_days = job.meta.get("lookback_days", 30)

    signals: dict[str, Any] = {}
    for source in sources:
        signals[source] = _step(
            context,
            ToolName.WEB_SEARCH,
            source=source,
            query=str(entity_id or ""),
            lookback_days=lookback_days,
        )
    aggregate = _step(
        context,
        ToolName.CONTENT_ANALYSIS,
        signals=signals,
        focus="visibility",
    )
    updated = _step(
        context,
        ToolName.DB_QUERY,
        query="update_visibility_snapshot",
        operation="upsert",
        table="visibility_snapshots",
        id=entity_id,
        scores=aggregate,
    )
    return _result(
        context,
        job,
        entity_id=entity_id,
        refresh_sources=sources,
        lookback_days=lookback_days,
        signals=signals,
        analysis=aggregate,
        updated=updated,
    )


def handle_ai_platform_analysis(context: RunContext, job: JobView) -> dict[str, Any]:
    entity_id = job.payload.get("entity_id")
    provider = str(job.payload.get("platform") or job.meta.get("platform") or "openai")
    analysis_type = job.payload.get("analysis_type")

    answer = _step(
        context,
        ToolName.LLM_CALL,
        model=provider_model(provider, context),
        prompt=f"Describe what you know about {entity_id}",
        analysis_type=analysis_type,
        analysis_config=job.meta.get("analysis_config") or {},
    )
    citation = _step(
        context,
        ToolName.CITATION_CHECK,
        content_id=entity_id,
        platform=citation_platform(provider),
        query=str(entity_id or ""),
        answer=answer,
    )
    return _result(
        context,
        job,
        entity_id=entity_id,
        platform=provider,
        analysis_type=analysis_type,
        answer=answer,
        citation=citation,
    )


def citation_platform(provider: str) -> str:
    return CITATION_PLATFORM_BY_PROVIDER.get(provider, provider)


def provider_model(provider: str, context: RunContext) -> str:
    """Model to query for a provider; providers without a pinned model use the primary."""

    return PROVIDER_MODELS.get(provider, context.settings.model_primary)


def _step(context: RunContext, tool: ToolName, **tool_input: Any) -> Any:
    return context.execute_step(ToolInvocation(tool=tool.value, input=tool_input)).output


def _result(context: RunContext, job: JobView, **fields: Any) -> dict[str, Any]:
    status = context.budget_status()
    return {
        "success": True,
        "timestamp": utc_now().isoformat(),
        "status": "completed",
        "job_type": JobType(job.job_type).value,
        "job_id": job.job_id,
        "org_id": context.org_id,
        "run_id": context.run_id,
        "steps_executed": int(status.steps.used) if status is not None else None,
        **fields,
    }


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]
