"""Fan-out of inbound domain events into durable jobs."""

from __future__ import annotations

import logging
from typing import Any

from citemind.errors import PersistenceError
from citemind.orchestrator.models import (
    EnqueueResult,
    EventCreate,
    EventProcessingStatus,
    EventView,
    JobCreate,
    JobSpec,
    JobType,
)
from citemind.orchestrator.repository import OrchestratorRepository
from citemind.telemetry.collector import TelemetryCollector

logger = logging.getLogger(__name__)

PR_SUBMITTED = "pr.submitted"
CONTENT_CREATED = "content.created"
VISIBILITY_REFRESH_REQUESTED = "visibility.refresh_requested"
AI_ANALYSIS_REQUESTED = "ai.analysis_requested"

PREMIUM_TIER = "premium"


def build_job_specs(event: EventView) -> list[JobSpec]:
    """Ordered jobs an event fans out into; unknown event types yield none."""

    payload = event.payload
    if event.event_type == PR_SUBMITTED:
        return _pr_submitted_specs(event)
    if event.event_type == CONTENT_CREATED:
        return [
            JobSpec(
                job_type=JobType.CONTENT_ANALYSIS,
                priority=4,
                payload={"content_id": event.entity_id, "event_id": event.event_id},
                meta={
                    "analysis_platforms": ["openai", "anthropic"],
                    "metrics": ["readability", "engagement_prediction", "seo_optimization"],
                },
            ),
        ]
    if event.event_type == VISIBILITY_REFRESH_REQUESTED:
        return [
            JobSpec(
                job_type=JobType.VISIBILITY_COMPREHENSIVE_REFRESH,
                priority=3,
                payload={"entity_id": event.entity_id, "event_id": event.event_id},
                meta={
                    "refresh_sources": [
                        "google_search",
                        "social_media",
                        "news_mentions",
                        "backlinks",
                    ],
                    "lookback_days": 30,
                },
            ),
        ]
    if event.event_type == AI_ANALYSIS_REQUESTED:
        platforms = payload.get("platforms")
        if not isinstance(platforms, list) or not platforms:
            platforms = ["openai"]
        return [
            JobSpec(
                job_type=JobType.AI_PLATFORM_ANALYSIS,
                priority=3,
                payload={
                    "entity_id": event.entity_id,
                    "event_id": event.event_id,
                    "analysis_type": payload.get("analysis_type"),
                    "platform": str(platform),
                },
                meta={
                    "platform": str(platform),
                    "analysis_config": payload.get("config") or {},
                },
            )
            for platform in platforms
        ]

    logger.info("No jobs defined for event type %s (event %s)", event.event_type, event.event_id)
    return []


def _pr_submitted_specs(event: EventView) -> list[JobSpec]:
    payload = event.payload
    tier = payload.get("submission_tier")
    specs = [
        JobSpec(
            job_type=JobType.PR_INSIGHT_GENERATION,
            priority=2,
            payload={
                "press_release_id": event.entity_id,
                "event_id": event.event_id,
                "submission_tier": tier,
                "keywords": payload.get("keywords") or [],
            },
            meta={
                "platforms": ["openai", "anthropic", "google"],
                "analysis_types": ["sentiment", "reach_prediction", "keyword_optimization"],
            },
        ),
        JobSpec(
            job_type=JobType.VISIBILITY_SCORE_UPDATE,
            priority=5,
            payload={"press_release_id": event.entity_id, "event_id": event.event_id},
            meta={"score_types": ["media_coverage", "social_mentions", "search_visibility"]},
        ),
    ]
    if tier == PREMIUM_TIER:
        specs.append(
            JobSpec(
                job_type=JobType.FOLLOWUP_RECOMMENDATIONS,
                priority=7,
                payload={
                    "press_release_id": event.entity_id,
                    "event_id": event.event_id,
                    "distribution_channels": payload.get("distribution_channels") or [],
                },
                meta={
                    "recommendation_types": [
                        "social_media",
                        "influencer_outreach",
                        "content_amplification",
                    ],
                },
            ),
        )
    return specs


class EventRouter:
    """Persists the jobs an event implies; never executes them."""

    def __init__(
        self,
        store: OrchestratorRepository,
        telemetry: TelemetryCollector,
        *,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.telemetry = telemetry
        self.max_retries = max_retries

    def emit(self, event: EventCreate) -> EnqueueResult:
        """Store a new event and route it."""

        stored = self.store.create_event(event)
        return self.enqueue_jobs_for_event(stored)

    def enqueue_jobs_for_event(self, event: EventView) -> EnqueueResult:
        """Create the event's jobs, best effort: one failed insert does not stop the rest.

        An event is routed at most once; routing it again yields an empty result.
        """

        result = EnqueueResult(event_id=event.event_id)
        specs = build_job_specs(event)
        status = EventProcessingStatus.PROCESSED if specs else EventProcessingStatus.IGNORED
        if not self.store.claim_event(event_id=event.event_id, status=status):
            logger.info("Event %s was already routed, skipping", event.event_id)
            return result

        for spec in specs:
            try:
                job = self.store.enqueue_job(
                    JobCreate(
                        tenant_id=event.tenant_id,
                        user_id=event.user_id,
                        event_id=event.event_id,
                        job_type=spec.job_type,
                        priority=spec.priority,
                        payload=spec.payload,
                        meta=spec.meta,
                        max_retries=self.max_retries,
                    ),
                )
            except PersistenceError as error:
                result.failed_job_types.append(spec.job_type)
                logger.error(
                    "Failed to enqueue %s job for event %s: %s",
                    spec.job_type.value,
                    event.event_id,
                    error,
                )
                self.telemetry.track_error(
                    error,
                    {
                        "event_id": event.event_id,
                        "org_id": event.tenant_id,
                        "job_type": spec.job_type.value,
                    },
                )
                continue
            result.created.append(job)
            self.telemetry.track_citemind_event(
                "citemind_job_enqueued",
                _enqueued_properties(event, spec, job.job_id),
            )

        logger.info(
            "Routed event %s (%s): %d job(s) enqueued, %d failed",
            event.event_id,
            event.event_type,
            len(result.created),
            len(result.failed_job_types),
        )
        return result


def _enqueued_properties(event: EventView, spec: JobSpec, job_id: str) -> dict[str, Any]:
    return {
        "job_id": job_id,
        "job_type": spec.job_type.value,
        "org_id": event.tenant_id,
        "event_type": event.event_type,
        "priority": spec.priority,
    }
