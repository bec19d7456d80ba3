"""Result validation and confidence scoring before a run may complete."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from citemind.orchestrator.models import JobType

logger = logging.getLogger(__name__)

STANDARD_FIELDS = ("timestamp", "status")
COMPLETENESS_WARNING_THRESHOLD = 0.8
TIMESTAMP_TOLERANCE_SECONDS = 60.0

CITATION_REQUIRED_FIELDS = ("platform", "query", "citation_found", "timestamp")
CITATION_PLATFORMS = frozenset({"chatgpt", "claude", "perplexity", "gemini"})
ANALYSIS_METRICS = ("readability_score", "sentiment", "key_topics", "word_count")


@dataclass(slots=True, frozen=True)
class CriticConfig:
    min_confidence: float = 0.7
    require_schema: bool = True
    enable_quality_checks: bool = True


@dataclass(slots=True)
class CriticVerdict:
    """Validation outcome; `valid` requires no errors and enough confidence."""

    valid: bool = True
    confidence: float = 1.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class Critic:
    """Quality gate applied to run results before they are persisted as completed."""

    def __init__(self, config: CriticConfig | None = None) -> None:
        self.config = config or CriticConfig()

    def validate_result(self, result: Any) -> CriticVerdict:
        """Generic structure, schema and quality validation for any run result."""

        verdict = CriticVerdict()

        if result is None:
            verdict.valid = False
            verdict.errors.append("Result cannot be null or undefined")
            return verdict
        if isinstance(result, list) and not result:
            verdict.warnings.append("Result is an empty array")

        if self.config.require_schema:
            if not isinstance(result, Mapping):
                verdict.valid = False
                verdict.errors.append("Result must be an object")
                return verdict
            if "success" not in result and "error" not in result:
                verdict.warnings.append("Result should have success or error field")

        completeness: float | None = None
        if self.config.enable_quality_checks and isinstance(result, Mapping):
            completeness = _completeness(result)
            if completeness < COMPLETENESS_WARNING_THRESHOLD:
                verdict.warnings.append(f"Low completeness score: {completeness:.2f}")
            issues = _consistency_issues(result)
            verdict.warnings.extend(issues)
            verdict.metadata["completeness_score"] = completeness
            verdict.metadata["consistency_issues"] = len(issues)

        confidence = 1.0 - 0.3 * len(verdict.errors) - 0.1 * len(verdict.warnings)
        if completeness is not None:
            confidence *= completeness
        verdict.confidence = _clamp(confidence)

        # The confidence gate applies even when no error was recorded.
        if verdict.confidence < self.config.min_confidence:
            verdict.errors.append(self._threshold_error(verdict.confidence))
        verdict.valid = not verdict.errors
        return verdict

    def validate_citation_result(self, result: Any) -> CriticVerdict:
        """Validate the outcome of probing an AI platform for a citation."""

        verdict = CriticVerdict(metadata={"result_type": "citation_analysis"})
        if not isinstance(result, Mapping):
            verdict.valid = False
            verdict.errors.append("Citation result must be an object")
            return verdict

        for name in CITATION_REQUIRED_FIELDS:
            if name not in result:
                verdict.errors.append(f"Missing required field: {name}")

        if "citation_probability" in result:
            probability = result["citation_probability"]
            if not _is_number(probability) or not 0 <= probability <= 1:
                verdict.errors.append("citation_probability must be a number between 0 and 1")

        if "platform" in result and result["platform"] not in CITATION_PLATFORMS:
            verdict.warnings.append(f"Unknown platform: {result['platform']}")

        confidence = 0.8
        if result.get("citation_found") is True:
            confidence += 0.15
        relevance = result.get("relevance_score")
        if _is_number(relevance) and relevance > 0.8:  # noqa: PLR2004
            confidence += 0.05
        confidence -= 0.2 * len(verdict.errors) + 0.05 * len(verdict.warnings)

        verdict.valid = not verdict.errors
        verdict.confidence = _clamp(confidence)
        return verdict

    def validate_content_analysis(self, result: Any) -> CriticVerdict:
        """Validate content analysis metrics."""

        verdict = CriticVerdict(metadata={"result_type": "content_analysis"})
        if not isinstance(result, Mapping):
            verdict.valid = False
            verdict.errors.append("Content analysis result must be an object")
            return verdict

        for metric in ANALYSIS_METRICS:
            if metric not in result:
                verdict.warnings.append(f"Missing analysis metric: {metric}")

        if "readability_score" in result:
            score = result["readability_score"]
            if not _is_number(score) or not 0 <= score <= 100:  # noqa: PLR2004
                verdict.errors.append("readability_score must be a number between 0 and 100")

        if "sentiment" in result:
            sentiment = result["sentiment"]
            if not isinstance(sentiment, Mapping):
                verdict.errors.append("sentiment must be an object")
            elif "polarity" not in sentiment or "confidence" not in sentiment:
                verdict.errors.append("sentiment must have polarity and confidence fields")

        available = sum(1 for metric in ANALYSIS_METRICS if metric in result)
        confidence = 0.7 + (available / len(ANALYSIS_METRICS)) * 0.2
        confidence -= 0.25 * len(verdict.errors) + 0.05 * len(verdict.warnings)

        verdict.valid = not verdict.errors
        verdict.confidence = _clamp(confidence)
        return verdict

    def validate_for_job(self, job_type: JobType | str, result: Any) -> CriticVerdict:
        """Generic validation plus the domain validator for the job's nested payloads.

        Domain verdicts are merged in: their errors and warnings are prefixed
        with the payload key, and the lowest confidence wins.
        """

        verdict = self.validate_result(result)
        if not isinstance(result, Mapping):
            return verdict
        base_threshold_error = self._threshold_error(verdict.confidence)
        if base_threshold_error in verdict.errors:
            verdict.errors.remove(base_threshold_error)

        rules = _DOMAIN_RULES.get(JobType(job_type), ())
        for key, pick in rules:
            payloads = result.get(key)
            if payloads is None:
                continue
            items = payloads if isinstance(payloads, list) else [payloads]
            for index, item in enumerate(items):
                label = key if len(items) == 1 else f"{key}[{index}]"
                domain = pick(self, item)
                verdict.errors.extend(f"{label}: {message}" for message in domain.errors)
                verdict.warnings.extend(f"{label}: {message}" for message in domain.warnings)
                verdict.confidence = min(verdict.confidence, domain.confidence)

        if verdict.confidence < self.config.min_confidence:
            verdict.errors.append(self._threshold_error(verdict.confidence))
        verdict.valid = not verdict.errors
        if not verdict.valid:
            logger.info(
                "Critic rejected %s result: %s",
                JobType(job_type).value,
                "; ".join(verdict.errors),
            )
        return verdict

    def _threshold_error(self, confidence: float) -> str:
        return f"Confidence {confidence:.2f} below threshold {self.config.min_confidence}"


_Validator = Callable[[Critic, Any], CriticVerdict]

_DOMAIN_RULES: dict[JobType, tuple[tuple[str, _Validator], ...]] = {
    JobType.PR_INSIGHT_GENERATION: (("citation", Critic.validate_citation_result),),
    JobType.AI_PLATFORM_ANALYSIS: (("citation", Critic.validate_citation_result),),
    JobType.VISIBILITY_SCORE_UPDATE: (("analysis", Critic.validate_content_analysis),),
    JobType.FOLLOWUP_RECOMMENDATIONS: (("analysis", Critic.validate_content_analysis),),
    JobType.VISIBILITY_COMPREHENSIVE_REFRESH: (("analysis", Critic.validate_content_analysis),),
}


def _completeness(result: Mapping[str, Any]) -> float:
    total = len(result)
    if total == 0:
        return 0.0
    present = sum(1 for name in STANDARD_FIELDS if name in result)
    return (present + (total - len(STANDARD_FIELDS))) / (total + len(STANDARD_FIELDS))


def _consistency_issues(result: Mapping[str, Any]) -> list[str]:
    issues: list[str] = []

    if "timestamp" in result and "created_at" in result:
        timestamp = _parse_datetime(result["timestamp"])
        created_at = _parse_datetime(result["created_at"])
        if (
            timestamp is not None
            and created_at is not None
            and abs((timestamp - created_at).total_seconds()) > TIMESTAMP_TOLERANCE_SECONDS
        ):
            issues.append("Timestamp and created_at differ by more than 1 minute")

    if "success" in result and "error" in result:
        if result["success"] is True and result["error"]:
            issues.append("Cannot have success=true with error message")
        if result["success"] is False and not result["error"]:
            issues.append("success=false should have error message")

    return issues


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
