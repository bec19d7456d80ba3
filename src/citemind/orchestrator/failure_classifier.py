"""Deterministic run failure classification for the worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from citemind.errors import (
    BudgetExceededError,
    CriticRejectedError,
    EmergencyStopError,
    PersistenceError,
    ToolInvocationError,
)
from citemind.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

# Outcomes that would repeat identically on another attempt.
NON_RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.DISABLED,
        FailureClass.BUDGET_EXCEEDED,
        FailureClass.VALIDATION_REJECTED,
        FailureClass.TOOL_ERROR,
    },
)

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "timed out",
    "could not resolve host",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_meta(self) -> dict[str, object]:
        """Serialize classifier diagnostics for run metadata."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Map an exception raised inside a run to its failure class."""

    if isinstance(error, BudgetExceededError):
        return FailureClassification(
            failure_class=FailureClass.BUDGET_EXCEEDED,
            reason_code=f"budget_{error.kind}_exceeded",
            matched_rule="budget_exceeded",
        )
    if isinstance(error, CriticRejectedError):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION_REJECTED,
            reason_code="critic_rejected",
            matched_rule="critic_rejected",
        )
    if isinstance(error, EmergencyStopError):
        return FailureClassification(
            failure_class=FailureClass.EMERGENCY_STOP,
            reason_code="emergency_stop",
            matched_rule="emergency_stop",
        )
    if isinstance(error, ToolInvocationError):
        return _classify_tool_error(error)
    if isinstance(error, PersistenceError):
        return FailureClassification(
            failure_class=FailureClass.PERSISTENCE,
            reason_code="persistence_error",
            matched_rule="persistence",
        )
    return FailureClassification(
        failure_class=FailureClass.UNEXPECTED,
        reason_code=f"unexpected_{type(error).__name__.lower()}",
        matched_rule="fallback_unexpected",
    )


def is_retryable(failure_class: FailureClass | None) -> bool:
    """Whether a job whose run ended with this class may be re-queued."""

    return failure_class is not None and failure_class not in NON_RETRYABLE_FAILURE_CLASSES


def _classify_tool_error(error: ToolInvocationError) -> FailureClassification:
    if error.transient:
        return FailureClassification(
            failure_class=FailureClass.TOOL_TRANSIENT,
            reason_code=f"{error.tool}_transient",
            matched_rule="transient_flag",
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TOOL_TRANSIENT,
            reason_code=f"{error.tool}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TOOL_TRANSIENT,
            reason_code=f"{error.tool}_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )
    return FailureClassification(
        failure_class=FailureClass.TOOL_ERROR,
        reason_code=f"{error.tool}_error",
        matched_rule="fallback_tool_error",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
