"""Delivery targets for buffered telemetry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(slots=True)
class TelemetryEvent:
    """Sanitized analytics event waiting in the buffer."""

    event: str
    properties: dict[str, Any]
    timestamp: datetime
    requeued: bool = False


@dataclass(slots=True)
class ErrorRecord:
    """Error report for the error-tracking sink; context is already redacted."""

    message: str
    error_type: str
    tags: dict[str, str]
    context: dict[str, Any]
    timestamp: datetime
    requeued: bool = False
    stack: list[str] = field(default_factory=list)


class AnalyticsSink(Protocol):
    def send_batch(self, events: list[TelemetryEvent]) -> None: ...


class ErrorSink(Protocol):
    def send(self, records: list[ErrorRecord]) -> None: ...


def distinct_id(properties: dict[str, Any]) -> str:
    """Org-level identity only; never a user identifier."""

    for name in ("org_id", "tenant_id"):
        value = properties.get(name)
        if isinstance(value, str) and value:
            return value
    return "anonymous"


class PostHogSink:
    """Posts batches to the PostHog-compatible `/batch/` capture endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        host: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = httpx.Client(
            base_url=host.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    def send_batch(self, events: list[TelemetryEvent]) -> None:
        payload = {
            "api_key": self._api_key,
            "batch": [
                {
                    "event": item.event,
                    "properties": {
                        **item.properties,
                        "$timestamp": item.timestamp.astimezone(UTC).isoformat(),
                    },
                    "distinct_id": distinct_id(item.properties),
                }
                for item in events
            ],
        }
        response = self._client.post("/batch/", json=payload)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class WebhookErrorSink:
    """Posts error records as JSON to an error-tracking webhook."""

    def __init__(
        self,
        *,
        url: str,
        environment: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._environment = environment
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    def send(self, records: list[ErrorRecord]) -> None:
        payload = {
            "environment": self._environment,
            "errors": [
                {
                    "message": record.message,
                    "error_type": record.error_type,
                    "tags": {**record.tags, "environment": self._environment},
                    "extra": record.context,
                    "stack": record.stack,
                    "timestamp": record.timestamp.astimezone(UTC).isoformat(),
                }
                for record in records
            ],
        }
        response = self._client.post(self._url, json=payload)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class LoggingAnalyticsSink:
    """Fallback when no analytics endpoint is configured."""

    def send_batch(self, events: list[TelemetryEvent]) -> None:
        for item in events:
            logger.debug(
                "telemetry event %s distinct_id=%s properties=%s",
                item.event,
                distinct_id(item.properties),
                item.properties,
            )


class LoggingErrorSink:
    def send(self, records: list[ErrorRecord]) -> None:
        for record in records:
            logger.warning(
                "tracked error %s: %s tags=%s",
                record.error_type,
                record.message,
                record.tags,
            )
