"""Buffered telemetry collector with PII scrubbing and best-effort delivery.

Nothing here raises to callers: sink failures are logged, a failed batch is
re-queued once, and a second failure drops it.
"""

from __future__ import annotations

import logging
import threading
import traceback
from collections.abc import Mapping
from typing import Any

import httpx

from citemind.config import TelemetrySettings
from citemind.storage.common import utc_now
from citemind.telemetry.sanitization import (
    redact_sensitive,
    sanitize_error_message,
    sanitize_properties,
)
from citemind.telemetry.sinks import (
    AnalyticsSink,
    ErrorRecord,
    ErrorSink,
    LoggingAnalyticsSink,
    LoggingErrorSink,
    PostHogSink,
    TelemetryEvent,
    WebhookErrorSink,
)

logger = logging.getLogger(__name__)

ERROR_TAG_KEYS = ("org_id", "job_id", "run_id")
MAX_STACK_LINES = 20


class TelemetryCollector:
    """Queues sanitized events and flushes them in batches to the configured sinks."""

    def __init__(
        self,
        settings: TelemetrySettings,
        *,
        analytics_sink: AnalyticsSink | None = None,
        error_sink: ErrorSink | None = None,
    ) -> None:
        self.settings = settings
        self._analytics_sink = analytics_sink or LoggingAnalyticsSink()
        self._error_sink = error_sink or LoggingErrorSink()
        self._lock = threading.Lock()
        self._events: list[TelemetryEvent] = []
        self._errors: list[ErrorRecord] = []
        self._flush_stop = threading.Event()
        self._flush_thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: TelemetrySettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> TelemetryCollector:
        """Collector wired to PostHog / error webhook when configured, logging otherwise."""

        analytics_sink: AnalyticsSink | None = None
        error_sink: ErrorSink | None = None
        if settings.posthog_api_key:
            analytics_sink = PostHogSink(
                api_key=settings.posthog_api_key,
                host=settings.posthog_host,
                timeout_seconds=settings.request_timeout_seconds,
                transport=transport,
            )
        if settings.error_webhook_url:
            error_sink = WebhookErrorSink(
                url=settings.error_webhook_url,
                environment=settings.environment,
                timeout_seconds=settings.request_timeout_seconds,
                transport=transport,
            )
        return cls(settings, analytics_sink=analytics_sink, error_sink=error_sink)

    @property
    def enabled(self) -> bool:
        return not self.settings.disabled

    @property
    def pending_events(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def pending_errors(self) -> int:
        with self._lock:
            return len(self._errors)

    def start(self) -> None:
        """Start the periodic background flush."""

        if not self.enabled or self._flush_thread is not None:
            return
        self._flush_stop.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            daemon=True,
            name="telemetry-flush",
        )
        self._flush_thread.start()

    def shutdown(self) -> None:
        """Stop the background flush, deliver whatever is buffered and close the sinks."""

        if self._flush_thread is not None:
            self._flush_stop.set()
            self._flush_thread.join(timeout=5)
            self._flush_thread = None
        self.flush()
        for sink in (self._analytics_sink, self._error_sink):
            close = getattr(sink, "close", None)
            if close is not None:
                close()

    def track_event(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        event = TelemetryEvent(
            event=name,
            properties=sanitize_properties(properties or {}),
            timestamp=utc_now(),
        )
        with self._lock:
            self._events.append(event)
            should_flush = len(self._events) >= self.settings.batch_size
        if should_flush:
            self.flush()

    def track_citemind_event(self, name: str, properties: Mapping[str, Any]) -> None:
        """Engine lifecycle event, tagged so it can be told apart from product analytics."""

        self.track_event(
            name,
            {
                **sanitize_properties(properties),
                "citemind": True,
                "environment": self.settings.environment or "unknown",
            },
        )

    def track_error(self, error: BaseException, context: Mapping[str, Any] | None = None) -> None:
        """Report an error to the error sink and as an `error_occurred` analytics event."""

        if not self.enabled:
            return
        context = context or {}
        message = sanitize_error_message(str(error)) or type(error).__name__
        stack = traceback.format_exception(type(error), error, error.__traceback__)
        record = ErrorRecord(
            message=message,
            error_type=type(error).__name__,
            tags={
                key: str(context[key]) for key in ERROR_TAG_KEYS if context.get(key) is not None
            },
            context=redact_sensitive(context),
            timestamp=utc_now(),
            stack=[sanitize_error_message(line) for line in stack[-MAX_STACK_LINES:]],
        )
        with self._lock:
            self._errors.append(record)
        self.track_event(
            "error_occurred",
            {
                "error_message": message,
                "error_type": type(error).__name__,
                **sanitize_properties(context),
            },
        )

    def flush(self) -> None:
        """Deliver buffered events and errors; never raises."""

        with self._lock:
            events = self._events[:]
            self._events.clear()
            errors = self._errors[:]
            self._errors.clear()

        if events:
            try:
                self._analytics_sink.send_batch(events)
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to flush %d telemetry events: %s", len(events), error)
                self._requeue(self._events, events)
        if errors:
            try:
                self._error_sink.send(errors)
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to flush %d error records: %s", len(errors), error)
                self._requeue(self._errors, errors)

    def _requeue(self, queue: list[Any], batch: list[Any]) -> None:
        retry = [item for item in batch if not item.requeued]
        dropped = len(batch) - len(retry)
        with self._lock:
            if retry and len(queue) < self.settings.max_queue_size:
                for item in retry:
                    item.requeued = True
                queue[:0] = retry
            else:
                dropped += len(retry)
        if dropped:
            logger.warning("Dropped %d telemetry items after repeated delivery failure", dropped)

    def _flush_loop(self) -> None:
        while not self._flush_stop.wait(timeout=self.settings.flush_interval_seconds):
            self.flush()
