"""Runtime configuration for the agent engine, telemetry and worker."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from citemind.errors import ConfigurationError

SUPPORTED_TOOL_BACKENDS = ("demo", "http")


@dataclass(slots=True, frozen=True)
class AgentSettings:
    """Run-level feature flag, budget ceilings and model identifiers."""

    enabled: bool = False
    max_steps: int = 12
    cost_cap_usd: float = 0.35
    model_primary: str = "anthropic/claude-3.7-sonnet"
    model_fallback: str = "anthropic/haiku-latest"
    min_confidence: float = 0.7


@dataclass(slots=True, frozen=True)
class TelemetrySettings:
    """Analytics and error-tracking sink settings."""

    disabled: bool = False
    environment: str = "unknown"
    posthog_api_key: str | None = None
    posthog_host: str = "https://app.posthog.com"
    error_webhook_url: str | None = None
    batch_size: int = 10
    flush_interval_seconds: float = 30.0
    max_queue_size: int = 100
    request_timeout_seconds: float = 10.0


@dataclass(slots=True, frozen=True)
class WorkerSettings:
    """Job queue consumer settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}")
    poll_interval_seconds: float = 2.0
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    max_retries: int = 3


@dataclass(slots=True, frozen=True)
class ToolSettings:
    """Tool invoker selection."""

    backend: str = "demo"
    http_url: str | None = None
    http_timeout_seconds: float = 60.0


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".citemind.db")
    agent: AgentSettings = field(default_factory=AgentSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment; the engine stays disabled unless opted in."""

        settings = cls(
            db_path=db_path or Path(os.getenv("CITEMIND_DB_PATH", ".citemind.db")),
            agent=AgentSettings(
                enabled=_env_bool("CITEMIND_ENABLED", default=False),
                max_steps=_env_int("CITEMIND_AGENT_MAX_STEPS", 12),
                cost_cap_usd=_env_float("CITEMIND_AGENT_COST_CAP_USD", 0.35),
                model_primary=os.getenv(
                    "CITEMIND_MODEL_PRIMARY",
                    "anthropic/claude-3.7-sonnet",
                ),
                model_fallback=os.getenv("CITEMIND_MODEL_FALLBACK", "anthropic/haiku-latest"),
                min_confidence=_env_float("CITEMIND_CRITIC_MIN_CONFIDENCE", 0.7),
            ),
            telemetry=TelemetrySettings(
                disabled=_env_bool("CITEMIND_DISABLE_TELEMETRY", default=False),
                environment=os.getenv("CITEMIND_ENVIRONMENT", "unknown"),
                posthog_api_key=os.getenv("CITEMIND_POSTHOG_API_KEY") or None,
                posthog_host=os.getenv("CITEMIND_POSTHOG_HOST", "https://app.posthog.com"),
                error_webhook_url=os.getenv("CITEMIND_ERROR_WEBHOOK_URL") or None,
                batch_size=_env_int("CITEMIND_TELEMETRY_BATCH_SIZE", 10),
                flush_interval_seconds=_env_float("CITEMIND_TELEMETRY_FLUSH_SECONDS", 30.0),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("CITEMIND_WORKER_ID", f"worker-{socket.gethostname()}"),
                poll_interval_seconds=_env_float("CITEMIND_WORKER_POLL_SECONDS", 2.0),
                retry_base_seconds=_env_int("CITEMIND_RETRY_BASE_SECONDS", 30),
                retry_max_seconds=_env_int("CITEMIND_RETRY_MAX_SECONDS", 900),
                max_retries=_env_int("CITEMIND_JOB_MAX_RETRIES", 3),
            ),
            tools=ToolSettings(
                backend=os.getenv("CITEMIND_TOOL_BACKEND", "demo").strip().lower(),
                http_url=os.getenv("CITEMIND_TOOL_HTTP_URL") or None,
                http_timeout_seconds=_env_float("CITEMIND_TOOL_HTTP_TIMEOUT_SECONDS", 60.0),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ConfigurationError if values cannot drive a run."""

        if self.agent.max_steps <= 0:
            raise ConfigurationError("CITEMIND_AGENT_MAX_STEPS must be a positive integer.")
        if self.agent.cost_cap_usd <= 0:
            raise ConfigurationError("CITEMIND_AGENT_COST_CAP_USD must be > 0.")
        if not self.agent.model_primary.strip():
            raise ConfigurationError("CITEMIND_MODEL_PRIMARY must not be empty.")
        if not self.agent.model_fallback.strip():
            raise ConfigurationError("CITEMIND_MODEL_FALLBACK must not be empty.")
        if not 0.0 <= self.agent.min_confidence <= 1.0:
            raise ConfigurationError("CITEMIND_CRITIC_MIN_CONFIDENCE must be within [0, 1].")
        if self.telemetry.batch_size <= 0:
            raise ConfigurationError("CITEMIND_TELEMETRY_BATCH_SIZE must be a positive integer.")
        if self.telemetry.flush_interval_seconds <= 0:
            raise ConfigurationError("CITEMIND_TELEMETRY_FLUSH_SECONDS must be > 0.")
        if self.worker.max_retries < 0:
            raise ConfigurationError("CITEMIND_JOB_MAX_RETRIES must be >= 0.")
        if self.tools.backend not in SUPPORTED_TOOL_BACKENDS:
            raise ConfigurationError(
                f"Unsupported CITEMIND_TOOL_BACKEND: {self.tools.backend!r}. "
                f"Use one of {SUPPORTED_TOOL_BACKENDS}.",
            )
        if self.tools.backend == "http" and not self.tools.http_url:
            raise ConfigurationError(
                "CITEMIND_TOOL_HTTP_URL is required when CITEMIND_TOOL_BACKEND=http.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number for {name}: {raw!r}") from error
