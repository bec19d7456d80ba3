"""Error taxonomy shared by the router, runner and worker."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from citemind.agentic.critic import CriticVerdict


class CiteMindError(Exception):
    """Base class for engine errors."""


class ConfigurationError(CiteMindError, ValueError):
    """Missing or invalid configuration. Fatal at construction time."""


class BudgetExceededError(CiteMindError):
    """Governor rejected a step. Terminal for the run."""

    def __init__(self, message: str, *, kind: str, limit: float, current: float) -> None:
        super().__init__(f"Budget exceeded: {message}")
        self.kind = kind
        self.limit = limit
        self.current = current


class EmergencyStopError(CiteMindError):
    """Run was torn down by an out-of-band kill signal."""

    def __init__(self, run_id: str, reason: str) -> None:
        super().__init__(f"Emergency stop: {reason}")
        self.run_id = run_id
        self.reason = reason


class CriticRejectedError(CiteMindError):
    """Critic refused to accept a run result."""

    def __init__(self, verdict: CriticVerdict) -> None:
        super().__init__("; ".join(verdict.errors) or "Critic validation failed")
        self.verdict = verdict


class ToolInvocationError(CiteMindError):
    """Tool failed to produce a result."""

    def __init__(self, message: str, *, tool: str, transient: bool = False) -> None:
        super().__init__(message)
        self.tool = tool
        self.transient = transient


class PersistenceError(CiteMindError):
    """A job/run/step write did not apply."""
