"""Dispatch tool invocations to the invoker registered for each tool family."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from citemind.config import ToolSettings
from citemind.errors import ConfigurationError, ToolInvocationError
from citemind.tools.base import ToolInvocation, ToolInvoker, ToolName, ToolResult
from citemind.tools.demo import build_demo_invokers
from citemind.tools.http import HttpToolInvoker

logger = logging.getLogger(__name__)


class ToolRouter:
    """Single ToolInvoker facade over per-tool invokers."""

    def __init__(self, invokers: Mapping[str, ToolInvoker]) -> None:
        self._invokers = dict(invokers)

    @property
    def tools(self) -> list[str]:
        return sorted(self._invokers)

    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        invoker = self._invokers.get(invocation.tool)
        if invoker is None:
            raise ToolInvocationError(
                f"No invoker registered for tool {invocation.tool!r}",
                tool=invocation.tool,
            )
        return invoker.invoke(invocation)

    def close(self) -> None:
        """Release invoker resources; a shared invoker is closed once."""

        seen: set[int] = set()
        for invoker in self._invokers.values():
            if id(invoker) in seen:
                continue
            seen.add(id(invoker))
            close = getattr(invoker, "close", None)
            if close is not None:
                close()


def build_tool_router(
    settings: ToolSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ToolRouter:
    """Build the router selected by `CITEMIND_TOOL_BACKEND`."""

    if settings.backend == "demo":
        return ToolRouter(build_demo_invokers())
    if settings.backend == "http":
        if not settings.http_url:
            raise ConfigurationError("HTTP tool backend requires CITEMIND_TOOL_HTTP_URL.")
        invoker = HttpToolInvoker(
            base_url=settings.http_url,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )
        logger.info("Routing tools to HTTP gateway %s", settings.http_url)
        return ToolRouter({tool.value: invoker for tool in ToolName})
    raise ConfigurationError(f"Unsupported tool backend: {settings.backend!r}")
