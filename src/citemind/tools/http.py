"""Generic HTTP tool invoker: one POST per invocation to a tool gateway."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from citemind.errors import ToolInvocationError
from citemind.tools.base import ToolArtifact, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpToolInvoker:
    """Posts `{"tool", "input"}` to `<base_url>/tools/<tool>`.

    The gateway answers with `{"output", "tokens_in", "tokens_out", "cost_usd",
    "artifacts": [{"kind", "content", "meta"}]}`; every key except `output` is
    optional. Non-2xx answers raise ToolInvocationError, transient for
    timeouts, connection errors, 429 and 5xx.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Content-Type": "application/json", **(headers or {})},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def close(self) -> None:
        self._client.close()

    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        try:
            response = self._client.post(
                f"/tools/{invocation.tool}",
                json={"tool": invocation.tool, "input": invocation.input},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout invoking tool %s", invocation.tool)
            raise ToolInvocationError(
                f"Tool {invocation.tool} timed out",
                tool=invocation.tool,
                transient=True,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error invoking tool %s: %s", invocation.tool, error)
            raise ToolInvocationError(
                f"Tool {invocation.tool} request failed: {error}",
                tool=invocation.tool,
                transient=True,
            ) from error

        if not response.is_success:
            raise ToolInvocationError(
                f"Tool {invocation.tool} returned HTTP {response.status_code}: "
                f"{response.text[:200]}",
                tool=invocation.tool,
                transient=response.status_code in TRANSIENT_STATUS_CODES,
            )

        try:
            body = response.json()
        except ValueError as error:
            raise ToolInvocationError(
                f"Tool {invocation.tool} returned invalid JSON",
                tool=invocation.tool,
            ) from error
        if not isinstance(body, dict) or "output" not in body:
            raise ToolInvocationError(
                f"Tool {invocation.tool} response has no output field",
                tool=invocation.tool,
            )
        try:
            return _to_tool_result(body)
        except (TypeError, ValueError) as error:
            raise ToolInvocationError(
                f"Tool {invocation.tool} returned malformed usage: {error}",
                tool=invocation.tool,
            ) from error


def _to_tool_result(body: dict[str, Any]) -> ToolResult:
    cost = body.get("cost_usd")
    artifacts = [
        ToolArtifact(
            kind=str(item.get("kind", "raw")),
            content=item.get("content"),
            meta=item.get("meta") if isinstance(item.get("meta"), dict) else {},
        )
        for item in body.get("artifacts") or []
        if isinstance(item, dict)
    ]
    return ToolResult(
        output=body["output"],
        tokens_in=int(body.get("tokens_in") or 0),
        tokens_out=int(body.get("tokens_out") or 0),
        cost_usd=float(cost) if cost is not None else None,
        artifacts=artifacts,
    )
