"""Tool invocation contract shared by the runner, governor and invokers."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class ToolName(str, Enum):
    """Tool families with a known cost profile."""

    LLM_CALL = "llm_call"
    WEB_SEARCH = "web_search"
    DB_QUERY = "db_query"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    HTTP_REQUEST = "http_request"
    CITATION_CHECK = "citation_check"
    CONTENT_ANALYSIS = "content_analysis"


@dataclass(slots=True)
class ToolInvocation:
    """One request to a tool: its name and JSON-serializable input."""

    tool: str
    input: dict[str, Any] = field(default_factory=dict)

    def canonical_input(self) -> str:
        return canonical_json(self.input)

    def input_hash(self) -> str:
        return hashlib.sha256(self.canonical_input().encode("utf-8")).hexdigest()


@dataclass(slots=True)
class ToolArtifact:
    """Raw byproduct returned by a tool."""

    kind: str
    content: Any
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResult:
    """Successful tool output with the consumption the tool reported.

    `cost_usd` is None when the tool does not price itself.
    """

    output: Any
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float | None = None
    artifacts: list[ToolArtifact] = field(default_factory=list)


class ToolInvoker(Protocol):
    """Anything able to run a tool invocation; raises ToolInvocationError on failure."""

    def invoke(self, invocation: ToolInvocation) -> ToolResult: ...


def canonical_json(value: Any) -> str:
    """Stable JSON rendering used for hashing and size estimates."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
