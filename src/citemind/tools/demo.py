"""Deterministic local tool invokers for development and tests.

Outputs are derived from a hash of the invocation input, so the same input
always yields the same output and consumption figures.
"""

from __future__ import annotations

import hashlib

from citemind.agentic.pricing import estimate_token_cost_usd
from citemind.errors import ToolInvocationError
from citemind.storage.common import utc_now
from citemind.tools.base import (
    ToolArtifact,
    ToolInvocation,
    ToolInvoker,
    ToolName,
    ToolResult,
)

DEMO_PLATFORMS = ("chatgpt", "claude", "perplexity", "gemini")
# Demo models without configured pricing are charged at this flat rate per 1M tokens.
DEMO_TOKEN_PRICE_PER_1M = 3.0
MIN_TOPIC_CHARS = 6


def _seed(invocation: ToolInvocation) -> int:
    digest = hashlib.sha256(invocation.canonical_input().encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def _fraction(seed: int, salt: int) -> float:
    return ((seed >> salt) % 1000) / 1000.0


class DemoLlmInvoker:
    """Echo-style language model: answers with a summary of the prompt."""

    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        prompt = str(invocation.input.get("prompt", "")).strip()
        model = str(invocation.input.get("model", "demo-model"))
        if invocation.input.get("simulate_failure"):
            raise ToolInvocationError(
                f"Model {model} temporarily unavailable",
                tool=invocation.tool,
                transient=True,
            )
        tokens_in = max(1, len(prompt) // 4)
        text = f"[{model}] {prompt[:200]}" if prompt else f"[{model}] no prompt"
        tokens_out = max(1, len(text) // 4)
        cost = estimate_token_cost_usd(model=model, tokens_in=tokens_in, tokens_out=tokens_out)
        if cost is None:
            cost = (tokens_in + tokens_out) / 1_000_000 * DEMO_TOKEN_PRICE_PER_1M
        return ToolResult(
            output={"text": text, "model": model},
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            artifacts=[ToolArtifact(kind="completion", content={"prompt": prompt, "text": text})],
        )


class DemoSearchInvoker:
    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        query = str(invocation.input.get("query", ""))
        source = str(invocation.input.get("source", "web"))
        seed = _seed(invocation)
        hits = [
            {
                "title": f"{query or source} result {index + 1}",
                "url": f"https://example.com/{source}/{seed % 997}/{index + 1}",
                "score": round(1.0 - index * 0.15, 2),
            }
            for index in range(1 + seed % 3)
        ]
        return ToolResult(output={"source": source, "query": query, "hits": hits})


class DemoDbInvoker:
    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        operation = str(invocation.input.get("operation", "select"))
        table = str(invocation.input.get("table", "records"))
        if operation == "select":
            row = {"id": invocation.input.get("id"), "table": table}
            return ToolResult(output={"rows": [row], "count": 1})
        return ToolResult(output={"affected": 1, "operation": operation, "table": table})


class DemoCitationInvoker:
    """Pretends to probe an AI platform for a citation of the query."""

    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        seed = _seed(invocation)
        default_platform = DEMO_PLATFORMS[seed % len(DEMO_PLATFORMS)]
        platform = str(invocation.input.get("platform", default_platform))
        probability = round(_fraction(seed, 0), 3)
        return ToolResult(
            output={
                "platform": platform,
                "query": str(invocation.input.get("query", "")),
                "citation_found": probability >= 0.5,  # noqa: PLR2004
                "citation_probability": probability,
                "relevance_score": round(_fraction(seed, 4), 3),
                "timestamp": utc_now().isoformat(),
            },
        )


class DemoContentAnalysisInvoker:
    def invoke(self, invocation: ToolInvocation) -> ToolResult:
        seed = _seed(invocation)
        text = str(invocation.input.get("text", ""))
        words = text.split()
        long_words = {
            word.lower().strip(".,:;!?") for word in words if len(word) > MIN_TOPIC_CHARS
        }
        topics = sorted(long_words)[:5]
        return ToolResult(
            output={
                "readability_score": round(40 + _fraction(seed, 0) * 60, 1),
                "sentiment": {
                    "polarity": round(_fraction(seed, 3) * 2 - 1, 3),
                    "confidence": round(0.5 + _fraction(seed, 6) / 2, 3),
                },
                "key_topics": topics or [str(invocation.input.get("focus", "general"))],
                "word_count": len(words),
            },
        )


def build_demo_invokers() -> dict[str, ToolInvoker]:
    """Invoker per tool family for the demo backend."""

    llm = DemoLlmInvoker()
    search = DemoSearchInvoker()
    db = DemoDbInvoker()
    return {
        ToolName.LLM_CALL.value: llm,
        ToolName.WEB_SEARCH.value: search,
        ToolName.HTTP_REQUEST.value: search,
        ToolName.DB_QUERY.value: db,
        ToolName.FILE_READ.value: db,
        ToolName.FILE_WRITE.value: db,
        ToolName.CITATION_CHECK.value: DemoCitationInvoker(),
        ToolName.CONTENT_ANALYSIS.value: DemoContentAnalysisInvoker(),
    }
