"""Cost estimation helpers for agent steps and model token usage."""

from __future__ import annotations

import os
from dataclasses import dataclass

from citemind.tools.base import ToolInvocation, ToolName

STEP_BASE_COST_USD: dict[str, float] = {
    ToolName.LLM_CALL.value: 0.05,
    ToolName.WEB_SEARCH.value: 0.01,
    ToolName.DB_QUERY.value: 0.001,
    ToolName.FILE_READ.value: 0.001,
    ToolName.FILE_WRITE.value: 0.002,
    ToolName.HTTP_REQUEST.value: 0.005,
    ToolName.CITATION_CHECK.value: 0.02,
    ToolName.CONTENT_ANALYSIS.value: 0.03,
}
DEFAULT_STEP_COST_USD = 0.01
INPUT_SIZE_UNIT_CHARS = 1000


def estimate_step_cost(invocation: ToolInvocation) -> float:
    """Pre-flight estimate: tool base rate scaled by input size, never below the base rate."""

    base = STEP_BASE_COST_USD.get(invocation.tool, DEFAULT_STEP_COST_USD)
    size_multiplier = max(1.0, len(invocation.canonical_input()) / INPUT_SIZE_UNIT_CHARS)
    return base * size_multiplier


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_token_cost_usd(*, model: str, tokens_in: int, tokens_out: int) -> float | None:
    """Estimate model call cost from token usage and `CITEMIND_LLM_PRICING`."""

    pricing = _lookup_pricing(model=model)
    if pricing is None:
        return None
    return (tokens_in / 1_000_000) * pricing.input_per_1m + (
        tokens_out / 1_000_000
    ) * pricing.output_per_1m


def _lookup_pricing(*, model: str) -> ModelPricing | None:
    mapping = _parse_pricing_mapping(os.getenv("CITEMIND_LLM_PRICING", ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `CITEMIND_LLM_PRICING` mapping.

    Format:
    - `model=input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model applies to every model without its own entry
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value or "=" not in value:
            continue
        model, _, prices = value.rpartition("=")
        parts = [part.strip() for part in prices.split(":")]
        if len(parts) != 2:  # noqa: PLR2004
            continue
        try:
            input_per_1m = float(parts[0])
            output_per_1m = float(parts[1])
        except ValueError:
            continue
        parsed[model.strip()] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
