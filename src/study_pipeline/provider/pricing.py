"""Token and audio cost calculation for completion-provider calls."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from study_pipeline.jobs.models import TokenUsage

DEFAULT_PRICING_KEY = "default"
DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE = 0.006


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1K tokens."""

    input_per_1k: float
    output_per_1k: float


BASE_PRICING: dict[str, ModelPricing] = {
    "gpt-5.1": ModelPricing(input_per_1k=0.003, output_per_1k=0.012),
    "gpt-4.1": ModelPricing(input_per_1k=0.0025, output_per_1k=0.01),
    "gpt-4o": ModelPricing(input_per_1k=0.005, output_per_1k=0.015),
    "gpt-4o-mini": ModelPricing(input_per_1k=0.0003, output_per_1k=0.0006),
    "text-embedding-3-small": ModelPricing(input_per_1k=0.00002, output_per_1k=0.0),
    "text-embedding-3-large": ModelPricing(input_per_1k=0.00013, output_per_1k=0.0),
    DEFAULT_PRICING_KEY: ModelPricing(input_per_1k=0.003, output_per_1k=0.006),
}


@dataclass(slots=True, frozen=True)
class TokenCost:
    """Normalized token counts with their computed cost."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    input_cost_usd: float
    output_cost_usd: float
    cost_usd: float


def round_currency(value: float) -> float:
    return round(value, 6)


def parse_pricing_overrides(raw: str) -> dict[str, ModelPricing]:
    """Parse `STUDY_PIPELINE_PRICING` mapping.

    Format:
    - `model:input_per_1k:output_per_1k`
    - multiple entries separated by `,`
    - `default` overrides the fallback row
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        # Model ids may contain ':' (fine-tuned models), prices never do.
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3 or not parts[0]:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            continue
        if input_per_1k < 0 or output_per_1k < 0:
            continue
        parsed[model.lower()] = ModelPricing(input_per_1k=input_per_1k, output_per_1k=output_per_1k)
    return parsed


def lookup_pricing(
    model: str | None,
    *,
    overrides: Mapping[str, ModelPricing] | None = None,
) -> ModelPricing:
    """Resolve pricing: exact id, then longest known prefix (dated snapshots), then default."""

    table = dict(BASE_PRICING)
    if overrides:
        table.update(overrides)

    key = (model or DEFAULT_PRICING_KEY).strip().lower()
    direct = table.get(key)
    if direct is not None:
        return direct

    prefixes = [
        candidate
        for candidate in table
        if candidate != DEFAULT_PRICING_KEY and key.startswith(candidate)
    ]
    if prefixes:
        return table[max(prefixes, key=len)]
    return table[DEFAULT_PRICING_KEY]


def calculate_token_cost(
    model: str | None,
    usage: TokenUsage | None,
    *,
    overrides: Mapping[str, ModelPricing] | None = None,
) -> TokenCost:
    """Price one call. Missing prompt tokens fall back to total; completion to the remainder."""

    pricing = lookup_pricing(model, overrides=overrides)
    usage = usage or TokenUsage()
    total_reported = usage.total_tokens or 0
    prompt_tokens = max(
        0,
        usage.prompt_tokens if usage.prompt_tokens is not None else total_reported,
    )
    if usage.completion_tokens is not None:
        completion_tokens = max(0, usage.completion_tokens)
    else:
        completion_tokens = max(0, total_reported - prompt_tokens)

    input_cost = round_currency((prompt_tokens / 1000) * pricing.input_per_1k)
    output_cost = round_currency((completion_tokens / 1000) * pricing.output_per_1k)
    return TokenCost(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        input_cost_usd=input_cost,
        output_cost_usd=output_cost,
        cost_usd=round_currency(input_cost + output_cost),
    )


def calculate_transcription_cost(
    duration_seconds: float,
    *,
    price_per_minute: float = DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE,
) -> float:
    minutes = max(0.0, duration_seconds) / 60
    return round_currency(minutes * price_per_minute)
