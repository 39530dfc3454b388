from __future__ import annotations

import allure
import pytest

from study_pipeline.jobs.models import TokenUsage
from study_pipeline.provider.pricing import (
    BASE_PRICING,
    ModelPricing,
    calculate_token_cost,
    calculate_transcription_cost,
    lookup_pricing,
    parse_pricing_overrides,
)

pytestmark = [
    allure.epic("Usage Accounting"),
    allure.feature("Cost Calculation"),
]


def test_lookup_uses_longest_prefix_for_dated_snapshots() -> None:
    assert lookup_pricing("gpt-4o-mini-2024-07-18") == BASE_PRICING["gpt-4o-mini"]
    assert lookup_pricing("GPT-4O-2024-08-06") == BASE_PRICING["gpt-4o"]
    assert lookup_pricing("mystery-model") == BASE_PRICING["default"]
    assert lookup_pricing(None) == BASE_PRICING["default"]


def test_overrides_take_precedence() -> None:
    overrides = parse_pricing_overrides("gpt-4o:1.0:2.0, default:0.5:0.5")

    assert lookup_pricing("gpt-4o", overrides=overrides) == ModelPricing(1.0, 2.0)
    assert lookup_pricing("unknown", overrides=overrides) == ModelPricing(0.5, 0.5)


def test_parse_overrides_skips_malformed_entries() -> None:
    parsed = parse_pricing_overrides("bad,x:1,y:-1:2,z:a:b,,ft:gpt-4o:org:abc:0.2:0.4")

    assert parsed == {"ft:gpt-4o:org:abc": ModelPricing(0.2, 0.4)}
    assert parse_pricing_overrides("   ") == {}


def test_token_cost_uses_prompt_and_completion_prices() -> None:
    cost = calculate_token_cost(
        "gpt-4o",
        TokenUsage(prompt_tokens=2_000, completion_tokens=1_000, total_tokens=3_000),
    )

    assert cost.input_cost_usd == pytest.approx(0.01)
    assert cost.output_cost_usd == pytest.approx(0.015)
    assert cost.cost_usd == pytest.approx(0.025)
    assert cost.total_tokens == 3_000


def test_token_cost_falls_back_to_total_tokens() -> None:
    cost = calculate_token_cost("gpt-4o", TokenUsage(total_tokens=1_000))

    assert cost.prompt_tokens == 1_000
    assert cost.completion_tokens == 0
    assert cost.cost_usd == pytest.approx(0.005)


def test_token_cost_derives_completion_from_total() -> None:
    cost = calculate_token_cost("gpt-4o", TokenUsage(prompt_tokens=400, total_tokens=1_000))

    assert cost.completion_tokens == 600


def test_token_cost_without_usage_is_zero() -> None:
    assert calculate_token_cost("gpt-4o", None).cost_usd == 0.0


def test_transcription_cost_is_per_minute() -> None:
    assert calculate_transcription_cost(90) == pytest.approx(0.009)
    assert calculate_transcription_cost(60, price_per_minute=0.02) == pytest.approx(0.02)
    assert calculate_transcription_cost(-5) == 0.0
