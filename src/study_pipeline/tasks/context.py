"""Execution context shared by task handlers."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from study_pipeline.config import PipelineSettings
from study_pipeline.jobs.models import JobInputError, UsageReport
from study_pipeline.provider.base import CompletionProvider, CompletionResult
from study_pipeline.provider.pricing import DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE


def _discard_partial(_: str) -> bool:
    return False


@dataclass(slots=True)
class TaskContext:
    """Everything a handler may touch besides its payload."""

    job_id: str
    provider: CompletionProvider
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    owner_id: str | None = None
    write_partial: Callable[[str], bool] = _discard_partial
    clock: Callable[[], float] = time.monotonic
    transcription_price_per_minute: float = DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE


@dataclass(slots=True)
class TaskOutcome:
    """Terminal handler output: JSON-serializable result plus optional usage."""

    result: Any
    usage: UsageReport | None = None


Handler = Callable[[Any, TaskContext], TaskOutcome]


def payload_mapping(payload: Any) -> Mapping[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise JobInputError("Job payload must be a JSON object")
    return payload


def payload_language(payload: Mapping[str, Any]) -> str:
    language = payload.get("language")
    if isinstance(language, str) and language.strip():
        return language.strip()
    return "en"


def usage_from_completion(
    feature: str,
    completion: CompletionResult,
    **metadata: Any,
) -> UsageReport:
    return UsageReport(
        feature=feature,
        model=completion.model,
        token_usage=completion.usage,
        input_cost_usd=completion.input_cost_usd,
        output_cost_usd=completion.output_cost_usd,
        cost_usd=completion.cost_usd,
        metadata=dict(metadata),
    )
