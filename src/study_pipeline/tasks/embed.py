"""Text embedding jobs."""

from __future__ import annotations

from typing import Any

from study_pipeline.jobs.models import JobInputError, UsageReport
from study_pipeline.tasks.context import TaskContext, TaskOutcome, payload_mapping

FEATURE = "embed_texts"


def handle_embed(payload: Any, context: TaskContext) -> TaskOutcome:
    inputs = payload_mapping(payload).get("inputs")
    if not isinstance(inputs, list) or not inputs:
        raise JobInputError("inputs must be a non-empty array")

    result = context.provider.embed([str(item) for item in inputs])
    return TaskOutcome(
        result={"embeddings": result.embeddings, "model": result.model},
        usage=UsageReport(
            feature=FEATURE,
            model=result.model,
            token_usage=result.usage,
            input_cost_usd=result.input_cost_usd,
            output_cost_usd=result.output_cost_usd,
            cost_usd=result.cost_usd,
            metadata={"inputs": len(inputs)},
        ),
    )
