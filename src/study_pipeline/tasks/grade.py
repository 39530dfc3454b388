"""Answer grading from free text and/or a handwriting image."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from study_pipeline.jobs.models import JobInputError
from study_pipeline.provider.base import ContentPart
from study_pipeline.tasks.context import (
    TaskContext,
    TaskOutcome,
    payload_language,
    payload_mapping,
    usage_from_completion,
)
from study_pipeline.tasks.parsing import parse_json_object
from study_pipeline.tasks.prompts import grading_prompt

logger = logging.getLogger(__name__)

FEATURE = "grade_answer"


def handle_grade(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    question = data.get("question")
    question_prompt = question.get("prompt") if isinstance(question, Mapping) else None
    if not isinstance(question_prompt, str) or not question_prompt.strip():
        raise JobInputError("question.prompt is required")

    answer_text = str(data.get("answerText") or "").strip()
    image_url = str(data.get("answerImageDataUrl") or "").strip()
    parts = [ContentPart.text_part(grading_prompt(question_prompt, language=payload_language(data)))]
    if answer_text:
        parts.append(ContentPart.text_part(f"Student answer:\n{answer_text}"))
    if image_url:
        parts.append(ContentPart.image(image_url))

    completion = context.provider.complete(parts)
    return TaskOutcome(
        result={"feedback": normalize_feedback(completion.message)},
        usage=usage_from_completion(FEATURE, completion, hasImage=bool(image_url)),
    )


def normalize_feedback(raw_output: str) -> dict[str, Any]:
    """Shape model output as feedback; unparsable output becomes the summary."""

    parsed = parse_json_object(raw_output)
    if parsed is None:
        logger.warning("Grading output is not JSON; returning raw text as summary")
        return {"summary": raw_output, "correctness": "unknown", "improvements": []}

    feedback: dict[str, Any] = {
        "summary": str(parsed.get("summary") or "No summary"),
        "correctness": str(parsed.get("correctness") or "unknown"),
        "improvements": _improvements(parsed.get("improvements")),
    }
    score = parsed.get("score")
    if isinstance(score, int | float) and not isinstance(score, bool):
        feedback["score"] = max(0, min(100, score))
    return feedback


def _improvements(value: Any) -> list[str]:
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]
