"""Practice-exam and cluster-quiz synthesis from passed topics."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from study_pipeline.jobs.models import JobInputError
from study_pipeline.provider.base import ContentPart
from study_pipeline.tasks.chunking import truncate_to_token_limit
from study_pipeline.tasks.context import (
    TaskContext,
    TaskOutcome,
    payload_language,
    payload_mapping,
    usage_from_completion,
)
from study_pipeline.tasks.parsing import parse_json_array, sanitize_text
from study_pipeline.tasks.prompts import practice_exam_prompt

logger = logging.getLogger(__name__)

FEATURE = "practice_exam"
DEFAULT_QUESTION_COUNT = 5
QUESTION_SOURCES = frozenset({"exam", "worksheet", "material"})


def handle_practice_exam(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    topics = parse_topics(data.get("topics"))
    if not topics:
        raise JobInputError("topics must contain at least one topic")
    question_count = clamp_question_count(
        data.get("questionCount"),
        maximum=context.pipeline.practice_exam_max_questions,
    )
    token_limit = context.pipeline.exam_context_token_limit
    category_name = str(data.get("categoryName") or "").strip()

    prompt = practice_exam_prompt(
        topics="\n".join(f"- {topic}" for topic in topics),
        question_count=question_count,
        exam_text=truncate_to_token_limit(str(data.get("examText") or "").strip(), token_limit),
        worksheet_text=truncate_to_token_limit(
            str(data.get("worksheetText") or "").strip(),
            token_limit,
        ),
        category_name=category_name,
        language=payload_language(data),
    )
    completion = context.provider.complete([ContentPart.text_part(prompt)])

    questions = normalize_questions(completion.message, limit=question_count)
    used_fallback = not questions
    if used_fallback:
        logger.warning("Practice exam output unusable; generating recall questions per topic")
        questions = fallback_questions(topics, limit=question_count)

    result: dict[str, Any] = {"questions": questions}
    if data.get("practiceExamId") is not None:
        result["practiceExamId"] = data["practiceExamId"]
    return TaskOutcome(
        result=result,
        usage=usage_from_completion(
            FEATURE,
            completion,
            questionCount=question_count,
            clusterQuiz=bool(category_name),
            fallback=used_fallback,
        ),
    )


def parse_topics(raw: Any) -> list[str]:
    if isinstance(raw, str):
        candidates = raw.splitlines()
    elif isinstance(raw, list):
        candidates = [
            str(item.get("title") or "") if isinstance(item, Mapping) else str(item)
            for item in raw
        ]
    else:
        return []
    topics = (candidate.strip().lstrip("-* ").strip() for candidate in candidates)
    return [topic for topic in topics if topic]


def clamp_question_count(value: Any, *, maximum: int) -> int:
    if isinstance(value, bool) or value is None:
        return min(DEFAULT_QUESTION_COUNT, maximum)
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return min(DEFAULT_QUESTION_COUNT, maximum)
    if not math.isfinite(numeric):
        return min(DEFAULT_QUESTION_COUNT, maximum)
    return max(1, min(maximum, int(numeric)))


def normalize_questions(raw_output: str, *, limit: int) -> list[dict[str, Any]]:
    parsed = parse_json_array(raw_output)
    if parsed is None:
        return []
    questions: list[dict[str, Any]] = []
    for item in parsed:
        if not isinstance(item, Mapping):
            continue
        prompt = sanitize_text(str(item.get("prompt") or ""))
        if not prompt:
            continue
        source = str(item.get("source") or "").strip().lower()
        question: dict[str, Any] = {
            "prompt": prompt,
            "answer": sanitize_text(str(item.get("answer") or "")),
            "source": source if source in QUESTION_SOURCES else "material",
        }
        topic_title = sanitize_text(str(item.get("topicTitle") or ""))
        if topic_title:
            question["topicTitle"] = topic_title
        questions.append(question)
        if len(questions) >= limit:
            break
    return questions


def fallback_questions(topics: list[str], *, limit: int) -> list[dict[str, Any]]:
    return [
        {
            "prompt": f"Explain the key ideas of {topic} in your own words.",
            "answer": f"A concise summary of the core definitions and examples for {topic}.",
            "topicTitle": topic,
            "source": "material",
        }
        for topic in topics[:limit]
    ]
