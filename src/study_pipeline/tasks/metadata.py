"""Lecture title/description suggestions from uploaded file hints."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from study_pipeline.provider.base import ContentPart
from study_pipeline.tasks.context import (
    TaskContext,
    TaskOutcome,
    payload_language,
    payload_mapping,
    usage_from_completion,
)
from study_pipeline.tasks.parsing import parse_json_object, sanitize_text
from study_pipeline.tasks.prompts import lecture_metadata_prompt

logger = logging.getLogger(__name__)

FEATURE = "lecture_metadata"
DEFAULT_TITLE = "New Lecture"


def handle_metadata(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    summary = summarize_files(data.get("files"))
    completion = context.provider.complete(
        [
            ContentPart.text_part(
                lecture_metadata_prompt(
                    summary or "No details provided.",
                    language=payload_language(data),
                ),
            ),
        ],
    )

    parsed = parse_json_object(completion.message)
    if parsed is None:
        logger.warning("Lecture metadata output is not JSON; using raw text as description")
        result = {"title": DEFAULT_TITLE, "description": completion.message.strip()}
    else:
        result = {
            "title": sanitize_text(str(parsed.get("title") or "")) or DEFAULT_TITLE,
            "description": sanitize_text(str(parsed.get("description") or "")),
        }
    return TaskOutcome(result=result, usage=usage_from_completion(FEATURE, completion))


def summarize_files(raw: Any) -> str:
    if not isinstance(raw, list):
        return ""
    lines: list[str] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        notes = str(item.get("notes") or "").strip()
        lines.append(f"{len(lines) + 1}. {name}" + (f" - {notes}" if notes else ""))
    return "\n".join(lines)
