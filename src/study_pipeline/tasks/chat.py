"""Streaming tutor chat with throttled partial-result writes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from study_pipeline.jobs.models import JobInputError
from study_pipeline.provider.base import ChatMessage
from study_pipeline.tasks.chunking import truncate_to_token_limit
from study_pipeline.tasks.context import (
    TaskContext,
    TaskOutcome,
    payload_language,
    payload_mapping,
    usage_from_completion,
)
from study_pipeline.tasks.prompts import tutor_system_prompt

logger = logging.getLogger(__name__)

FEATURE = "tutor_chat"
_CLIENT_ROLES = frozenset({"user", "assistant"})


class PartialResultThrottle:
    """Forward accumulated text to `sink` at most once per `min_interval_seconds`.

    The first chunk is always written. Skipped updates are not replayed; the
    terminal result carries the full text.
    """

    def __init__(
        self,
        sink: Callable[[str], bool],
        *,
        min_interval_seconds: float,
        clock: Callable[[], float],
    ) -> None:
        self._sink = sink
        self._min_interval = max(0.0, min_interval_seconds)
        self._clock = clock
        self._last_write: float | None = None
        self.writes = 0

    def offer(self, accumulated: str) -> bool:
        now = self._clock()
        if self._last_write is not None and now - self._last_write < self._min_interval:
            return False
        self._last_write = now
        self.writes += 1
        if not self._sink(accumulated):
            logger.debug("Partial result write was not applied (job no longer running)")
        return True


def handle_chat(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    language = payload_language(data)
    material_context = truncate_to_token_limit(
        str(data.get("materialContext") or ""),
        context.pipeline.chat_context_token_limit,
    )
    messages = [
        ChatMessage(role="system", content=tutor_system_prompt(material_context, language=language)),
        *parse_client_messages(data.get("messages")),
    ]

    throttle = PartialResultThrottle(
        context.write_partial,
        min_interval_seconds=context.pipeline.partial_result_interval_ms / 1000,
        clock=context.clock,
    )
    completion = context.provider.stream_chat(
        messages,
        lambda _delta, accumulated: throttle.offer(accumulated),
    )
    logger.debug(
        "Chat job %s streamed %d chars with %d partial write(s)",
        context.job_id,
        len(completion.message),
        throttle.writes,
    )
    return TaskOutcome(
        result={"message": completion.message},
        usage=usage_from_completion(FEATURE, completion, partialWrites=throttle.writes),
    )


def parse_client_messages(raw: Any) -> list[ChatMessage]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise JobInputError("messages must be an array")
    messages: list[ChatMessage] = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise JobInputError("Each chat message must be an object")
        role = str(item.get("role") or "").strip().lower()
        if role not in _CLIENT_ROLES:
            raise JobInputError(f"Unsupported chat message role: {role or '<empty>'}")
        messages.append(ChatMessage(role=role, content=str(item.get("content") or "")))  # type: ignore[arg-type]
    return messages
