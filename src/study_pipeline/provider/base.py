"""Completion provider contract shared by handlers and adapters."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from study_pipeline.jobs.models import TokenUsage

ChatRole = Literal["system", "user", "assistant"]
ChunkCallback = Callable[[str, str], None]


class ProviderError(RuntimeError):
    """Completion provider call failed or returned an unusable payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


@dataclass(slots=True, frozen=True)
class ContentPart:
    """One element of a multimodal user message."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: str | None = None

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def image(cls, url: str) -> ContentPart:
        return cls(type="image_url", image_url=url)

    def to_payload(self) -> dict[str, Any]:
        if self.type == "image_url":
            return {"type": "image_url", "image_url": {"url": self.image_url}}
        return {"type": "text", "text": self.text or ""}


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: ChatRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class CompletionResult:
    """Normalized chat completion with token usage and cost."""

    message: str
    model: str
    usage: TokenUsage | None = None
    input_cost_usd: float = 0.0
    output_cost_usd: float = 0.0

    @property
    def cost_usd(self) -> float:
        return round(self.input_cost_usd + self.output_cost_usd, 6)


@dataclass(slots=True)
class EmbeddingResult:
    embeddings: list[list[float]]
    model: str
    usage: TokenUsage | None = None
    input_cost_usd: float = 0.0
    output_cost_usd: float = 0.0

    @property
    def cost_usd(self) -> float:
        return round(self.input_cost_usd + self.output_cost_usd, 6)


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    model: str
    duration_seconds: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AudioPayload:
    """Downloaded or decoded audio bytes ready for transcription."""

    content: bytes
    content_type: str
    filename: str = "audio.m4a"


class CompletionProvider(Protocol):
    """External language-model capability used by task handlers."""

    def complete(self, parts: Sequence[ContentPart]) -> CompletionResult: ...

    def complete_messages(self, messages: Sequence[ChatMessage]) -> CompletionResult: ...

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: ChunkCallback,
    ) -> CompletionResult: ...

    def embed(self, texts: Sequence[str]) -> EmbeddingResult: ...

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
    ) -> TranscriptionResult: ...

    def fetch_audio(self, url: str) -> AudioPayload: ...

    def close(self) -> None: ...
