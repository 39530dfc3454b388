"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from study_pipeline.config import PipelineSettings
from study_pipeline.jobs.models import TokenUsage
from study_pipeline.jobs.repository import JobRepository
from study_pipeline.provider.base import (
    AudioPayload,
    ChatMessage,
    ChunkCallback,
    CompletionResult,
    ContentPart,
    EmbeddingResult,
    TranscriptionResult,
)
from study_pipeline.tasks.context import TaskContext

Response = str | Exception


class FakeProvider:
    """Scripted completion provider that records every call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        completions: Sequence[Response] = (),
        responder: Callable[[str], Response] | None = None,
        stream_chunks: Sequence[str] = (),
        transcript: str = "transcribed text",
        transcript_duration: float | None = None,
        model: str = "gpt-test",
        usage: TokenUsage | None = None,
    ) -> None:
        self._completions = list(completions)
        self._responder = responder
        self.stream_chunks = list(stream_chunks)
        self.transcript = transcript
        self.transcript_duration = transcript_duration
        self.model = model
        self.usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.calls: list[tuple[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    def complete(self, parts: Sequence[ContentPart]) -> CompletionResult:
        prompt = "\n".join(part.text or "" for part in parts if part.type == "text")
        with self._lock:
            self.calls.append(("complete", list(parts)))
        return self._result(self._next_response(prompt))

    def complete_messages(self, messages: Sequence[ChatMessage]) -> CompletionResult:
        with self._lock:
            self.calls.append(("complete_messages", list(messages)))
        return self._result(self._next_response(messages[-1].content if messages else ""))

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: ChunkCallback,
    ) -> CompletionResult:
        with self._lock:
            self.calls.append(("stream_chat", list(messages)))
        accumulated = ""
        for delta in self.stream_chunks:
            accumulated += delta
            on_chunk(delta, accumulated)
        return self._result(accumulated)

    def embed(self, texts: Sequence[str]) -> EmbeddingResult:
        with self._lock:
            self.calls.append(("embed", list(texts)))
        return EmbeddingResult(
            embeddings=[[float(index), float(len(text))] for index, text in enumerate(texts)],
            model="embed-test",
            usage=TokenUsage(prompt_tokens=len(texts) * 10, total_tokens=len(texts) * 10),
            input_cost_usd=0.0001,
        )

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
    ) -> TranscriptionResult:
        with self._lock:
            self.calls.append(("transcribe", (audio, language)))
        return TranscriptionResult(
            text=self.transcript,
            model="whisper-test",
            duration_seconds=self.transcript_duration,
        )

    def fetch_audio(self, url: str) -> AudioPayload:
        with self._lock:
            self.calls.append(("fetch_audio", url))
        return AudioPayload(content=b"\x00" * 48_000, content_type="audio/mpeg", filename="remote.mp3")

    def close(self) -> None:
        self.closed = True

    def calls_named(self, name: str) -> list[Any]:
        return [args for call_name, args in self.calls if call_name == name]

    def _next_response(self, prompt: str) -> str:
        if self._responder is not None:
            response = self._responder(prompt)
        else:
            with self._lock:
                if not self._completions:
                    raise AssertionError("Unexpected completion call")
                response = self._completions.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def _result(self, message: str) -> CompletionResult:
        return CompletionResult(
            message=message,
            model=self.model,
            usage=self.usage,
            input_cost_usd=0.001,
            output_cost_usd=0.002,
        )


@pytest.fixture()
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture()
def make_context() -> Callable[..., TaskContext]:
    """Build a handler context around a provider with optional pipeline overrides."""

    def _build(provider: Any, **pipeline_overrides: Any) -> TaskContext:
        return TaskContext(
            job_id="job-test",
            provider=provider,
            pipeline=replace(PipelineSettings(), **pipeline_overrides),
        )

    return _build


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Drop provider credentials inherited from the host environment."""

    for name in ("OPENAI_API_KEY", "STUDY_PIPELINE_OPENAI_API_KEY", "STUDY_PIPELINE_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
