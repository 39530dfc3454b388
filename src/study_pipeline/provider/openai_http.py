"""OpenAI-compatible REST adapter built on httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

from study_pipeline.jobs.models import TokenUsage
from study_pipeline.provider.base import (
    AudioPayload,
    ChatMessage,
    ChunkCallback,
    CompletionResult,
    ContentPart,
    EmbeddingResult,
    ProviderError,
    TranscriptionResult,
)
from study_pipeline.provider.pricing import ModelPricing, calculate_token_cost

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_EMBED_BATCH_SIZE = 12
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})
_SSE_PREFIX = "data:"
_ERROR_BODY_CHARS = 300


class OpenAICompletionProvider:
    """`CompletionProvider` implementation for OpenAI-compatible endpoints."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        chat_model: str = "gpt-5.1",
        embed_model: str = "text-embedding-3-small",
        transcription_model: str = "whisper-1",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        embed_batch_size: int = DEFAULT_EMBED_BATCH_SIZE,
        pricing_overrides: Mapping[str, ModelPricing] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.chat_model = chat_model
        self.embed_model = embed_model
        self.transcription_model = transcription_model
        self._embed_batch_size = max(1, embed_batch_size)
        self._pricing_overrides = dict(pricing_overrides or {})
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAICompletionProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def complete(self, parts: Sequence[ContentPart]) -> CompletionResult:
        """Single-turn multimodal completion."""

        return self._chat_completion(
            [{"role": "user", "content": [part.to_payload() for part in parts]}],
        )

    def complete_messages(self, messages: Sequence[ChatMessage]) -> CompletionResult:
        return self._chat_completion([message.to_payload() for message in messages])

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: ChunkCallback,
    ) -> CompletionResult:
        """Stream a chat completion, invoking `on_chunk(delta, accumulated)` per delta.

        Lines that are not `data:` events, the `[DONE]` sentinel, and partial
        JSON lines are skipped.
        """

        body = {
            "model": self.chat_model,
            "messages": [message.to_payload() for message in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        accumulated = ""
        usage: TokenUsage | None = None
        model_used = self.chat_model
        try:
            with self._client.stream(
                "POST",
                self._url("/chat/completions"),
                json=body,
                headers=self._auth_headers(),
            ) as response:
                if not response.is_success:
                    response.read()
                    raise _status_error("chat stream", response)
                for line in response.iter_lines():
                    event = _parse_sse_line(line)
                    if event is None:
                        continue
                    delta = _stream_delta(event)
                    if delta:
                        accumulated += delta
                        on_chunk(delta, accumulated)
                    if isinstance(event.get("model"), str):
                        model_used = event["model"]
                    if event.get("usage"):
                        usage = _to_usage(event)
        except httpx.TimeoutException as exc:
            raise ProviderError("Completion provider timed out", transient=True) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Completion provider request failed: {exc}", transient=True) from exc

        cost = calculate_token_cost(model_used, usage, overrides=self._pricing_overrides)
        return CompletionResult(
            message=accumulated,
            model=model_used,
            usage=usage,
            input_cost_usd=cost.input_cost_usd,
            output_cost_usd=cost.output_cost_usd,
        )

    def embed(self, texts: Sequence[str]) -> EmbeddingResult:
        """Embed texts in fixed-size batches, summing usage across batches."""

        embeddings: list[list[float]] = []
        usage: TokenUsage | None = None
        model_used = self.embed_model
        items = list(texts)
        for start in range(0, len(items), self._embed_batch_size):
            batch = items[start : start + self._embed_batch_size]
            data = self._post_json("/embeddings", {"model": self.embed_model, "input": batch})
            rows = data.get("data")
            if not isinstance(rows, list) or len(rows) != len(batch):
                raise ProviderError("Embedding response does not match the input batch")
            rows = sorted(rows, key=lambda row: row.get("index", 0))
            embeddings.extend(row["embedding"] for row in rows)
            batch_usage = _to_usage(data)
            if batch_usage is not None:
                usage = batch_usage if usage is None else usage + batch_usage
            if isinstance(data.get("model"), str):
                model_used = data["model"]
        logger.debug("Embedded %d text(s) with %s", len(items), model_used)

        cost = calculate_token_cost(model_used, usage, overrides=self._pricing_overrides)
        return EmbeddingResult(
            embeddings=embeddings,
            model=model_used,
            usage=usage,
            input_cost_usd=cost.input_cost_usd,
            output_cost_usd=cost.output_cost_usd,
        )

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
    ) -> TranscriptionResult:
        form = {"model": self.transcription_model, "response_format": "verbose_json"}
        if language:
            form["language"] = language
        try:
            response = self._client.post(
                self._url("/audio/transcriptions"),
                data=form,
                files={"file": (audio.filename, audio.content, audio.content_type)},
                headers=self._auth_headers(),
            )
        except httpx.TimeoutException as exc:
            raise ProviderError("Transcription request timed out", transient=True) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Transcription request failed: {exc}", transient=True) from exc
        if not response.is_success:
            raise _status_error("transcription", response)

        data = _json_body(response)
        text = data.get("text")
        if not isinstance(text, str):
            raise ProviderError("Transcription response has no text")
        duration = data.get("duration")
        return TranscriptionResult(
            text=text,
            model=self.transcription_model,
            duration_seconds=float(duration) if isinstance(duration, int | float) else None,
            raw=data,
        )

    def fetch_audio(self, url: str) -> AudioPayload:
        """Download remote audio; no provider credentials are sent."""

        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Failed to download audio: {exc}", transient=True) from exc
        if not response.is_success:
            raise ProviderError(
                f"Failed to download audio: HTTP {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code in _TRANSIENT_STATUS_CODES,
            )
        content_type = response.headers.get("content-type", "audio/m4a").split(";")[0].strip()
        filename = PurePosixPath(urlparse(url).path).name or "audio.m4a"
        return AudioPayload(content=response.content, content_type=content_type, filename=filename)

    def _chat_completion(self, messages: list[dict[str, Any]]) -> CompletionResult:
        data = self._post_json(
            "/chat/completions",
            {"model": self.chat_model, "messages": messages},
        )
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("Completion response has no choices")
        message = (choices[0].get("message") or {}).get("content")
        if not isinstance(message, str):
            raise ProviderError("Completion response has no message content")

        model_used = data.get("model") if isinstance(data.get("model"), str) else self.chat_model
        usage = _to_usage(data)
        cost = calculate_token_cost(model_used, usage, overrides=self._pricing_overrides)
        return CompletionResult(
            message=message,
            model=model_used,
            usage=usage,
            input_cost_usd=cost.input_cost_usd,
            output_cost_usd=cost.output_cost_usd,
        )

    def _post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(self._url(path), json=body, headers=self._auth_headers())
        except httpx.TimeoutException as exc:
            raise ProviderError("Completion provider timed out", transient=True) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Completion provider request failed: {exc}", transient=True) from exc
        if not response.is_success:
            raise _status_error(path.strip("/"), response)
        return _json_body(response)

    def _auth_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderError("Missing API key for completion provider calls.")
        return {"Authorization": f"Bearer {self._api_key}"}

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"


def _status_error(operation: str, response: httpx.Response) -> ProviderError:
    body = response.text[:_ERROR_BODY_CHARS]
    return ProviderError(
        f"Completion provider {operation} failed with HTTP {response.status_code}: {body}",
        status_code=response.status_code,
        transient=response.status_code in _TRANSIENT_STATUS_CODES,
    )


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderError("Completion provider returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise ProviderError("Completion provider returned a non-object JSON payload")
    return data


def _parse_sse_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith(_SSE_PREFIX):
        return None
    payload = stripped[len(_SSE_PREFIX) :].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _stream_delta(event: dict[str, Any]) -> str | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    delta = (choices[0].get("delta") or {}).get("content")
    return delta if isinstance(delta, str) else None


def _to_usage(data: dict[str, Any]) -> TokenUsage | None:
    raw = data.get("usage")
    if not isinstance(raw, dict):
        return None
    prompt = raw.get("prompt_tokens")
    completion = raw.get("completion_tokens")
    total = raw.get("total_tokens")
    if prompt is None and completion is None and total is None:
        return None
    return TokenUsage(
        prompt_tokens=prompt if isinstance(prompt, int) else None,
        completion_tokens=completion if isinstance(completion, int) else None,
        total_tokens=total if isinstance(total, int) else None,
    )
