"""Completion provider boundary: contract, OpenAI-compatible adapter, pricing."""

from study_pipeline.provider.base import (
    AudioPayload,
    ChatMessage,
    CompletionProvider,
    CompletionResult,
    ContentPart,
    EmbeddingResult,
    ProviderError,
    TranscriptionResult,
)
from study_pipeline.provider.openai_http import OpenAICompletionProvider

__all__ = [
    "AudioPayload",
    "ChatMessage",
    "CompletionProvider",
    "CompletionResult",
    "ContentPart",
    "EmbeddingResult",
    "OpenAICompletionProvider",
    "ProviderError",
    "TranscriptionResult",
]
