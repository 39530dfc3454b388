"""Token-budgeted document chunking with source attribution."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

CHARS_PER_TOKEN = 4
SOURCE_SEPARATOR = "\n\n"
TRUNCATION_MARKER = (
    "\n\n[... Content truncated for length. Key information above covers the main topics ...]"
)
# A boundary earlier than this share of the window wastes too much of the budget.
_MIN_BOUNDARY_RATIO = 0.6
_TRUNCATION_SLACK_CHARS = 500


@dataclass(slots=True, frozen=True)
class SourceDocument:
    """One extracted file contributing text to a plan job."""

    file_name: str
    text: str
    is_exam: bool = False

    @property
    def header(self) -> str:
        suffix = " (Past Exam)" if self.is_exam else ""
        return f"=== {self.file_name}{suffix} ==="

    def render(self) -> str:
        return f"{self.header}\n{self.text}"


@dataclass(slots=True, frozen=True)
class SourceSpan:
    file_name: str
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class Chunk:
    """Bounded window of a larger document; never persisted."""

    index: int
    text: str
    start: int = 0
    end: int = 0
    sources: tuple[str, ...] = ()

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.text)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def join_sources(documents: Iterable[SourceDocument]) -> tuple[str, list[SourceSpan]]:
    """Concatenate documents under `=== name ===` headers and record their offsets."""

    parts: list[str] = []
    spans: list[SourceSpan] = []
    offset = 0
    for document in documents:
        if parts:
            offset += len(SOURCE_SEPARATOR)
        rendered = document.render()
        spans.append(SourceSpan(file_name=document.file_name, start=offset, end=offset + len(rendered)))
        parts.append(rendered)
        offset += len(rendered)
    return SOURCE_SEPARATOR.join(parts), spans


def chunk_text(
    text: str,
    *,
    token_budget: int,
    spans: Sequence[SourceSpan] = (),
) -> list[Chunk]:
    """Split `text` into ordered, non-overlapping chunks within `token_budget`.

    Boundaries prefer a paragraph break, then any whitespace, in the last 40%
    of the window; otherwise the window is cut hard. Empty input yields exactly
    one empty chunk.
    """

    if token_budget <= 0:
        raise ValueError("token_budget must be > 0")
    if not text.strip():
        return [Chunk(index=0, text="")]

    max_chars = token_budget * CHARS_PER_TOKEN
    min_boundary = max_chars * _MIN_BOUNDARY_RATIO
    chunks: list[Chunk] = []
    start = 0
    while start < len(text):
        end = min(start + max_chars, len(text))
        if end < len(text):
            end = start + _boundary(text[start:end], min_boundary=min_boundary)

        piece = text[start:end]
        stripped = piece.strip()
        if stripped:
            chunk_start = start + (len(piece) - len(piece.lstrip()))
            chunk_end = chunk_start + len(stripped)
            chunks.append(
                Chunk(
                    index=len(chunks),
                    text=stripped,
                    start=chunk_start,
                    end=chunk_end,
                    sources=_sources_for(spans, start=chunk_start, end=chunk_end),
                ),
            )
        start = end
    return chunks


def chunk_documents(documents: Sequence[SourceDocument], *, token_budget: int) -> list[Chunk]:
    text, spans = join_sources(documents)
    return chunk_text(text, token_budget=token_budget, spans=spans)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    """Clip `text` to roughly `max_tokens`, preferring paragraph or sentence ends."""

    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    cut_point = max(
        truncated.rfind("\n\n"),
        truncated.rfind(". "),
        max_chars - _TRUNCATION_SLACK_CHARS,
        0,
    )
    return truncated[:cut_point] + TRUNCATION_MARKER


def _boundary(window: str, *, min_boundary: float) -> int:
    paragraph = window.rfind("\n\n")
    if paragraph > min_boundary:
        return paragraph
    whitespace = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
    if whitespace > min_boundary:
        return whitespace
    return len(window)


def _sources_for(spans: Sequence[SourceSpan], *, start: int, end: int) -> tuple[str, ...]:
    names: list[str] = []
    for span in spans:
        if span.start < end and span.end > start and span.file_name not in names:
            names.append(span.file_name)
    return tuple(names)
