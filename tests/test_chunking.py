from __future__ import annotations

import allure
import pytest

from study_pipeline.tasks.chunking import (
    CHARS_PER_TOKEN,
    TRUNCATION_MARKER,
    SourceDocument,
    chunk_documents,
    chunk_text,
    estimate_tokens,
    join_sources,
    truncate_to_token_limit,
)

pytestmark = [
    allure.epic("Study Plan"),
    allure.feature("Chunking"),
]


def test_empty_input_yields_single_empty_chunk() -> None:
    chunks = chunk_text("   \n\n  ", token_budget=100)

    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].text == ""


def test_non_positive_budget_is_rejected() -> None:
    with pytest.raises(ValueError, match="token_budget"):
        chunk_text("hello", token_budget=0)


def test_short_text_is_one_chunk() -> None:
    chunks = chunk_text("A short lecture about limits.", token_budget=100)

    assert [chunk.text for chunk in chunks] == ["A short lecture about limits."]


def test_chunks_respect_budget_and_prefer_paragraph_breaks() -> None:
    paragraph = " ".join(["word"] * 30)
    text = "\n\n".join([paragraph] * 6)

    chunks = chunk_text(text, token_budget=50)

    assert len(chunks) > 1
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert len(chunk.text) <= 50 * CHARS_PER_TOKEN
        assert chunk.text == paragraph
    assert all(earlier.end <= later.start for earlier, later in zip(chunks, chunks[1:]))


def test_text_without_whitespace_is_cut_hard() -> None:
    text = "x" * 1000

    chunks = chunk_text(text, token_budget=100)

    assert [len(chunk.text) for chunk in chunks] == [400, 400, 200]
    assert "".join(chunk.text for chunk in chunks) == text


def test_whitespace_boundary_used_when_no_paragraph_break() -> None:
    text = " ".join(["lemma"] * 100)

    chunks = chunk_text(text, token_budget=25)

    assert all(not chunk.text.startswith(" ") and not chunk.text.endswith(" ") for chunk in chunks)
    assert all(set(chunk.text.split()) == {"lemma"} for chunk in chunks)
    assert sum(len(chunk.text.split()) for chunk in chunks) == 100


def test_join_sources_renders_headers_and_spans() -> None:
    text, spans = join_sources(
        [
            SourceDocument(file_name="notes.pdf", text="Limits"),
            SourceDocument(file_name="exam.pdf", text="Q1", is_exam=True),
        ],
    )

    assert text == "=== notes.pdf ===\nLimits\n\n=== exam.pdf (Past Exam) ===\nQ1"
    assert [(span.file_name, text[span.start : span.end]) for span in spans] == [
        ("notes.pdf", "=== notes.pdf ===\nLimits"),
        ("exam.pdf", "=== exam.pdf (Past Exam) ===\nQ1"),
    ]


def test_chunk_documents_attributes_sources() -> None:
    documents = [
        SourceDocument(file_name=f"{name}.txt", text=" ".join([name] * 25))
        for name in ("alpha", "bravo", "delta")
    ]

    chunks = chunk_documents(documents, token_budget=50)

    assert [chunk.sources for chunk in chunks] == [
        ("alpha.txt",),
        ("bravo.txt",),
        ("delta.txt",),
    ]


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcde") == 2


def test_truncate_keeps_short_text() -> None:
    assert truncate_to_token_limit("short", 10) == "short"


def test_truncate_prefers_paragraph_end_and_appends_marker() -> None:
    text = ("a" * 600) + "\n\n" + ("b" * 2000)

    truncated = truncate_to_token_limit(text, 200)

    assert truncated == ("a" * 600) + TRUNCATION_MARKER


def test_truncate_falls_back_to_slack_cut() -> None:
    text = "x" * 5000

    truncated = truncate_to_token_limit(text, 200)

    assert truncated == ("x" * 300) + TRUNCATION_MARKER
