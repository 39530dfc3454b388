from __future__ import annotations

import json
import re
import threading
import time

import allure
import pytest

from study_pipeline.jobs.models import JobInputError
from study_pipeline.provider.base import ProviderError
from study_pipeline.tasks.plan import (
    DEFAULT_PRIORITY,
    PlanCandidate,
    handle_plan,
    merge_candidates,
    normalize_candidate,
    normalize_priority,
    normalize_tier,
    passing_note,
)
from study_pipeline.tasks.prompts import DEFAULT_PASSING_NOTE

pytestmark = [
    allure.epic("Study Plan"),
    allure.feature("Chunked Plan Generation"),
]


def _documents(*names: str) -> list[dict[str, object]]:
    return [{"fileName": f"{name}.txt", "text": " ".join([name] * 25)} for name in names]


def _candidate(title: str, tier: str = "core", priority: int = 50) -> PlanCandidate:
    return PlanCandidate(
        title=title,
        description="",
        key_concepts=[],
        category="General",
        importance_tier=tier,
        priority_score=priority,
    )


def test_plan_merges_chunks_and_falls_back_on_malformed_chunk(make_provider, make_context) -> None:
    def respond(prompt: str) -> str:
        if "chunk 1 of 3" in prompt:
            return json.dumps(
                [
                    {"title": "Limits", "importanceTier": "core", "priorityScore": 80},
                    {"title": "Series", "importanceTier": "stretch", "priorityScore": 95},
                ],
            )
        if "chunk 2 of 3" in prompt:
            return "Sorry, I cannot produce JSON today."
        return "```json\n" + json.dumps(
            [
                {"title": "limits", "importanceTier": "stretch", "priorityScore": 10},
                {"title": "Derivatives", "importanceTier": "High Yield", "priorityScore": "75.5"},
            ],
        ) + "\n```"

    provider = make_provider(responder=respond)
    context = make_context(provider, plan_chunk_token_budget=50, plan_chunk_concurrency=3)

    outcome = handle_plan({"extractedTexts": _documents("alpha", "bravo", "delta")}, context)

    entries = outcome.result["entries"]
    assert outcome.result["chunkCount"] == 3
    assert [entry["title"] for entry in entries] == ["General Study", "Limits", "Derivatives", "Series"]
    assert [entry["orderIndex"] for entry in entries] == [0, 1, 2, 3]
    assert entries[0]["sourceFiles"] == ["bravo.txt"]
    assert entries[2]["importanceTier"] == "high-yield"
    assert entries[2]["priorityScore"] == 76
    assert len(provider.calls_named("complete")) == 3

    usage = outcome.usage
    assert usage is not None
    assert usage.feature == "study_plan"
    assert usage.metadata == {"chunks": 3, "fallbackChunks": 1}
    assert usage.token_usage is not None
    assert usage.token_usage.total_tokens == 450
    assert usage.cost_usd == pytest.approx(0.009)


def test_plan_with_no_sources_returns_single_fallback_entry(make_provider, make_context) -> None:
    provider = make_provider(completions=["[]"])

    outcome = handle_plan({}, make_context(provider))

    assert outcome.result["chunkCount"] == 1
    assert [entry["title"] for entry in outcome.result["entries"]] == ["General Study"]


def test_plan_includes_exam_context_notes_and_thresholds(make_provider, make_context) -> None:
    provider = make_provider(completions=['[{"title": "Integrals"}]'])
    payload = {
        "language": "de",
        "extractedTexts": [
            {"fileName": "lecture.pdf", "text": "Integration by parts"},
            {"fileName": "exam2023.pdf", "text": "Compute the integral", "isExam": True},
        ],
        "options": {
            "additionalNotes": "Focus on substitution",
            "thresholds": {"pass": 50, "good": 70, "ace": 90},
        },
    }

    outcome = handle_plan(payload, make_context(provider))

    [parts] = provider.calls_named("complete")
    prompt = parts[0].text
    assert "=== exam2023.pdf (Past Exam) ===\nCompute the integral" in prompt
    assert "Focus on substitution" in prompt
    assert "pass at 50% confidence" in prompt
    assert "Respond in de" in prompt
    entry = outcome.result["entries"][0]
    assert entry["title"] == "Integrals"
    assert entry["priorityScore"] == DEFAULT_PRIORITY["core"]
    assert entry["sourceFiles"] == ["lecture.pdf", "exam2023.pdf"]


def test_plan_provider_error_propagates(make_provider, make_context) -> None:
    provider = make_provider(completions=[ProviderError("upstream down", status_code=503)])

    with pytest.raises(ProviderError, match="upstream down"):
        handle_plan({"extractedTexts": _documents("alpha")}, make_context(provider))


def test_plan_rejects_non_array_sources(make_provider, make_context) -> None:
    with pytest.raises(JobInputError, match="extractedTexts"):
        handle_plan({"extractedTexts": "text"}, make_context(make_provider()))


def test_plan_chunk_calls_are_bounded_by_concurrency(make_provider, make_context) -> None:
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def respond(_: str) -> str:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.05)
        with lock:
            in_flight -= 1
        return "[]"

    provider = make_provider(responder=respond)
    context = make_context(provider, plan_chunk_token_budget=50, plan_chunk_concurrency=2)

    outcome = handle_plan(
        {"extractedTexts": _documents("alpha", "bravo", "delta", "gamma", "kappa")},
        context,
    )

    assert outcome.result["chunkCount"] == 5
    assert len(provider.calls_named("complete")) == 5
    assert peak == 2


def test_plan_keeps_chunk_order_when_chunks_finish_out_of_order(
    make_provider,
    make_context,
) -> None:
    lock = threading.Lock()
    finished: list[int] = []

    def respond(prompt: str) -> str:
        match = re.search(r"chunk (\d+) of 4", prompt)
        assert match is not None
        number = int(match.group(1))
        time.sleep((5 - number) * 0.03)
        with lock:
            finished.append(number)
        return json.dumps([{"title": f"Topic {number}", "importanceTier": "core", "priorityScore": 50}])

    provider = make_provider(responder=respond)
    context = make_context(provider, plan_chunk_token_budget=50, plan_chunk_concurrency=4)

    outcome = handle_plan(
        {"extractedTexts": _documents("alpha", "bravo", "delta", "gamma")},
        context,
    )

    assert finished != sorted(finished)
    entries = outcome.result["entries"]
    assert [entry["title"] for entry in entries] == ["Topic 1", "Topic 2", "Topic 3", "Topic 4"]
    assert [entry["sourceFiles"] for entry in entries] == [
        ["alpha.txt"],
        ["bravo.txt"],
        ["delta.txt"],
        ["gamma.txt"],
    ]


def test_merge_orders_by_tier_then_priority_then_insertion() -> None:
    entries = merge_candidates(
        [
            [_candidate("Stretch A", "stretch", 99), _candidate("Core low", "core", 10)],
            [_candidate("Core tie", "core", 60), _candidate("Core first", "core", 60)],
            [_candidate("CORE TIE", "high-yield", 100), _candidate("", "high-yield", 1)],
        ],
    )

    assert [entry["title"] for entry in entries] == [
        "Core tie",
        "Core first",
        "Core low",
        "Topic 5",
        "Stretch A",
    ]
    assert [entry["orderIndex"] for entry in entries] == list(range(5))


def test_merge_of_nothing_is_fallback_entry() -> None:
    entries = merge_candidates([[], []])

    assert len(entries) == 1
    assert entries[0]["title"] == "General Study"
    assert entries[0]["importanceTier"] == "core"


@pytest.mark.parametrize(
    ("raw", "tier", "expected"),
    [
        (72.5, "core", 73),
        (72.4, "core", 72),
        ("88", "stretch", 88),
        (250, "core", 100),
        (-5, "core", 0),
        (None, "high-yield", 70),
        ("n/a", "stretch", 40),
        (True, "core", 90),
        (float("nan"), "core", 90),
    ],
)
def test_normalize_priority(raw, tier: str, expected: int) -> None:
    assert normalize_priority(raw, tier) == expected


def test_normalize_tier_defaults_to_core() -> None:
    assert normalize_tier("High-Yield") == "high-yield"
    assert normalize_tier(" stretch ") == "stretch"
    assert normalize_tier("optional") == "core"
    assert normalize_tier(None) == "core"


def test_normalize_candidate_drops_non_objects_and_sanitizes() -> None:
    assert normalize_candidate("just a string") is None

    candidate = normalize_candidate(
        {
            "title": "Lim\x00its",
            "keyConcepts": ["epsilon", "", 3, {"nested": True}],
            "examRelevance": "HIGH",
            "fromExamSource": "yes",
            "mentionedInNotes": True,
        },
    )

    assert candidate is not None
    assert candidate.title == "Limits"
    assert candidate.key_concepts == ["epsilon", "3"]
    assert candidate.category == "General"
    assert candidate.exam_relevance == "high"
    assert candidate.from_exam_source is None
    assert candidate.mentioned_in_notes is True


def test_passing_note_requires_numeric_thresholds() -> None:
    assert passing_note(None) == DEFAULT_PASSING_NOTE
    assert passing_note({"pass": 50, "good": "x", "ace": 90}) == DEFAULT_PASSING_NOTE
    assert "ace at 92.5%" in passing_note({"pass": 50, "good": 70, "ace": 92.5})
