"""Study-plan generation: chunked, bounded-concurrency, merged with tie-break ordering."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from functools import reduce
from typing import Any

from study_pipeline.jobs.models import JobInputError, UsageReport
from study_pipeline.provider.base import CompletionProvider, CompletionResult, ContentPart
from study_pipeline.tasks.chunking import (
    Chunk,
    SourceDocument,
    chunk_documents,
    truncate_to_token_limit,
)
from study_pipeline.tasks.context import (
    TaskContext,
    TaskOutcome,
    payload_language,
    payload_mapping,
)
from study_pipeline.tasks.parsing import parse_json_array, sanitize_text
from study_pipeline.tasks.prompts import (
    DEFAULT_PASSING_NOTE,
    PassingThresholds,
    study_plan_prompt,
)

logger = logging.getLogger(__name__)

FEATURE = "study_plan"
TIER_RANK = {"core": 0, "high-yield": 1, "stretch": 2}
DEFAULT_PRIORITY = {"core": 90, "high-yield": 70, "stretch": 40}
_TIER_ALIASES = {
    "core": "core",
    "high-yield": "high-yield",
    "high yield": "high-yield",
    "stretch": "stretch",
}
_EXAM_RELEVANCE = frozenset({"high", "medium", "low"})
DEFAULT_CATEGORY = "General"


@dataclass(slots=True)
class PlanCandidate:
    """Normalized study-plan entry produced from one chunk."""

    title: str
    description: str
    key_concepts: list[str]
    category: str
    importance_tier: str
    priority_score: int
    from_exam_source: bool | None = None
    exam_relevance: str | None = None
    mentioned_in_notes: bool | None = None
    source_files: tuple[str, ...] = ()

    def to_entry(self, order_index: int) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "keyConcepts": list(self.key_concepts),
            "category": self.category,
            "importanceTier": self.importance_tier,
            "priorityScore": self.priority_score,
            "orderIndex": order_index,
        }
        if self.from_exam_source is not None:
            entry["fromExamSource"] = self.from_exam_source
        if self.exam_relevance is not None:
            entry["examRelevance"] = self.exam_relevance
        if self.mentioned_in_notes is not None:
            entry["mentionedInNotes"] = self.mentioned_in_notes
        if self.source_files:
            entry["sourceFiles"] = list(self.source_files)
        return entry


@dataclass(slots=True)
class ChunkPlan:
    chunk: Chunk
    candidates: list[PlanCandidate]
    completion: CompletionResult
    used_fallback: bool


@dataclass(slots=True, frozen=True)
class PlanRequest:
    """Chunk-independent prompt inputs shared by every chunk call."""

    language: str
    exam_content: str
    passing_note: str
    additional_notes: str
    total_chunks: int


def fallback_candidate(source_files: tuple[str, ...] = ()) -> PlanCandidate:
    return PlanCandidate(
        title="General Study",
        description="Review all materials comprehensively",
        key_concepts=["Review", "Practice", "Understand"],
        category=DEFAULT_CATEGORY,
        importance_tier="core",
        priority_score=DEFAULT_PRIORITY["core"],
        source_files=source_files,
    )


def handle_plan(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    documents = parse_source_documents(data.get("extractedTexts"))
    options = data.get("options") if isinstance(data.get("options"), Mapping) else {}

    chunks = chunk_documents(documents, token_budget=context.pipeline.plan_chunk_token_budget)
    request = PlanRequest(
        language=payload_language(data),
        exam_content=build_exam_context(
            documents,
            token_limit=context.pipeline.exam_context_token_limit,
        ),
        passing_note=passing_note(options.get("thresholds")),
        additional_notes=_as_text(options.get("additionalNotes")),
        total_chunks=len(chunks),
    )
    logger.info(
        "Plan job %s: %d source(s), %d chunk(s), concurrency %d",
        context.job_id,
        len(documents),
        len(chunks),
        context.pipeline.plan_chunk_concurrency,
    )

    chunk_plans = generate_chunk_plans(
        chunks,
        request=request,
        provider=context.provider,
        concurrency=context.pipeline.plan_chunk_concurrency,
    )
    entries = merge_candidates([plan.candidates for plan in chunk_plans])
    return TaskOutcome(
        result={"entries": entries, "chunkCount": len(chunks)},
        usage=summarize_chunk_usage(chunk_plans),
    )


def parse_source_documents(raw: Any) -> list[SourceDocument]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise JobInputError("extractedTexts must be an array")
    documents: list[SourceDocument] = []
    for position, item in enumerate(raw, start=1):
        if not isinstance(item, Mapping):
            raise JobInputError(f"extractedTexts[{position - 1}] must be an object")
        documents.append(
            SourceDocument(
                file_name=_as_text(item.get("fileName")) or f"Source {position}",
                text=_as_text(item.get("text")),
                is_exam=bool(item.get("isExam")),
            ),
        )
    return documents


def build_exam_context(documents: Sequence[SourceDocument], *, token_limit: int) -> str:
    raw = "\n\n".join(document.render() for document in documents if document.is_exam)
    if not raw:
        return ""
    return truncate_to_token_limit(raw, token_limit)


def passing_note(thresholds: Any) -> str:
    if not isinstance(thresholds, Mapping):
        return DEFAULT_PASSING_NOTE
    values = [thresholds.get(key) for key in ("pass", "good", "ace")]
    if not all(_is_number(value) for value in values):
        return DEFAULT_PASSING_NOTE
    return PassingThresholds(pass_pct=values[0], good_pct=values[1], ace_pct=values[2]).note()


def generate_chunk_plans(
    chunks: Sequence[Chunk],
    *,
    request: PlanRequest,
    provider: CompletionProvider,
    concurrency: int,
) -> list[ChunkPlan]:
    """Run one completion per chunk with at most `concurrency` calls in flight.

    Results keep chunk order. A provider error in any chunk propagates.
    """

    def run(chunk: Chunk) -> ChunkPlan:
        return plan_chunk(chunk, request=request, provider=provider)

    if len(chunks) == 1 or concurrency <= 1:
        return [run(chunk) for chunk in chunks]
    with ThreadPoolExecutor(
        max_workers=min(concurrency, len(chunks)),
        thread_name_prefix="plan-chunk",
    ) as executor:
        return list(executor.map(run, chunks))


def plan_chunk(chunk: Chunk, *, request: PlanRequest, provider: CompletionProvider) -> ChunkPlan:
    prompt = study_plan_prompt(
        chunk.text,
        language=request.language,
        chunk_number=chunk.index + 1,
        total_chunks=request.total_chunks,
        exam_content=request.exam_content,
        passing_note=request.passing_note,
        additional_notes=request.additional_notes,
    )
    completion = provider.complete([ContentPart.text_part(prompt)])
    parsed = parse_json_array(completion.message)
    if parsed is None:
        logger.warning(
            "Study plan chunk %d/%d returned unparsable output; using fallback entry",
            chunk.index + 1,
            request.total_chunks,
        )
        return ChunkPlan(
            chunk=chunk,
            candidates=[fallback_candidate(chunk.sources)],
            completion=completion,
            used_fallback=True,
        )
    candidates = [
        candidate
        for candidate in (normalize_candidate(item, source_files=chunk.sources) for item in parsed)
        if candidate is not None
    ]
    return ChunkPlan(chunk=chunk, candidates=candidates, completion=completion, used_fallback=False)


def normalize_candidate(raw: Any, *, source_files: tuple[str, ...] = ()) -> PlanCandidate | None:
    """Coerce one model-produced item; non-object items are dropped."""

    if not isinstance(raw, Mapping):
        return None
    tier = normalize_tier(raw.get("importanceTier"))
    exam_relevance = _as_text(raw.get("examRelevance")).lower()
    return PlanCandidate(
        title=sanitize_text(_as_text(raw.get("title"))),
        description=sanitize_text(_as_text(raw.get("description"))),
        key_concepts=_key_concepts(raw.get("keyConcepts")),
        category=sanitize_text(_as_text(raw.get("category"))) or DEFAULT_CATEGORY,
        importance_tier=tier,
        priority_score=normalize_priority(raw.get("priorityScore"), tier),
        from_exam_source=_optional_bool(raw.get("fromExamSource")),
        exam_relevance=exam_relevance if exam_relevance in _EXAM_RELEVANCE else None,
        mentioned_in_notes=_optional_bool(raw.get("mentionedInNotes")),
        source_files=source_files,
    )


def normalize_tier(value: Any) -> str:
    if not isinstance(value, str):
        return "core"
    return _TIER_ALIASES.get(value.strip().lower(), "core")


def normalize_priority(value: Any, tier: str) -> int:
    numeric: float | None = None
    if _is_number(value):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            numeric = None
    if numeric is None or not math.isfinite(numeric):
        return DEFAULT_PRIORITY[tier]
    return max(0, min(100, math.floor(numeric + 0.5)))


def merge_candidates(chunk_candidates: Sequence[Sequence[PlanCandidate]]) -> list[dict[str, Any]]:
    """Dedup by case-insensitive title (first wins), order by tier, priority, insertion."""

    merged: list[PlanCandidate] = []
    seen_titles: set[str] = set()
    for candidates in chunk_candidates:
        for candidate in candidates:
            title = candidate.title or f"Topic {len(merged) + 1}"
            key = title.casefold()
            if key in seen_titles:
                continue
            seen_titles.add(key)
            if title != candidate.title:
                candidate = replace(candidate, title=title)
            merged.append(candidate)

    if not merged:
        return [fallback_candidate().to_entry(0)]

    ordered = sorted(
        enumerate(merged),
        key=lambda item: (
            TIER_RANK[item[1].importance_tier],
            -item[1].priority_score,
            item[0],
        ),
    )
    return [candidate.to_entry(order_index) for order_index, (_, candidate) in enumerate(ordered)]


def summarize_chunk_usage(chunk_plans: Sequence[ChunkPlan]) -> UsageReport | None:
    """Sum every chunk call into one usage report for the job."""

    if not chunk_plans:
        return None
    completions = [plan.completion for plan in chunk_plans]
    reported = [completion.usage for completion in completions if completion.usage is not None]
    input_cost = round(sum(completion.input_cost_usd for completion in completions), 6)
    output_cost = round(sum(completion.output_cost_usd for completion in completions), 6)
    return UsageReport(
        feature=FEATURE,
        model=completions[0].model,
        token_usage=reduce(lambda left, right: left + right, reported) if reported else None,
        input_cost_usd=input_cost,
        output_cost_usd=output_cost,
        cost_usd=round(input_cost + output_cost, 6),
        metadata={
            "chunks": len(chunk_plans),
            "fallbackChunks": sum(1 for plan in chunk_plans if plan.used_fallback),
        },
    )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _key_concepts(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [
        sanitize_text(str(concept))
        for concept in value
        if isinstance(concept, str | int | float) and str(concept).strip()
    ]


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _optional_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None

