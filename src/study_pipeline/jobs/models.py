"""Domain models for the job queue and usage ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.SUCCEEDED, JobStatus.FAILED}


class JobType(str, Enum):
    """Closed set of job types understood by the dispatcher."""

    PLAN = "plan"
    CHAT = "chat"
    GRADE = "grade"
    TRANSCRIBE = "transcribe"
    EMBED = "embed"
    PRACTICE_EXAM = "practice_exam"
    METADATA = "metadata"


class UnknownJobTypeError(ValueError):
    """Raised when a job declares a type outside `JobType`."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class JobInputError(ValueError):
    """Raised by handlers when a payload cannot be processed at all."""


@dataclass(slots=True)
class JobCreate:
    """Input payload for inserting a pending job."""

    job_type: str
    payload: Any
    owner_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for pollers, CLI and worker logic."""

    job_id: str
    job_type: str
    status: JobStatus
    payload: Any
    result: Any
    partial_result: str | None
    error: str | None
    owner_id: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job view with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counts reported by the completion provider."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=_add_optional(self.prompt_tokens, other.prompt_tokens),
            completion_tokens=_add_optional(self.completion_tokens, other.completion_tokens),
            total_tokens=_add_optional(self.total_tokens, other.total_tokens),
        )


@dataclass(slots=True)
class UsageReport:
    """Normalized cost/usage produced by a handler for one job."""

    feature: str
    model: str | None
    token_usage: TokenUsage | None = None
    input_cost_usd: float | None = None
    output_cost_usd: float | None = None
    cost_usd: float | None = None
    audio_duration_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UsageRecordWrite:
    """Immutable usage fact persisted once per priced operation."""

    job_id: str | None
    owner_id: str | None
    feature: str
    model: str | None
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    input_cost_usd: float | None
    output_cost_usd: float | None
    cost_usd: float
    audio_duration_seconds: float | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UsageRecordView:
    """Stored usage fact."""

    record_id: int
    job_id: str | None
    owner_id: str | None
    feature: str
    model: str | None
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    input_cost_usd: float | None
    output_cost_usd: float | None
    cost_usd: float
    audio_duration_seconds: float | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class UsageAggregateView:
    """Grouped usage/cost summary row."""

    group_key: str
    records: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    audio_duration_seconds: float


def _add_optional(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)
