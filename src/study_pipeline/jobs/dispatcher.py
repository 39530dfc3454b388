"""Routing from job type to handler."""

from __future__ import annotations

from types import MappingProxyType

from study_pipeline.jobs.models import JobType, UnknownJobTypeError
from study_pipeline.tasks.chat import handle_chat
from study_pipeline.tasks.context import Handler
from study_pipeline.tasks.embed import handle_embed
from study_pipeline.tasks.grade import handle_grade
from study_pipeline.tasks.metadata import handle_metadata
from study_pipeline.tasks.plan import handle_plan
from study_pipeline.tasks.practice_exam import handle_practice_exam
from study_pipeline.tasks.transcribe import handle_transcribe

HANDLERS: MappingProxyType[JobType, Handler] = MappingProxyType(
    {
        JobType.PLAN: handle_plan,
        JobType.CHAT: handle_chat,
        JobType.GRADE: handle_grade,
        JobType.TRANSCRIBE: handle_transcribe,
        JobType.EMBED: handle_embed,
        JobType.PRACTICE_EXAM: handle_practice_exam,
        JobType.METADATA: handle_metadata,
    },
)

# Job types whose execution may outlive one worker invocation.
DETACHABLE_JOB_TYPES = frozenset({JobType.PLAN})


def parse_job_type(raw: str) -> JobType:
    """Map a stored type string onto the closed `JobType` set."""

    try:
        return JobType(raw)
    except ValueError as error:
        raise UnknownJobTypeError(raw) from error


def resolve_handler(raw_type: str) -> Handler:
    """Return the handler for `raw_type`; unknown types fail before any side effect."""

    job_type = parse_job_type(raw_type)
    handler = HANDLERS.get(job_type)
    if handler is None:
        raise UnknownJobTypeError(raw_type)
    return handler


def is_detachable(raw_type: str) -> bool:
    try:
        return parse_job_type(raw_type) in DETACHABLE_JOB_TYPES
    except UnknownJobTypeError:
        return False
