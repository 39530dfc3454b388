"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from study_pipeline.config import Settings
from study_pipeline.jobs.models import JobStatus, JobView
from study_pipeline.jobs.repository import JobRepository
from study_pipeline.jobs.services import JobService, SubmitJob
from study_pipeline.jobs.worker import JobWorker
from study_pipeline.provider.base import CompletionProvider
from study_pipeline.provider.openai_http import OpenAICompletionProvider
from study_pipeline.provider.pricing import parse_pricing_overrides

_PREVIEW_CHARS = 500


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission."""

    db_path: Path | None
    job_type: str
    payload: Any
    owner_id: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    background_timeout_seconds: float | None = None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    owner_id: str | None
    limit: int


@dataclass(slots=True)
class ShowJobCommand:
    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class FailStaleCommand:
    """CLI input for explicit stuck-job cleanup."""

    db_path: Path | None
    older_than_seconds: int


@dataclass(slots=True)
class UsageReportCommand:
    """CLI input for usage/cost reporting."""

    db_path: Path | None
    job_id: str | None
    hours: int
    group_by: str
    output_format: str = "table"


def build_provider(settings: Settings) -> CompletionProvider:
    provider = settings.provider
    return OpenAICompletionProvider(
        api_key=provider.api_key,
        base_url=provider.base_url,
        chat_model=provider.chat_model,
        embed_model=provider.embed_model,
        transcription_model=provider.transcription_model,
        timeout_seconds=provider.request_timeout_seconds,
        max_retries=provider.max_retries,
        embed_batch_size=provider.embed_batch_size,
        pricing_overrides=parse_pricing_overrides(provider.pricing_overrides),
    )


class JobsCliController:
    """Coordinates submission, worker, and inspection CLI operations."""

    def __init__(
        self,
        *,
        provider_factory: Callable[[Settings], CompletionProvider] = build_provider,
    ) -> None:
        self._provider_factory = provider_factory

    def submit(self, command: SubmitJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = JobService(repository=repository).submit(
                SubmitJob(
                    job_type=command.job_type,
                    payload=command.payload,
                    owner_id=command.owner_id,
                ),
            )
        return [f"Job enqueued: job_id={job.job_id} type={job.job_type} status={job.status.value}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        provider = self._provider_factory(settings)
        try:
            with _repository(settings) as repository:
                worker = JobWorker(
                    repository=repository,
                    provider=provider,
                    worker_id=settings.worker.worker_id,
                    pipeline=settings.pipeline,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    detach_plan_jobs=settings.worker.detach_plan_jobs,
                    stale_running_after_seconds=settings.worker.stale_running_after_seconds,
                    transcription_price_per_minute=settings.provider.transcription_price_per_minute,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
                # Detached jobs run on daemon threads that die with the process.
                drained = worker.join_background(timeout=command.background_timeout_seconds)
        finally:
            provider.close()

        lines = [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} detached={summary.detached} "
            f"idle_polls={summary.idle_polls}",
        ]
        if summary.job_id is not None:
            lines.append(f"Last claimed job: {summary.job_id}")
        if not drained:
            lines.append("Detached jobs still running at exit; they remain in running state.")
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                owner_id=command.owner_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"owner={job.owner_id or '-'} created_at={job.created_at.isoformat()}",
            )
        return lines

    def show_job(self, command: ShowJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = JobService(repository=repository).get_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        if command.output_format == "json":
            return [json.dumps(_job_payload(job), indent=2, ensure_ascii=False)]

        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Owner: {job.owner_id or '-'}",
            f"Worker: {job.worker_id or '-'}",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"Error: {job.error or '-'}",
            f"Partial result: {_preview(job.partial_result)}",
            f"Result: {_result_preview(job.result)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def fail_stale(self, command: FailStaleCommand) -> list[str]:
        if command.older_than_seconds <= 0:
            raise ValueError("--older-than-seconds must be > 0.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            failed = repository.fail_stale_running_jobs(
                stale_after=timedelta(seconds=command.older_than_seconds),
            )
        lines = [f"Stale running jobs failed: {len(failed)}"]
        lines.extend(f"  {job_id}" for job_id in failed)
        return lines

    def usage_report(self, command: UsageReportCommand) -> list[str]:
        """Show usage records for one job, or grouped totals for a window."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.job_id is not None:
            with _repository(settings) as repository:
                records = repository.list_usage_records(job_id=command.job_id)
            if command.output_format == "json":
                return [
                    json.dumps(
                        {
                            "job_id": command.job_id,
                            "records": [
                                {
                                    "feature": record.feature,
                                    "model": record.model,
                                    "prompt_tokens": record.prompt_tokens,
                                    "completion_tokens": record.completion_tokens,
                                    "total_tokens": record.total_tokens,
                                    "cost_usd": record.cost_usd,
                                    "audio_duration_seconds": record.audio_duration_seconds,
                                    "metadata": record.metadata,
                                }
                                for record in records
                            ],
                        },
                        indent=2,
                        ensure_ascii=False,
                    ),
                ]
            lines = [f"Usage records for {command.job_id}: {len(records)}"]
            for record in records:
                lines.append(
                    f"  feature={record.feature} model={record.model or '-'} "
                    f"prompt={_fmt_int(record.prompt_tokens)} "
                    f"completion={_fmt_int(record.completion_tokens)} "
                    f"total={_fmt_int(record.total_tokens)} cost_usd={record.cost_usd:.6f}",
                )
            return lines

        cutoff = datetime.now(tz=UTC) - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            rows = repository.summarize_usage(since=cutoff, group_by=command.group_by)
        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "group_by": command.group_by,
                        "window_hours": command.hours,
                        "groups": [
                            {
                                "group_key": row.group_key,
                                "records": row.records,
                                "prompt_tokens": row.prompt_tokens,
                                "completion_tokens": row.completion_tokens,
                                "total_tokens": row.total_tokens,
                                "cost_usd": row.cost_usd,
                                "audio_duration_seconds": row.audio_duration_seconds,
                            }
                            for row in rows
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [
            f"Usage summary: groups={len(rows)} window={command.hours}h "
            f"group_by={command.group_by}",
        ]
        for row in rows:
            lines.append(
                f"  {row.group_key}: records={row.records} total_tokens={row.total_tokens} "
                f"audio_seconds={row.audio_duration_seconds:.1f} cost_usd={row.cost_usd:.6f}",
            )
        return lines


def _job_payload(job: JobView) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "type": job.job_type,
        "status": job.status.value,
        "owner_id": job.owner_id,
        "partial_result": job.partial_result,
        "result": job.result,
        "error": job.error,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _preview(value: str | None) -> str:
    if not value:
        return "-"
    if len(value) <= _PREVIEW_CHARS:
        return value
    return value[:_PREVIEW_CHARS] + "..."


def _result_preview(result: Any) -> str:
    if result is None:
        return "-"
    return _preview(json.dumps(result, ensure_ascii=False))


def _fmt_int(value: int | None) -> str:
    return "-" if value is None else str(value)


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
