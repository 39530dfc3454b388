"""Polling worker that claims jobs and runs their handlers."""

from __future__ import annotations

import logging
import re
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from study_pipeline.config import PipelineSettings
from study_pipeline.jobs.dispatcher import is_detachable, resolve_handler
from study_pipeline.jobs.models import JobStatus, JobView
from study_pipeline.jobs.repository import JobRepository
from study_pipeline.jobs.usage import UsageRecorder
from study_pipeline.provider.base import CompletionProvider
from study_pipeline.provider.pricing import DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE
from study_pipeline.tasks.context import TaskContext, TaskOutcome

logger = logging.getLogger(__name__)

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted-token]"),
    (re.compile(r"(?i)\bsk-[a-z0-9_\-]{8,}"), "[redacted-token]"),
)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    detached: int = 0
    idle_polls: int = 0
    job_id: str | None = None

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.detached += other.detached
        self.idle_polls += other.idle_polls
        self.job_id = other.job_id or self.job_id


def format_job_error(error: BaseException, *, max_chars: int) -> str:
    """Bounded, human-readable failure text for the `error` column."""

    message = str(error).strip() or type(error).__name__
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message[:max_chars]


class JobWorker:
    """Claims the oldest pending job and executes it via the dispatcher."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        provider: CompletionProvider,
        worker_id: str,
        pipeline: PipelineSettings | None = None,
        poll_interval_seconds: float = 2.0,
        detach_plan_jobs: bool = True,
        stale_running_after_seconds: int = 0,
        transcription_price_per_minute: float = DEFAULT_TRANSCRIPTION_PRICE_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.worker_id = worker_id
        self.pipeline = pipeline or PipelineSettings()
        self.poll_interval_seconds = poll_interval_seconds
        self.detach_plan_jobs = detach_plan_jobs
        self.stale_running_after_seconds = stale_running_after_seconds
        self.transcription_price_per_minute = transcription_price_per_minute
        self.usage_recorder = UsageRecorder(repository)
        self._clock = clock
        self._stop_requested = False
        self._background: list[threading.Thread] = []
        self._background_lock = threading.Lock()

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most one job."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._fail_stale_jobs()
        job = self.repository.claim_next_pending_job(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        summary.job_id = job.job_id
        logger.info("Worker %s claimed job %s (%s)", self.worker_id, job.job_id, job.job_type)

        if self.detach_plan_jobs and is_detachable(job.job_type):
            self._start_background(job)
            summary.detached = 1
            return summary

        if self.execute(job) == JobStatus.SUCCEEDED:
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays idle for `max_idle_polls` polls or `max_jobs` is reached."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def execute(self, job: JobView) -> JobStatus:
        """Run the handler for a claimed job and write its terminal state.

        Every handler or dispatch failure ends here as a `failed` job; the
        worker itself keeps running.
        """

        try:
            handler = resolve_handler(job.job_type)
            outcome = handler(job.payload, self._context_for(job))
        except Exception as error:  # noqa: BLE001
            return self._fail(job, error)

        self._record_usage(job, outcome)
        try:
            completed = self.repository.complete_job(job_id=job.job_id, result=outcome.result)
        except (TypeError, ValueError, SQLAlchemyError) as error:
            return self._fail(job, error)
        if not completed:
            logger.warning("Job %s left running state before completion; result dropped", job.job_id)
            return JobStatus.FAILED
        logger.info("Job %s (%s) succeeded", job.job_id, job.job_type)
        return JobStatus.SUCCEEDED

    def join_background(self, timeout: float | None = None) -> bool:
        """Wait for detached jobs; returns `True` when none is still running."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._background_lock:
            threads = list(self._background)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        with self._background_lock:
            self._background = [thread for thread in self._background if thread.is_alive()]
            return not self._background

    def request_stop(self) -> None:
        self._stop_requested = True

    def _context_for(self, job: JobView) -> TaskContext:
        def write_partial(text: str) -> bool:
            return self.repository.update_partial_result(job_id=job.job_id, text=text)

        return TaskContext(
            job_id=job.job_id,
            provider=self.provider,
            pipeline=self.pipeline,
            owner_id=job.owner_id,
            write_partial=write_partial,
            clock=self._clock,
            transcription_price_per_minute=self.transcription_price_per_minute,
        )

    def _record_usage(self, job: JobView, outcome: TaskOutcome) -> None:
        if outcome.usage is None:
            return
        self.usage_recorder.record(job=job, usage=outcome.usage)

    def _fail(self, job: JobView, error: Exception) -> JobStatus:
        logger.exception("Job %s (%s) failed", job.job_id, job.job_type)
        message = format_job_error(error, max_chars=self.pipeline.max_error_chars)
        try:
            marked = self.repository.fail_job(job_id=job.job_id, error=message)
        except SQLAlchemyError:
            logger.exception("Job %s could not be marked failed; it stays running", job.job_id)
            return JobStatus.FAILED
        if not marked:
            logger.warning("Job %s was not running when marking it failed", job.job_id)
        return JobStatus.FAILED

    def _start_background(self, job: JobView) -> None:
        thread = threading.Thread(
            target=self.execute,
            args=(job,),
            daemon=True,
            name=f"job-{job.job_id[:8]}",
        )
        with self._background_lock:
            self._background = [item for item in self._background if item.is_alive()]
            self._background.append(thread)
        thread.start()
        logger.info("Job %s detached to background thread %s", job.job_id, thread.name)

    def _fail_stale_jobs(self) -> None:
        if self.stale_running_after_seconds <= 0:
            return
        self.repository.fail_stale_running_jobs(
            stale_after=timedelta(seconds=self.stale_running_after_seconds),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s; stopping after the current job", signal.Signals(signum).name)
            self.request_stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
