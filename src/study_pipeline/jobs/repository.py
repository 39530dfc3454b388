"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from study_pipeline.jobs.models import (
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    UsageAggregateView,
    UsageRecordView,
    UsageRecordWrite,
)
from study_pipeline.storage.alembic_runner import upgrade_head
from study_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from study_pipeline.storage.sqlmodel_models import AiUsageRecord, Job, JobEvent

logger = logging.getLogger(__name__)

USAGE_GROUP_KEYS = ("feature", "model", "owner", "job")


class JobRepository:
    """Job queue and usage ledger persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Insert a pending job and return it."""

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                job_type=payload.job_type,
                status=JobStatus.PENDING.value,
                payload_json=json.dumps(payload.payload, ensure_ascii=False),
                owner_id=payload.owner_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"job_type": payload.job_type, "owner_id": payload.owner_id},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_pending_job(self, *, worker_id: str) -> JobView | None:
        """Atomically move the oldest pending job to running.

        Returns `None` when the queue is empty or another worker won the race
        for the selected job; both are idle outcomes, not errors.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            candidate = session.exec(
                select(Job)
                .where(Job.status == JobStatus.PENDING.value)
                .order_by(col(Job.created_at).asc(), col(Job.id).asc())
                .limit(1),
            ).one_or_none()
            if candidate is None:
                return None

            result = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == candidate.job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                    worker_id=worker_id,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Job %s was claimed by another worker", candidate.job_id)
                return None

            self._add_event(
                session=session,
                job_id=candidate.job_id,
                event_type="claimed",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.RUNNING,
                details={"worker_id": worker_id},
            )
            session.commit()
            claimed = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
            return _to_job_view(claimed)

    def update_partial_result(self, *, job_id: str, text: str) -> bool:
        """Overwrite incremental output of a running job."""

        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    partial_result=text,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_job(self, *, job_id: str, result: Any) -> bool:
        """Mark a running job as succeeded with its terminal result."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.SUCCEEDED.value,
                    result_json=json.dumps(result, ensure_ascii=False),
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="succeeded",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.SUCCEEDED,
                details={},
            )
            session.commit()
            return True

    def fail_job(self, *, job_id: str, error: str) -> bool:
        """Mark a running job as failed with a bounded diagnostic message."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=error,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={"error": error},
            )
            session.commit()
            return True

    def fail_stale_running_jobs(self, *, stale_after: timedelta) -> list[str]:
        """Fail running jobs whose claim is older than `stale_after`.

        This is an explicit operator action; claimed jobs carry no heartbeat,
        so a slow but healthy job older than the threshold is failed as well.
        """

        cutoff = to_db_datetime(utc_now() - stale_after)
        error = f"Job exceeded {int(stale_after.total_seconds())}s in running state; worker presumed lost."
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Job.job_id).where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.started_at) < cutoff,
                ),
            ).all()

        failed: list[str] = []
        for job_id in candidates:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                outcome = session.exec(  # type: ignore[call-overload]
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.RUNNING.value,
                        col(Job.started_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        error=error,
                        completed_at=now,
                        updated_at=now,
                    ),
                )
                if outcome.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_failed",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.FAILED,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
                session.commit()
                failed.append(job_id)
        if failed:
            logger.warning("Failed %d stale running job(s): %s", len(failed), ", ".join(failed))
        return failed

    def get_job(self, *, job_id: str) -> JobView | None:
        """Return one job by id, or `None`."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            job = _to_job_view(row)
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_load_dict(event.details_json),
            )
            for event in event_rows
        ]
        return JobDetails(job=job, events=events)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and owner."""

        with Session(self.engine) as session:
            statement = select(Job)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            statement = statement.order_by(
                col(Job.created_at).desc(),
                col(Job.id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def add_usage_record(self, record: UsageRecordWrite) -> UsageRecordView:
        """Append one immutable usage fact."""

        with Session(self.engine) as session:
            row = AiUsageRecord(
                job_id=record.job_id,
                owner_id=record.owner_id,
                feature=record.feature,
                model=record.model,
                prompt_tokens=record.prompt_tokens,
                completion_tokens=record.completion_tokens,
                total_tokens=record.total_tokens,
                input_cost_usd=record.input_cost_usd,
                output_cost_usd=record.output_cost_usd,
                cost_usd=record.cost_usd,
                audio_duration_seconds=record.audio_duration_seconds,
                metadata_json=dump_json(record.metadata) if record.metadata else None,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_usage_view(row)

    def list_usage_records(
        self,
        *,
        job_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageRecordView]:
        """List usage facts, newest first."""

        with Session(self.engine) as session:
            statement = select(AiUsageRecord)
            if job_id is not None:
                statement = statement.where(AiUsageRecord.job_id == job_id)
            if since is not None:
                statement = statement.where(AiUsageRecord.created_at >= to_db_datetime(since))
            statement = statement.order_by(
                col(AiUsageRecord.created_at).desc(),
                col(AiUsageRecord.id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
            return [_to_usage_view(row) for row in rows]

    def summarize_usage(
        self,
        *,
        since: datetime,
        group_by: str = "feature",
    ) -> list[UsageAggregateView]:
        """Aggregate usage facts since `since`, most expensive group first."""

        if group_by not in USAGE_GROUP_KEYS:
            raise ValueError(f"Unsupported usage grouping: {group_by}")

        with Session(self.engine) as session:
            rows = session.exec(
                select(AiUsageRecord).where(
                    AiUsageRecord.created_at >= to_db_datetime(since),
                ),
            ).all()

        grouped: dict[str, list[AiUsageRecord]] = defaultdict(list)
        for row in rows:
            grouped[_usage_group_key(row, group_by)].append(row)

        aggregates = [
            UsageAggregateView(
                group_key=key,
                records=len(items),
                prompt_tokens=sum(item.prompt_tokens or 0 for item in items),
                completion_tokens=sum(item.completion_tokens or 0 for item in items),
                total_tokens=sum(item.total_tokens or 0 for item in items),
                cost_usd=round(sum(item.cost_usd for item in items), 6),
                audio_duration_seconds=sum(item.audio_duration_seconds or 0.0 for item in items),
            )
            for key, items in grouped.items()
        ]
        aggregates.sort(key=lambda item: (-item.cost_usd, item.group_key))
        return aggregates

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _usage_group_key(row: AiUsageRecord, group_by: str) -> str:
    if group_by == "feature":
        return row.feature
    if group_by == "model":
        return row.model or "-"
    if group_by == "owner":
        return row.owner_id or "-"
    return row.job_id or "-"


def _load_dict(raw: str | None) -> dict[str, Any]:
    parsed = load_json(raw)
    if isinstance(parsed, dict):
        return parsed
    return {}


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        status=JobStatus(row.status),
        payload=load_json(row.payload_json),
        result=load_json(row.result_json),
        partial_result=row.partial_result,
        error=row.error,
        owner_id=row.owner_id,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_usage_view(row: AiUsageRecord) -> UsageRecordView:
    return UsageRecordView(
        record_id=row.id or 0,
        job_id=row.job_id,
        owner_id=row.owner_id,
        feature=row.feature,
        model=row.model,
        prompt_tokens=row.prompt_tokens,
        completion_tokens=row.completion_tokens,
        total_tokens=row.total_tokens,
        input_cost_usd=row.input_cost_usd,
        output_cost_usd=row.output_cost_usd,
        cost_usd=row.cost_usd,
        audio_duration_seconds=row.audio_duration_seconds,
        metadata=_load_dict(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )
