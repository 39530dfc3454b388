from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from study_pipeline.jobs.models import JobCreate, JobStatus, UsageRecordWrite
from study_pipeline.jobs.repository import JobRepository
from study_pipeline.storage.common import to_db_datetime
from study_pipeline.storage.sqlmodel_models import AiUsageRecord, Job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Job Store"),
]


def _usage(**overrides) -> UsageRecordWrite:
    values = {
        "job_id": "job-1",
        "owner_id": "user-1",
        "feature": "study_plan",
        "model": "gpt-test",
        "prompt_tokens": 100,
        "completion_tokens": 50,
        "total_tokens": 150,
        "input_cost_usd": 0.001,
        "output_cost_usd": 0.002,
        "cost_usd": 0.003,
        "audio_duration_seconds": None,
        "metadata": {},
    }
    values.update(overrides)
    return UsageRecordWrite(**values)


def _enqueue_jobs(repository: JobRepository, *job_ids: str) -> None:
    for job_id in job_ids:
        repository.enqueue_job(JobCreate(job_id=job_id, job_type="plan", payload={}))


def test_enqueue_creates_pending_job_with_event(repository: JobRepository) -> None:
    job = repository.enqueue_job(
        JobCreate(job_type="embed", payload={"inputs": ["a"]}, owner_id="user-1"),
    )

    assert job.status == JobStatus.PENDING
    assert job.payload == {"inputs": ["a"]}
    assert job.result is None
    assert job.created_at.tzinfo is not None

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to == JobStatus.PENDING


def test_get_unknown_job_returns_none(repository: JobRepository) -> None:
    assert repository.get_job(job_id="missing") is None
    assert repository.get_job_details(job_id="missing") is None


def test_claim_takes_oldest_pending_job(repository: JobRepository) -> None:
    first = repository.enqueue_job(JobCreate(job_type="embed", payload={}))
    second = repository.enqueue_job(JobCreate(job_type="embed", payload={}))

    claimed = repository.claim_next_pending_job(worker_id="worker-a")

    assert claimed is not None
    assert claimed.job_id == first.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None
    assert repository.get_job(job_id=second.job_id).status == JobStatus.PENDING


def test_claim_on_empty_queue_returns_none(repository: JobRepository) -> None:
    assert repository.claim_next_pending_job(worker_id="worker-a") is None


def test_terminal_transitions_are_guarded(repository: JobRepository) -> None:
    job = repository.enqueue_job(JobCreate(job_type="embed", payload={}))

    assert repository.complete_job(job_id=job.job_id, result={"x": 1}) is False
    assert repository.update_partial_result(job_id=job.job_id, text="early") is False

    repository.claim_next_pending_job(worker_id="worker-a")
    assert repository.update_partial_result(job_id=job.job_id, text="par") is True
    assert repository.complete_job(job_id=job.job_id, result={"x": 1}) is True
    assert repository.complete_job(job_id=job.job_id, result={"x": 2}) is False
    assert repository.fail_job(job_id=job.job_id, error="late") is False
    assert repository.update_partial_result(job_id=job.job_id, text="late") is False

    stored = repository.get_job(job_id=job.job_id)
    assert stored.status == JobStatus.SUCCEEDED
    assert repository.get_job(job_id=job.job_id).result == stored.result
    assert stored.result == {"x": 1}
    assert stored.partial_result == "par"
    assert stored.error is None
    assert stored.completed_at is not None

    details = repository.get_job_details(job_id=job.job_id)
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "succeeded"]


def test_fail_job_records_error(repository: JobRepository) -> None:
    job = repository.enqueue_job(JobCreate(job_type="grade", payload={}))
    repository.claim_next_pending_job(worker_id="worker-a")

    assert repository.fail_job(job_id=job.job_id, error="question.prompt is required") is True

    stored = repository.get_job(job_id=job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "question.prompt is required"
    assert stored.result is None


def test_non_serializable_result_leaves_job_running(repository: JobRepository) -> None:
    job = repository.enqueue_job(JobCreate(job_type="embed", payload={}))
    repository.claim_next_pending_job(worker_id="worker-a")

    with pytest.raises(TypeError):
        repository.complete_job(job_id=job.job_id, result={"value": object()})
    assert repository.get_job(job_id=job.job_id).status == JobStatus.RUNNING


def test_concurrent_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    job = setup.enqueue_job(JobCreate(job_type="embed", payload={"inputs": ["a"]}))
    setup.close()

    contenders = 4
    barrier = threading.Barrier(contenders)
    results: list[str | None] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def claim(worker_id: str) -> None:
        repo = JobRepository(db_path)
        try:
            barrier.wait(timeout=5)
            claimed = repo.claim_next_pending_job(worker_id=worker_id)
            with lock:
                results.append(claimed.job_id if claimed is not None else None)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repo.close()

    threads = [
        threading.Thread(target=claim, args=(f"worker-{index}",)) for index in range(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert sorted(results, key=lambda item: item or "") == [None] * (contenders - 1) + [job.job_id]

    verify = JobRepository(db_path)
    try:
        details = verify.get_job_details(job_id=job.job_id)
    finally:
        verify.close()
    assert details.job.status == JobStatus.RUNNING
    assert [event.event_type for event in details.events].count("claimed") == 1


def test_fail_stale_running_jobs_only_touches_old_claims(repository: JobRepository) -> None:
    old = repository.enqueue_job(JobCreate(job_type="plan", payload={}))
    fresh = repository.enqueue_job(JobCreate(job_type="plan", payload={}))
    pending = repository.enqueue_job(JobCreate(job_type="plan", payload={}))
    repository.claim_next_pending_job(worker_id="worker-a")
    repository.claim_next_pending_job(worker_id="worker-a")
    with Session(repository.engine) as session:
        session.exec(  # type: ignore[call-overload]
            sa_update(Job)
            .where(col(Job.job_id) == old.job_id)
            .values(started_at=to_db_datetime(datetime.now(tz=UTC) - timedelta(hours=2))),
        )
        session.commit()

    failed = repository.fail_stale_running_jobs(stale_after=timedelta(minutes=30))

    assert failed == [old.job_id]
    stale = repository.get_job(job_id=old.job_id)
    assert stale.status == JobStatus.FAILED
    assert "1800s" in stale.error
    assert repository.get_job(job_id=fresh.job_id).status == JobStatus.RUNNING
    assert repository.get_job(job_id=pending.job_id).status == JobStatus.PENDING
    details = repository.get_job_details(job_id=old.job_id)
    assert details.events[-1].event_type == "stale_failed"


def test_list_jobs_filters_by_status_and_owner(repository: JobRepository) -> None:
    mine = repository.enqueue_job(JobCreate(job_type="chat", payload={}, owner_id="me"))
    repository.enqueue_job(JobCreate(job_type="chat", payload={}, owner_id="you"))
    repository.claim_next_pending_job(worker_id="worker-a")

    assert [job.job_id for job in repository.list_jobs(owner_id="me")] == [mine.job_id]
    assert [job.job_id for job in repository.list_jobs(status=JobStatus.RUNNING)] == [mine.job_id]
    assert len(repository.list_jobs(limit=1)) == 1
    assert len(repository.list_jobs()) == 2


def test_usage_records_round_trip_and_aggregate(repository: JobRepository) -> None:
    _enqueue_jobs(repository, "job-1", "job-2", "job-3")
    stored = repository.add_usage_record(_usage(metadata={"chunks": 3}))
    repository.add_usage_record(
        _usage(job_id="job-2", feature="transcribe_audio", model="whisper-1", prompt_tokens=None,
               completion_tokens=None, total_tokens=None, cost_usd=0.012,
               audio_duration_seconds=120.0),
    )
    repository.add_usage_record(_usage(job_id="job-3", owner_id=None, cost_usd=0.001))

    assert stored.metadata == {"chunks": 3}
    assert [record.feature for record in repository.list_usage_records(job_id="job-1")] == [
        "study_plan",
    ]

    since = datetime.now(tz=UTC) - timedelta(hours=1)
    by_feature = repository.summarize_usage(since=since, group_by="feature")
    assert [(row.group_key, row.records) for row in by_feature] == [
        ("transcribe_audio", 1),
        ("study_plan", 2),
    ]
    assert by_feature[0].audio_duration_seconds == 120.0
    assert by_feature[1].total_tokens == 300
    assert by_feature[1].cost_usd == pytest.approx(0.004)

    by_owner = repository.summarize_usage(since=since, group_by="owner")
    assert {row.group_key for row in by_owner} == {"user-1", "-"}

    assert repository.summarize_usage(since=datetime.now(tz=UTC) + timedelta(hours=1)) == []


def test_summarize_usage_rejects_unknown_grouping(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="Unsupported usage grouping"):
        repository.summarize_usage(since=datetime.now(tz=UTC), group_by="weekday")


def test_usage_rows_are_append_only(repository: JobRepository) -> None:
    _enqueue_jobs(repository, "job-1")
    repository.add_usage_record(_usage())
    repository.add_usage_record(_usage())

    with Session(repository.engine) as session:
        rows = session.exec(select(AiUsageRecord)).all()
    assert len(rows) == 2


def test_usage_rows_reference_existing_jobs(repository: JobRepository) -> None:
    with pytest.raises(IntegrityError):
        repository.add_usage_record(_usage(job_id="missing-job"))

    unattributed = repository.add_usage_record(_usage(job_id=None))
    assert unattributed.job_id is None
