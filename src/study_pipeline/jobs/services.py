"""Use-case services for submitters and polling clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from study_pipeline.jobs.dispatcher import parse_job_type
from study_pipeline.jobs.models import JobCreate, JobDetails, JobInputError, JobView
from study_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitJob:
    """High-level command to enqueue one job."""

    job_type: str
    payload: Any
    owner_id: str | None = None


class JobService:
    """Validates submissions against the closed job-type set before insert."""

    def __init__(self, *, repository: JobRepository) -> None:
        self.repository = repository

    def submit(self, command: SubmitJob) -> JobView:
        """Insert a pending job; the returned id is immediately pollable."""

        job_type = parse_job_type(command.job_type.strip())
        if command.payload is None:
            raise JobInputError("payload is required")
        job = self.repository.enqueue_job(
            JobCreate(job_type=job_type.value, payload=command.payload, owner_id=command.owner_id),
        )
        logger.info("Enqueued %s job %s", job.job_type, job.job_id)
        return job

    def get_status(self, job_id: str) -> JobView | None:
        return self.repository.get_job(job_id=job_id)

    def get_details(self, job_id: str) -> JobDetails | None:
        return self.repository.get_job_details(job_id=job_id)
