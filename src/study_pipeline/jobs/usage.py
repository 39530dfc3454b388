"""Best-effort persistence of per-job usage and cost facts."""

from __future__ import annotations

import logging

from study_pipeline.jobs.models import JobView, UsageRecordView, UsageRecordWrite, UsageReport
from study_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


def build_usage_record(*, job: JobView, usage: UsageReport) -> UsageRecordWrite:
    tokens = usage.token_usage
    cost = usage.cost_usd
    if cost is None:
        cost = round((usage.input_cost_usd or 0.0) + (usage.output_cost_usd or 0.0), 6)
    return UsageRecordWrite(
        job_id=job.job_id,
        owner_id=job.owner_id,
        feature=usage.feature,
        model=usage.model,
        prompt_tokens=tokens.prompt_tokens if tokens is not None else None,
        completion_tokens=tokens.completion_tokens if tokens is not None else None,
        total_tokens=tokens.total_tokens if tokens is not None else None,
        input_cost_usd=usage.input_cost_usd,
        output_cost_usd=usage.output_cost_usd,
        cost_usd=max(0.0, cost),
        audio_duration_seconds=usage.audio_duration_seconds,
        metadata=dict(usage.metadata),
    )


class UsageRecorder:
    """Writes one immutable usage record per finished handler run.

    Failures are logged and swallowed: accounting never changes a job's outcome.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def record(self, *, job: JobView, usage: UsageReport) -> UsageRecordView | None:
        try:
            stored = self.repository.add_usage_record(build_usage_record(job=job, usage=usage))
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to record usage for job %s (feature=%s)",
                job.job_id,
                usage.feature,
                exc_info=True,
            )
            return None
        logger.debug(
            "Recorded usage for job %s: feature=%s model=%s cost=%.6f",
            job.job_id,
            stored.feature,
            stored.model,
            stored.cost_usd,
        )
        return stored
