"""SQLModel ORM tables for the job queue and usage ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_created_at", "status", "created_at"),)

    # Surrogate key doubles as the creation-order tie-break for equal timestamps.
    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(unique=True, index=True)
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    partial_result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    owner_id: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiUsageRecord(SQLModel, table=True):
    __tablename__ = "ai_usage_records"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ai_usage_records_owner_time", "owner_id", "created_at"),
        Index("idx_ai_usage_records_feature_time", "feature", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    owner_id: str | None = Field(default=None)
    feature: str
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    input_cost_usd: float | None = None
    output_cost_usd: float | None = None
    cost_usd: float = 0.0
    audio_duration_seconds: float | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
