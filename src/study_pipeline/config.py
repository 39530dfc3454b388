"""Runtime configuration for the job queue, provider and handlers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_DB_PATH = ".study_pipeline.db"


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class ProviderSettings:
    """Completion provider connection and pricing settings."""

    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-5.1"
    embed_model: str = "text-embedding-3-small"
    transcription_model: str = "whisper-1"
    request_timeout_seconds: float = 120.0
    max_retries: int = 2
    embed_batch_size: int = 12
    pricing_overrides: str = ""
    transcription_price_per_minute: float = 0.006


@dataclass(slots=True)
class PipelineSettings:
    """Handler-level limits and knobs."""

    plan_chunk_token_budget: int = 12_000
    plan_chunk_concurrency: int = 3
    exam_context_token_limit: int = 6_000
    chat_context_token_limit: int = 500_000
    partial_result_interval_ms: int = 150
    max_error_chars: int = 500
    practice_exam_max_questions: int = 20


@dataclass(slots=True)
class WorkerSettings:
    """Polling worker settings."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_seconds: float = 2.0
    detach_plan_jobs: bool = True
    stale_running_after_seconds: int = 0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    sqlite_busy_timeout_ms: int = 5_000
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("STUDY_PIPELINE_DB_PATH", DEFAULT_DB_PATH)),
            sqlite_busy_timeout_ms=_env_int("STUDY_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            provider=ProviderSettings(
                api_key=(
                    os.getenv("STUDY_PIPELINE_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY") or None
                ),
                base_url=os.getenv("STUDY_PIPELINE_OPENAI_BASE_URL", "https://api.openai.com/v1"),
                chat_model=os.getenv("STUDY_PIPELINE_CHAT_MODEL", "gpt-5.1"),
                embed_model=os.getenv("STUDY_PIPELINE_EMBED_MODEL", "text-embedding-3-small"),
                transcription_model=os.getenv("STUDY_PIPELINE_TRANSCRIPTION_MODEL", "whisper-1"),
                request_timeout_seconds=_env_float(
                    "STUDY_PIPELINE_REQUEST_TIMEOUT_SECONDS",
                    120.0,
                ),
                max_retries=_env_int("STUDY_PIPELINE_MAX_RETRIES", 2),
                embed_batch_size=_env_int("STUDY_PIPELINE_EMBED_BATCH_SIZE", 12),
                pricing_overrides=os.getenv("STUDY_PIPELINE_PRICING", ""),
                transcription_price_per_minute=_env_float(
                    "STUDY_PIPELINE_TRANSCRIPTION_PRICE_PER_MINUTE",
                    0.006,
                ),
            ),
            pipeline=PipelineSettings(
                plan_chunk_token_budget=_env_int("STUDY_PIPELINE_PLAN_CHUNK_TOKEN_BUDGET", 12_000),
                plan_chunk_concurrency=_env_int("STUDY_PIPELINE_PLAN_CHUNK_CONCURRENCY", 3),
                exam_context_token_limit=_env_int("STUDY_PIPELINE_EXAM_CONTEXT_TOKEN_LIMIT", 6_000),
                chat_context_token_limit=_env_int(
                    "STUDY_PIPELINE_CHAT_CONTEXT_TOKEN_LIMIT",
                    500_000,
                ),
                partial_result_interval_ms=_env_int(
                    "STUDY_PIPELINE_PARTIAL_RESULT_INTERVAL_MS",
                    150,
                ),
                max_error_chars=_env_int("STUDY_PIPELINE_MAX_ERROR_CHARS", 500),
                practice_exam_max_questions=_env_int(
                    "STUDY_PIPELINE_PRACTICE_EXAM_MAX_QUESTIONS",
                    20,
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("STUDY_PIPELINE_WORKER_ID", "").strip() or default_worker_id(),
                poll_interval_seconds=_env_float("STUDY_PIPELINE_POLL_INTERVAL_SECONDS", 2.0),
                detach_plan_jobs=_env_bool("STUDY_PIPELINE_DETACH_PLAN_JOBS", default=True),
                stale_running_after_seconds=_env_int(
                    "STUDY_PIPELINE_STALE_RUNNING_AFTER_SECONDS",
                    0,
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error before a worker claims anything."""

        if not self.provider.api_key:
            raise ValueError(
                "A completion provider API key is required. "
                "Set STUDY_PIPELINE_OPENAI_API_KEY or OPENAI_API_KEY.",
            )
        parsed = urlparse(self.provider.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid STUDY_PIPELINE_OPENAI_BASE_URL: {self.provider.base_url!r}. "
                "Expected an absolute http(s) URL.",
            )
        positive = {
            "STUDY_PIPELINE_PLAN_CHUNK_TOKEN_BUDGET": self.pipeline.plan_chunk_token_budget,
            "STUDY_PIPELINE_PLAN_CHUNK_CONCURRENCY": self.pipeline.plan_chunk_concurrency,
            "STUDY_PIPELINE_EXAM_CONTEXT_TOKEN_LIMIT": self.pipeline.exam_context_token_limit,
            "STUDY_PIPELINE_CHAT_CONTEXT_TOKEN_LIMIT": self.pipeline.chat_context_token_limit,
            "STUDY_PIPELINE_MAX_ERROR_CHARS": self.pipeline.max_error_chars,
            "STUDY_PIPELINE_PRACTICE_EXAM_MAX_QUESTIONS": self.pipeline.practice_exam_max_questions,
            "STUDY_PIPELINE_EMBED_BATCH_SIZE": self.provider.embed_batch_size,
            "STUDY_PIPELINE_REQUEST_TIMEOUT_SECONDS": self.provider.request_timeout_seconds,
            "STUDY_PIPELINE_POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.pipeline.partial_result_interval_ms < 0:
            raise ValueError("STUDY_PIPELINE_PARTIAL_RESULT_INTERVAL_MS must be >= 0.")
        if self.provider.max_retries < 0:
            raise ValueError("STUDY_PIPELINE_MAX_RETRIES must be >= 0.")
        if self.provider.transcription_price_per_minute < 0:
            raise ValueError("STUDY_PIPELINE_TRANSCRIPTION_PRICE_PER_MINUTE must be >= 0.")
        if self.worker.stale_running_after_seconds < 0:
            raise ValueError("STUDY_PIPELINE_STALE_RUNNING_AFTER_SECONDS must be >= 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
