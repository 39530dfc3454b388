"""CLI entrypoint for study-pipeline."""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from study_pipeline import __version__
from study_pipeline.jobs.controllers import (
    FailStaleCommand,
    JobsCliController,
    ListJobsCommand,
    ShowJobCommand,
    SubmitJobCommand,
    UsageReportCommand,
    WorkerCommand,
)
from study_pipeline.jobs.models import JobStatus, JobType
from study_pipeline.jobs.repository import USAGE_GROUP_KEYS

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="study-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def study_pipeline(log_level: str) -> None:
    """Study pipeline job queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@study_pipeline.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([item.value for item in JobType], case_sensitive=False),
    required=True,
    help="Job type.",
)
@click.option("--payload", default=None, help="Inline JSON payload.")
@click.option(
    "--payload-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read JSON payload from file.",
)
@click.option("--owner", "owner_id", default=None, help="Optional owner id.")
def jobs_submit(
    db_path: Path | None,
    job_type: str,
    payload: str | None,
    payload_file: Path | None,
    owner_id: str | None,
) -> None:
    """Enqueue one job and print its id."""

    parsed = _load_payload(payload, payload_file)
    _emit_lines(
        _run(
            JOBS_CONTROLLER.submit,
            SubmitJobCommand(
                db_path=db_path,
                job_type=job_type,
                payload=parsed,
                owner_id=owner_id,
            ),
        ),
    )


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop the loop after this many consecutive empty polls.",
)
@click.option(
    "--background-timeout",
    "background_timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Max seconds to wait for detached plan jobs before exiting.",
)
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    background_timeout_seconds: float | None,
) -> None:
    """Run the job worker."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                background_timeout_seconds=background_timeout_seconds,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner", "owner_id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    owner_id: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status,
                owner_id=owner_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_show(db_path: Path | None, job_id: str, output_format: str) -> None:
    """Show one job with its event history."""

    _emit_lines(
        JOBS_CONTROLLER.show_job(
            ShowJobCommand(
                db_path=db_path,
                job_id=job_id,
                output_format=output_format.lower(),
            ),
        ),
    )


@jobs.command("fail-stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-seconds",
    type=int,
    required=True,
    help="Fail running jobs claimed more than this many seconds ago.",
)
def jobs_fail_stale(db_path: Path | None, older_than_seconds: int) -> None:
    """Mark stuck running jobs as failed."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.fail_stale,
            FailStaleCommand(db_path=db_path, older_than_seconds=older_than_seconds),
        ),
    )


@study_pipeline.group()
def usage() -> None:
    """AI usage and cost commands."""


@usage.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Show records of one job instead of a summary.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.option(
    "--group-by",
    type=click.Choice(list(USAGE_GROUP_KEYS), case_sensitive=False),
    default="feature",
    show_default=True,
    help="Aggregation key.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def usage_report(
    db_path: Path | None,
    job_id: str | None,
    hours: int,
    group_by: str,
    output_format: str,
) -> None:
    """Show token usage and cost."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.usage_report,
            UsageReportCommand(
                db_path=db_path,
                job_id=job_id,
                hours=hours,
                group_by=group_by.lower(),
                output_format=output_format.lower(),
            ),
        ),
    )


def _load_payload(payload: str | None, payload_file: Path | None) -> Any:
    if (payload is None) == (payload_file is None):
        raise click.UsageError("Provide exactly one of --payload or --payload-file.")
    raw = payload if payload is not None else payload_file.read_text(encoding="utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"invalid JSON: {error}", param_hint="payload") from error


def _run(action: Callable[[Any], list[str]], command: object) -> list[str]:
    try:
        return action(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    study_pipeline()
