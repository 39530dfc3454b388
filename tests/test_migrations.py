from __future__ import annotations

from pathlib import Path

import allure

from study_pipeline.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    try:
        repository.init_schema()
        repository.init_schema()

        with repository.engine.connect() as connection:
            version = connection.exec_driver_sql(
                "SELECT version_num FROM alembic_version",
            ).scalar_one()
            tables = {
                row[0]
                for row in connection.exec_driver_sql(
                    "SELECT name FROM sqlite_master WHERE type = 'table'",
                )
            }
            indexes = {
                row[0]
                for row in connection.exec_driver_sql(
                    "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'jobs'",
                )
            }
    finally:
        repository.close()

    assert version == "20261019_0002"
    assert {"jobs", "job_events", "ai_usage_records"} <= tables
    assert "idx_jobs_status_created_at" in indexes
