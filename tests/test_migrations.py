import sqlite3
from pathlib import Path

import allure

from coursegen.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    assert repository.get(job_id="missing") is None
    repository.close()

    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    try:
        row = connection.execute("SELECT version_num FROM alembic_version LIMIT 1").fetchone()
        assert row is not None
        assert str(row["version_num"]) == "20261016_0001"

        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name != 'alembic_version'
            ORDER BY name
            """
        ).fetchall()
        assert [str(item["name"]) for item in tables] == [
            "course_outlines",
            "generation_job_events",
            "generation_jobs",
            "knowledge_chunks",
            "lesson_contents",
            "notifications",
            "outline_lessons",
            "pending_registrations",
            "provisioned_tenants",
            "queue_tasks",
        ]

        journal_mode = connection.execute("PRAGMA journal_mode").fetchone()
        assert str(journal_mode[0]).lower() == "wal"
    finally:
        connection.close()
