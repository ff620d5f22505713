from __future__ import annotations

from pathlib import Path

import allure
from sqlalchemy import inspect, text

from course_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Durable Queue"),
    allure.feature("Schema Migrations"),
]

EXPECTED_TABLES = {
    "analytics_records",
    "error_records",
    "generation_jobs",
    "generation_task_events",
    "generation_tasks",
    "job_logs",
    "queue_entries",
    "user_actions",
}


def test_init_schema_applies_head_and_is_repeatable(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "schema.db")
    try:
        repository.init_schema()
        repository.init_schema()

        with repository.engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()
            foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar()
        tables = set(inspect(repository.engine).get_table_names())
        queue_indexes = {
            index["name"] for index in inspect(repository.engine).get_indexes("queue_entries")
        }
    finally:
        repository.close()

    assert version == "20261019_0001"
    assert EXPECTED_TABLES <= tables
    assert "uq_queue_entries_active_task" in queue_indexes
    assert journal_mode == "wal"
    assert foreign_keys == 1
