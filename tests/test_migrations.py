from pathlib import Path

import allure
from sqlalchemy import inspect, text

from citemind.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    try:
        with repository.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            ).scalar_one()
        tables = set(inspect(repository.engine).get_table_names())
    finally:
        repository.close()

    assert version == "20261018_0001"
    assert {"events", "cm_jobs", "agent_runs", "agent_steps", "tool_artifacts"} <= tables


def test_schema_upgrade_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = OrchestratorRepository(db_path)
    first.init_schema()
    first.close()

    second = OrchestratorRepository(db_path)
    second.init_schema()
    try:
        indexes = {index["name"] for index in inspect(second.engine).get_indexes("cm_jobs")}
    finally:
        second.close()

    assert "idx_cm_jobs_queue" in indexes
