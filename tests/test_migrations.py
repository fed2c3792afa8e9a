from pathlib import Path

import allure
from sqlalchemy import inspect

from imagegen.jobs.repository import JobRepository
from imagegen.storage.alembic_runner import head_revision, schema_revision

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    assert head_revision() == "20261019_0002"
    assert schema_revision(tmp_path / "migrations.db") == "20261019_0002"

    inspector = inspect(repository.engine)
    assert {"generation_jobs", "generations", "work_units"} <= set(inspector.get_table_names())
    generation_indexes = {index["name"]: index for index in inspector.get_indexes("generations")}
    assert generation_indexes["uq_generations_job_id"]["unique"]
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    assert schema_revision(db_path) is None
    for _ in range(2):
        repository = JobRepository(db_path)
        repository.init_schema()
        repository.close()
    assert schema_revision(db_path) == head_revision()
