from pathlib import Path

import allure
from sqlalchemy import inspect, text

from task_relay.engine.repository import TaskStore

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Durable Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "nested" / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261019_0001"

    inspector = inspect(store.engine)
    assert {"task_runs", "task_events", "task_artifacts"} <= set(inspector.get_table_names())
    run_indexes = {index["name"] for index in inspector.get_indexes("task_runs")}
    assert {"idx_task_runs_status", "idx_task_runs_sender_status"} <= run_indexes
    event_indexes = {index["name"] for index in inspector.get_indexes("task_events")}
    assert "idx_task_events_task_created" in event_indexes
    artifact_uniques = {
        constraint["name"] for constraint in inspector.get_unique_constraints("task_artifacts")
    }
    assert "uq_task_artifacts_task_path" in artifact_uniques
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = TaskStore(db_path)
    first.init_schema()
    task = first.insert(
        channel="cli",
        sender_key="alice",
        reply_target="alice",
        original_request="hello",
    )
    first.close()

    second = TaskStore(db_path)
    second.init_schema()

    assert second.get(task.task_id).original_request == "hello"
    second.close()
