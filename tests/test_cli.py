from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from conftest import ECHO_AGENT_COMMAND_TEMPLATE
from task_relay.engine.models import TaskStatus
from task_relay.engine.repository import TaskStore
from task_relay.main import task_relay

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]


@pytest.fixture(autouse=True)
def _echo_agent_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASK_RELAY_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("TASK_RELAY_WORKDIR_ROOT", str(tmp_path / "workdir"))
    monkeypatch.setenv("TASK_RELAY_WORKER_COUNT", "1")
    monkeypatch.setenv("TASK_RELAY_POLL_INTERVAL_SECONDS", "0.01")


def _submit(runner: CliRunner, db_path: Path, text: str, sender: str = "alice") -> str:
    result = runner.invoke(
        task_relay,
        ["submit", "--db-path", str(db_path), "--sender", sender, text],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_submit_worker_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    task_id = _submit(runner, db_path, "Write the weekly status report")

    worker = runner.invoke(task_relay, ["worker", "--db-path", str(db_path), "--loop"])
    assert worker.exit_code == 0, worker.output
    assert "Recovered: 1" in worker.output
    assert "processed=2 completed=1" in worker.output
    assert "[tool_write_verified]" in worker.output
    assert "[completed]" in worker.output

    inspect = runner.invoke(
        task_relay,
        ["inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspect.exit_code == 0
    assert "Status: completed" in inspect.output
    assert "Artifacts: 1" in inspect.output
    assert "report.txt verified=True" in inspect.output

    tasks = runner.invoke(
        task_relay,
        ["tasks", "--db-path", str(db_path), "--status", "completed"],
    )
    assert tasks.exit_code == 0
    assert task_id in tasks.output


def test_worker_once_runs_a_single_step(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    task_id = _submit(runner, db_path, "Write the weekly status report")

    worker = runner.invoke(task_relay, ["worker", "--db-path", str(db_path), "--once"])

    assert worker.exit_code == 0, worker.output
    assert "processed=1" in worker.output
    assert "continued=1" in worker.output
    store = TaskStore(db_path)
    try:
        assert store.get(task_id).status is TaskStatus.RUNNING
    finally:
        store.close()


def test_cancel_resume_and_recover(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    queued_id = _submit(runner, db_path, "Queued job", sender="bob")
    store = TaskStore(db_path)
    try:
        blocked = store.insert(
            channel="cli",
            sender_key="carol",
            reply_target="carol",
            original_request="Deploy to production",
        )
        store.update_status(blocked.task_id, TaskStatus.RUNNING)
        store.update_status(blocked.task_id, TaskStatus.BLOCKED, payload={"reason": "approval"})
    finally:
        store.close()

    recover = runner.invoke(task_relay, ["recover", "--db-path", str(db_path)])
    assert recover.exit_code == 0
    assert "Recoverable: 1" in recover.output
    assert "Blocked (left as is): 1" in recover.output

    cancel = runner.invoke(
        task_relay,
        ["cancel", "--db-path", str(db_path), "--task-id", queued_id, "--reason", "duplicate"],
    )
    assert cancel.exit_code == 0
    assert f"Task cancelled: {queued_id}" in cancel.output
    assert "[cancelled]" in cancel.output

    again = runner.invoke(
        task_relay,
        ["cancel", "--db-path", str(db_path), "--task-id", queued_id],
    )
    assert "Task cannot be cancelled" in again.output

    resume = runner.invoke(
        task_relay,
        ["resume", "--db-path", str(db_path), "--task-id", blocked.task_id],
    )
    assert resume.exit_code == 0
    assert f"Task resumed: {blocked.task_id}" in resume.output

    missing = runner.invoke(
        task_relay,
        ["inspect", "--db-path", str(db_path), "--task-id", "no-such-task"],
    )
    assert "Task not found: no-such-task" in missing.output
