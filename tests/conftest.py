"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from task_relay.engine.backend.base import ExecutionRequest, ExecutionResult
from task_relay.engine.engine import TaskEngine
from task_relay.engine.milestones import CallbackMilestoneSink, Milestone
from task_relay.engine.repository import TaskStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m task_relay.engine.backend.echo_agent "
    "--prompt-file {prompt_file} --workdir {workdir}"
)


class ScriptedExecutor:
    """Tool executor that replays one scripted item per round.

    Items are ``ExecutionResult`` values, exceptions to raise, or callables
    taking the request and returning either of those.
    """

    def __init__(self) -> None:
        self.script: list[object] = []
        self.requests: list[ExecutionRequest] = []

    def push(self, *items: object) -> None:
        self.script.extend(items)

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unexpected round for task {request.task_id}")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, BaseException):
            item = item(request)
        if isinstance(item, BaseException):
            raise item
        assert isinstance(item, ExecutionResult)
        return item


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db")
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture()
def milestones() -> list[Milestone]:
    return []


@pytest.fixture()
def engine_factory(
    store: TaskStore,
    executor: ScriptedExecutor,
    milestones: list[Milestone],
) -> Callable[..., TaskEngine]:
    """Build engines with zero backoff so retries are immediately ready."""

    def _build(**overrides: object) -> TaskEngine:
        options: dict[str, object] = {
            "retry_base_seconds": 0.0,
            "retry_max_seconds": 0.0,
            "sender_busy_delay_seconds": 0.0,
            "poll_interval_seconds": 0.01,
        }
        options.update(overrides)
        return TaskEngine(
            store=store,
            executor=executor,
            milestone_sink=CallbackMilestoneSink(milestones.append),
            **options,  # type: ignore[arg-type]
        )

    return _build
