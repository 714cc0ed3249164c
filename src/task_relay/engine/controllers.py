"""Controllers for task-relay CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from task_relay.config import Settings
from task_relay.engine.backend import CommandToolExecutor
from task_relay.engine.engine import TaskEngine
from task_relay.engine.errors import InvalidTransition, NotFound
from task_relay.engine.milestones import CallbackMilestoneSink, Milestone
from task_relay.engine.models import TaskStatus
from task_relay.engine.repository import TaskStore


@dataclass(slots=True)
class SubmitTaskCommand:
    """CLI input for task submission."""

    db_path: Path | None
    channel: str
    sender_key: str
    reply_target: str
    request_text: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_steps: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class RecoverCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for cancel/resume operations."""

    db_path: Path | None
    task_id: str
    reason: str | None = None


class TaskRelayCliController:
    """Coordinates submission, worker and inspection CLI operations."""

    def submit(self, command: SubmitTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        milestones: list[Milestone] = []
        with _store(settings) as store:
            engine = _engine(settings=settings, store=store, milestones=milestones)
            task_id = engine.accept(
                command.channel,
                command.sender_key,
                command.reply_target,
                command.request_text,
            )
            task = store.get(task_id)

        return [
            f"Task accepted: task_id={task.task_id} status={task.status.value}",
            *_milestone_lines(milestones),
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        milestones: list[Milestone] = []
        with _store(settings) as store:
            engine = _engine(settings=settings, store=store, milestones=milestones)
            recovered = engine.recover_pending()
            if command.once:
                summary = engine.run_loop(max_steps=1, max_idle_polls=1)
            else:
                extra_workers = settings.worker.worker_count - 1
                if extra_workers > 0:
                    engine.start(extra_workers)
                try:
                    summary = engine.run_loop(
                        max_steps=command.max_steps,
                        max_idle_polls=command.max_idle_polls,
                    )
                finally:
                    if extra_workers > 0:
                        engine.stop()

        return [
            f"Recovered: {len(recovered)}",
            *_milestone_lines(milestones),
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} continued={summary.continued} "
            f"retried={summary.retried} deferred={summary.deferred} "
            f"errors={summary.errors} idle_polls={summary.idle_polls}",
        ]

    def recover(self, command: RecoverCommand) -> list[str]:
        """Report what a restart would resume, without running any step."""

        settings = _settings(command.db_path)
        with _store(settings) as store:
            engine = _engine(settings=settings, store=store, milestones=[])
            recovered = engine.recover_pending()
            blocked = store.list_tasks(status=TaskStatus.BLOCKED, limit=500)

        lines = [f"Recoverable: {len(recovered)}"]
        lines.extend(f"  {task_id}" for task_id in recovered)
        lines.append(f"Blocked (left as is): {len(blocked)}")
        lines.extend(f"  {task.task_id}" for task in blocked)
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = store.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"sender={task.channel}/{task.sender_key} "
                f"rounds={task.attempt_count} provider_retries={task.provider_retry_count} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            try:
                details = store.get_task_details(command.task_id)
            except NotFound:
                return [f"Task not found: {command.task_id}"]

        task = details.task
        completed = task.completed_at.isoformat() if task.completed_at is not None else "-"
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Sender: {task.channel}/{task.sender_key}",
            f"Reply target: {task.reply_target}",
            f"Rounds: {task.attempt_count}",
            f"Provider retries: {task.provider_retry_count}",
            f"Completed at: {completed}",
            f"Request: {task.original_request}",
            f"Last response: {task.last_response or '-'}",
            f"Artifacts: {len(details.artifacts)}",
        ]
        for artifact in details.artifacts:
            lines.append(
                f"  {artifact.path} verified={artifact.verified} "
                f"checksum={artifact.checksum or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            reason = event.payload.get("reason")
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}"
                + (f" reason={reason}" if reason else ""),
            )
        return lines

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        milestones: list[Milestone] = []
        with _store(settings) as store:
            engine = _engine(settings=settings, store=store, milestones=milestones)
            try:
                engine.cancel(command.task_id, reason=command.reason)
            except NotFound:
                return [f"Task not found: {command.task_id}"]
            except InvalidTransition as error:
                return [f"Task cannot be cancelled: {error}"]
        return [f"Task cancelled: {command.task_id}", *_milestone_lines(milestones)]

    def resume_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            engine = _engine(settings=settings, store=store, milestones=[])
            try:
                engine.resume(command.task_id)
            except NotFound:
                return [f"Task not found: {command.task_id}"]
            except InvalidTransition as error:
                return [f"Task cannot be resumed: {error}"]
        return [f"Task resumed: {command.task_id}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    status = TaskStatus.parse(value)
    if status is None:
        raise ValueError(f"Unsupported task status: {value!r}")
    return status


def _engine(*, settings: Settings, store: TaskStore, milestones: list[Milestone]) -> TaskEngine:
    return TaskEngine(
        store=store,
        executor=CommandToolExecutor(
            command_template=settings.agent.command_template,
            timeout_seconds=settings.agent.timeout_seconds,
            workdir_root=settings.agent.workdir_root,
            transient_exit_codes=settings.agent.transient_exit_codes,
        ),
        milestone_sink=CallbackMilestoneSink(milestones.append),
        stall_threshold=settings.engine.stall_threshold,
        max_provider_retries=settings.engine.max_provider_retries,
        retry_base_seconds=settings.engine.retry_base_seconds,
        retry_max_seconds=settings.engine.retry_max_seconds,
        sender_busy_delay_seconds=settings.engine.sender_busy_delay_seconds,
        max_continuation_rounds=settings.engine.max_continuation_rounds,
        detect_progress_updates=settings.engine.detect_progress_updates,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
    )


def _milestone_lines(milestones: list[Milestone]) -> list[str]:
    return [
        f"  [{milestone.kind.value}] {milestone.task_id} -> {milestone.reply_target}"
        + (f": {milestone.text}" if milestone.text else "")
        for milestone in milestones
    ]


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
