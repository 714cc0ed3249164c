"""CLI entrypoint for task-relay."""

import logging
from pathlib import Path

import rich_click as click

from task_relay import __version__
from task_relay.engine.controllers import (
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    RecoverCommand,
    SubmitTaskCommand,
    TaskRelayCliController,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskRelayCliController()
_STATUS_CHOICES = ["queued", "running", "blocked", "completed", "failed", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="task-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine diagnostics.",
)
def task_relay(log_level: str) -> None:
    """Autonomous task continuation with **claim-evidence** completion."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_relay.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--channel", default="cli", show_default=True, help="Inbound channel name.")
@click.option("--sender", "sender_key", required=True, help="Sender identity key.")
@click.option(
    "--reply-target",
    default=None,
    help="Where milestones are delivered (defaults to the sender).",
)
@click.argument("request_text")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    channel: str,
    sender_key: str,
    reply_target: str | None,
    request_text: str,
) -> None:
    """Accept a new task and queue its first step."""

    _emit_lines(
        CONTROLLER.submit(
            SubmitTaskCommand(
                db_path=db_path,
                channel=channel,
                sender_key=sender_key,
                reply_target=reply_target or sender_key,
                request_text=request_text,
            ),
        ),
    )


@task_relay.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one step or loop until the queue is drained.",
)
@click.option(
    "--max-steps",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed steps in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_steps: int | None,
    max_idle_polls: int,
) -> None:
    """Recover pending tasks and run continuation steps."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_steps=max_steps,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@task_relay.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def recover(db_path: Path | None) -> None:
    """Record restart recovery for queued, running and blocked tasks."""

    _emit_lines(CONTROLLER.recover(RecoverCommand(db_path=db_path)))


@task_relay.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks."""

    _emit_lines(
        CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@task_relay.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its events and artifacts."""

    _emit_lines(
        CONTROLLER.inspect_task(
            InspectTaskCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@task_relay.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--reason", default=None, help="Optional reason sent with the acknowledgment.")
def cancel(db_path: Path | None, task_id: str, reason: str | None) -> None:
    """Cancel a queued, running or blocked task."""

    _emit_lines(
        CONTROLLER.cancel_task(
            MutateTaskCommand(
                db_path=db_path,
                task_id=task_id,
                reason=reason,
            ),
        ),
    )


@task_relay.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def resume(db_path: Path | None, task_id: str) -> None:
    """Move a blocked task back to running."""

    _emit_lines(
        CONTROLLER.resume_task(
            MutateTaskCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_relay()
