"""Error taxonomy shared by the task store and the engine."""

from __future__ import annotations

from task_relay.engine.models import TaskStatus


class TaskRelayError(RuntimeError):
    """Base class for task engine errors."""


class InvalidTransition(TaskRelayError):
    """Attempted status move is not allowed by the lifecycle."""

    def __init__(
        self,
        task_id: str,
        from_status: TaskStatus | None,
        to_status: TaskStatus,
        *,
        detail: str | None = None,
    ) -> None:
        origin = from_status.value if from_status is not None else "-"
        message = f"Invalid transition for task {task_id}: {origin} -> {to_status.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class Conflict(TaskRelayError):
    """Task identifier already exists."""


class NotFound(TaskRelayError):
    """Lookup of an unknown task."""


class StorageError(TaskRelayError):
    """Durable storage I/O failure; the current step is aborted."""


class ProviderTransportError(TaskRelayError):
    """The tool-execution collaborator could not reach its provider."""


class ExecutionError(TaskRelayError):
    """The tool-execution collaborator failed for a non-transport reason."""


class StalledLoop(TaskRelayError):
    """Task made no progress for the configured number of rounds."""
