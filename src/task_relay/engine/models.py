"""Domain models for the task lifecycle state machine and engine decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: str) -> TaskStatus | None:
        """Parse a stored or user-supplied status string, None for unknown values."""

        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)
RECOVERABLE_STATUSES = (TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.BLOCKED)

_LEGAL_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.QUEUED, TaskStatus.RUNNING),
        (TaskStatus.QUEUED, TaskStatus.CANCELLED),
        (TaskStatus.RUNNING, TaskStatus.BLOCKED),
        (TaskStatus.RUNNING, TaskStatus.COMPLETED),
        (TaskStatus.RUNNING, TaskStatus.FAILED),
        (TaskStatus.RUNNING, TaskStatus.CANCELLED),
        (TaskStatus.BLOCKED, TaskStatus.RUNNING),
        (TaskStatus.BLOCKED, TaskStatus.CANCELLED),
    },
)


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Return whether the lifecycle allows moving from one status to another."""

    return (from_status, to_status) in _LEGAL_TRANSITIONS


class MilestoneKind(str, Enum):
    """Lifecycle events notified to the requester; nothing else is sent outward."""

    ACCEPTED = "accepted"
    STARTED = "started"
    TOOL_WRITE_VERIFIED = "tool_write_verified"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Reason strings recorded on terminal failures."""

    PROVIDER_RETRIES_EXHAUSTED = "provider_retries_exhausted"
    STALLED_LOOP = "stalled_loop"
    EXECUTION_ERROR = "execution_error"
    MAX_CONTINUATION_ROUNDS_EXHAUSTED = "max_continuation_rounds_exhausted"


class FailureClass(str, Enum):
    """Retry class of a collaborator failure."""

    TRANSPORT_TRANSIENT = "transport_transient"
    ACCESS_OR_AUTH = "access_or_auth"
    NON_RETRYABLE = "non_retryable"


class StepOutcome(str, Enum):
    """What one engine step did with its task."""

    CONTINUED = "continued"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    STORAGE_FAULT = "storage_fault"
    STEP_ERROR = "step_error"


@dataclass(slots=True)
class TaskRunView:
    """Readable task run row."""

    task_id: str
    channel: str
    sender_key: str
    reply_target: str
    status: TaskStatus
    original_request: str
    last_response: str | None
    attempt_count: int
    provider_retry_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskArtifactView:
    """Stored artifact evidence row."""

    artifact_id: int
    task_id: str
    path: str
    verified: bool
    checksum: str | None
    verified_at: datetime | None


@dataclass(slots=True)
class TaskDetails:
    """Task row with its event stream and artifacts."""

    task: TaskRunView
    events: list[TaskEventView]
    artifacts: list[TaskArtifactView]


@dataclass(frozen=True, slots=True)
class VerifiedArtifact:
    """A path whose content was read back after a write and found non-empty."""

    path: str
    checksum: str
    size_bytes: int


@dataclass(frozen=True, slots=True)
class ExecutionEvidence:
    """Tool-execution evidence gathered for one continuation round."""

    saw_write_success: bool = False
    saw_post_write_read: bool = False
    verified_artifacts: tuple[VerifiedArtifact, ...] = ()
    tool_calls: int = 0

    @property
    def write_verified(self) -> bool:
        return self.saw_write_success and self.saw_post_write_read and bool(
            self.verified_artifacts,
        )


@dataclass(frozen=True, slots=True)
class Complete:
    """Task output may be finalized."""


@dataclass(frozen=True, slots=True)
class NotComplete:
    """Task keeps running; the reason is recorded on the continue event."""

    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    """Evaluator-declared terminal failure."""

    reason: str


CompletionDecision = Complete | NotComplete | Failed


@dataclass(frozen=True, slots=True)
class RoundRecord:
    """Progress signals of one continuation round."""

    executed_new_tool: bool
    text_changed: bool

    @property
    def made_progress(self) -> bool:
        return self.executed_new_tool or self.text_changed


@dataclass(frozen=True, slots=True)
class Continue:
    """Detector found progress within the window."""


@dataclass(frozen=True, slots=True)
class Stalled:
    """Detector found K consecutive rounds without progress."""

    reason: str = FailureReason.STALLED_LOOP.value


StallDecision = Continue | Stalled
