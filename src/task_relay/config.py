"""Runtime configuration for the task engine, worker and agent backend."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m task_relay.engine.backend.echo_agent "
    "--prompt-file {prompt_file} --workdir {workdir}"
)


@dataclass(slots=True)
class EngineSettings:
    """Continuation, retry and stall policy."""

    stall_threshold: int = 3
    max_provider_retries: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    sender_busy_delay_seconds: float = 1.0
    max_continuation_rounds: int = 4
    detect_progress_updates: bool = True


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_count: int = 1
    poll_interval_seconds: float = 0.5


@dataclass(slots=True)
class AgentSettings:
    """External agent command settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    timeout_seconds: int = 600
    workdir_root: Path = Path(".task_relay_workdir")
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_RELAY_DB_PATH", ".task_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                stall_threshold=int(os.getenv("TASK_RELAY_STALL_THRESHOLD", "3")),
                max_provider_retries=int(os.getenv("TASK_RELAY_MAX_PROVIDER_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("TASK_RELAY_RETRY_BASE_SECONDS", "2.0")),
                retry_max_seconds=float(os.getenv("TASK_RELAY_RETRY_MAX_SECONDS", "60.0")),
                sender_busy_delay_seconds=float(
                    os.getenv("TASK_RELAY_SENDER_BUSY_DELAY_SECONDS", "1.0"),
                ),
                max_continuation_rounds=int(
                    os.getenv("TASK_RELAY_MAX_CONTINUATION_ROUNDS", "4"),
                ),
                detect_progress_updates=_env_bool(
                    "TASK_RELAY_DETECT_PROGRESS_UPDATES",
                    default=True,
                ),
            ),
            worker=WorkerSettings(
                worker_count=int(os.getenv("TASK_RELAY_WORKER_COUNT", "1")),
                poll_interval_seconds=float(os.getenv("TASK_RELAY_POLL_INTERVAL_SECONDS", "0.5")),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "TASK_RELAY_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=int(os.getenv("TASK_RELAY_AGENT_TIMEOUT_SECONDS", "600")),
                workdir_root=Path(os.getenv("TASK_RELAY_WORKDIR_ROOT", ".task_relay_workdir")),
                transient_exit_codes=_env_int_tuple("TASK_RELAY_TRANSIENT_EXIT_CODES", "137,143"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("TASK_RELAY_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.engine.stall_threshold < 1:
            raise ValueError("TASK_RELAY_STALL_THRESHOLD must be >= 1.")
        if self.engine.max_provider_retries < 1:
            raise ValueError("TASK_RELAY_MAX_PROVIDER_RETRIES must be >= 1.")
        if self.engine.retry_base_seconds < 0 or self.engine.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.engine.sender_busy_delay_seconds < 0:
            raise ValueError("TASK_RELAY_SENDER_BUSY_DELAY_SECONDS must be >= 0.")
        if self.engine.max_continuation_rounds < 0:
            raise ValueError("TASK_RELAY_MAX_CONTINUATION_ROUNDS must be >= 0.")
        if self.worker.worker_count < 1:
            raise ValueError("TASK_RELAY_WORKER_COUNT must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASK_RELAY_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("TASK_RELAY_AGENT_TIMEOUT_SECONDS must be > 0.")
        if not self.agent.command_template.strip():
            raise ValueError("TASK_RELAY_AGENT_COMMAND_TEMPLATE must not be empty.")


def _env_int_tuple(name: str, default: str) -> tuple[int, ...]:
    raw = os.getenv(name, default)
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
