"""Tool-execution collaborator implementations."""

from task_relay.engine.backend.base import ExecutionRequest, ExecutionResult, ToolExecutor
from task_relay.engine.backend.cli_backend import CommandToolExecutor

__all__ = [
    "CommandToolExecutor",
    "ExecutionRequest",
    "ExecutionResult",
    "ToolExecutor",
]
