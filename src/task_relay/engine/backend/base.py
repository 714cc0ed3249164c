"""Tool-execution collaborator interface consumed by the task engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from task_relay.engine.models import ExecutionEvidence


@dataclass(slots=True)
class ExecutionRequest:
    """Running context of one continuation round."""

    task_id: str
    channel: str
    sender_key: str
    original_request: str
    last_response: str | None
    round_number: int

    @property
    def is_continuation(self) -> bool:
        return self.round_number > 1

    def render_prompt(self) -> str:
        """Prompt text for this round: the request plus the previous answer, if any."""

        if not self.is_continuation or not self.last_response:
            return self.original_request
        return (
            f"{self.original_request}\n"
            f"\n"
            f"Your previous response was:\n"
            f"{self.last_response}\n"
            f"\n"
            f"Continue the task. If you claim a file was written, read it back to verify.\n"
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one successful collaborator round-trip."""

    response_text: str
    evidence: ExecutionEvidence
    blocked_reason: str | None = None


class ToolExecutor(Protocol):
    """Protocol implemented by tool-execution collaborators."""

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one round; raise ``ProviderTransportError`` for transport failures."""
