"""Outbound milestone notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from task_relay.engine.models import MilestoneKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Milestone:
    """One externally visible lifecycle notification."""

    task_id: str
    reply_target: str
    kind: MilestoneKind
    text: str | None = None


class MilestoneSink(Protocol):
    def emit(self, milestone: Milestone) -> None:
        """Deliver a milestone to the requester."""


class LoggingMilestoneSink:
    """Default sink: milestones go to the application log."""

    def emit(self, milestone: Milestone) -> None:
        logger.info(
            "Milestone %s for task %s -> %s%s",
            milestone.kind.value,
            milestone.task_id,
            milestone.reply_target,
            f": {milestone.text}" if milestone.text else "",
        )


class CallbackMilestoneSink:
    """Adapt a plain callable to the sink protocol."""

    def __init__(self, callback: Callable[[Milestone], None]) -> None:
        self._callback = callback

    def emit(self, milestone: Milestone) -> None:
        self._callback(milestone)
