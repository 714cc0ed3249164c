"""Stalled-loop detection over recent continuation rounds."""

from __future__ import annotations

import difflib
from collections.abc import Sequence
from dataclasses import dataclass

from task_relay.engine.models import Continue, RoundRecord, StallDecision, Stalled

TEXT_SIMILARITY_THRESHOLD = 0.9


@dataclass(frozen=True, slots=True)
class StalledLoopDetector:
    """Declare a stall after ``threshold`` consecutive rounds without progress."""

    threshold: int = 3

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("Stall threshold must be >= 1.")

    @property
    def window_size(self) -> int:
        return self.threshold

    def evaluate(self, rounds: Sequence[RoundRecord]) -> StallDecision:
        if len(rounds) < self.threshold:
            return Continue()
        recent = rounds[-self.threshold :]
        if any(record.made_progress for record in recent):
            return Continue()
        return Stalled()


def text_materially_differs(previous: str | None, current: str) -> bool:
    """Whether ``current`` says something new compared to ``previous``."""

    if previous is None:
        return bool(_normalize(current))
    left = _normalize(previous)
    right = _normalize(current)
    if left == right:
        return False
    if not left or not right:
        return True
    ratio = difflib.SequenceMatcher(None, left, right).ratio()
    return ratio < TEXT_SIMILARITY_THRESHOLD


def _normalize(text: str) -> str:
    return " ".join(text.split()).lower()
