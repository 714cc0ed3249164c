from __future__ import annotations

import allure
import pytest

from task_relay.engine.models import Continue, RoundRecord, Stalled
from task_relay.engine.stall import StalledLoopDetector, text_materially_differs

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Stalled-Loop Detection"),
]

IDLE = RoundRecord(executed_new_tool=False, text_changed=False)
TOOL = RoundRecord(executed_new_tool=True, text_changed=False)
TEXT = RoundRecord(executed_new_tool=False, text_changed=True)


@pytest.mark.parametrize("threshold", [1, 2, 3, 5])
def test_exactly_k_idle_rounds_stall(threshold: int) -> None:
    detector = StalledLoopDetector(threshold=threshold)

    assert detector.evaluate([IDLE] * threshold) == Stalled("stalled_loop")
    if threshold > 1:
        assert detector.evaluate([IDLE] * (threshold - 1)) == Continue()


@pytest.mark.parametrize("progress", [TOOL, TEXT])
def test_progress_after_k_minus_one_idle_rounds_resets(progress: RoundRecord) -> None:
    detector = StalledLoopDetector(threshold=3)
    history = [IDLE, IDLE, progress]

    assert detector.evaluate(history) == Continue()
    assert detector.evaluate([*history, IDLE, IDLE]) == Continue()
    assert detector.evaluate([*history, IDLE, IDLE, IDLE]) == Stalled()


def test_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError, match="threshold"):
        StalledLoopDetector(threshold=0)


def test_text_materially_differs_ignores_whitespace_case_and_small_edits() -> None:
    previous = "I'm checking the files in the repository now."

    assert not text_materially_differs(previous, "  i'm checking the FILES in the repository now. ")
    assert not text_materially_differs(previous, "I'm checking the files in the repository now!")
    assert text_materially_differs(previous, "Found two failing tests in parser.py.")
    assert text_materially_differs(None, "first answer")
    assert not text_materially_differs(None, "   ")
