from __future__ import annotations

import itertools

import allure
import pytest

from task_relay.engine.models import (
    TERMINAL_STATUSES,
    ExecutionEvidence,
    RoundRecord,
    TaskStatus,
    VerifiedArtifact,
    can_transition,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("State Machine"),
]

_LEGAL = {
    (TaskStatus.QUEUED, TaskStatus.RUNNING),
    (TaskStatus.RUNNING, TaskStatus.BLOCKED),
    (TaskStatus.BLOCKED, TaskStatus.RUNNING),
    (TaskStatus.RUNNING, TaskStatus.COMPLETED),
    (TaskStatus.RUNNING, TaskStatus.FAILED),
    (TaskStatus.QUEUED, TaskStatus.CANCELLED),
    (TaskStatus.RUNNING, TaskStatus.CANCELLED),
    (TaskStatus.BLOCKED, TaskStatus.CANCELLED),
}


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    list(itertools.product(TaskStatus, TaskStatus)),
)
def test_can_transition_matches_lifecycle_table(
    from_status: TaskStatus,
    to_status: TaskStatus,
) -> None:
    assert can_transition(from_status, to_status) is ((from_status, to_status) in _LEGAL)


def test_terminal_statuses_have_no_outgoing_transitions() -> None:
    assert {status for status in TaskStatus if status.is_terminal} == set(TERMINAL_STATUSES)
    for terminal in TERMINAL_STATUSES:
        assert not any(can_transition(terminal, target) for target in TaskStatus)


def test_status_parse_is_tolerant_at_string_boundary() -> None:
    assert TaskStatus.parse(" Running ") is TaskStatus.RUNNING
    assert TaskStatus.parse("CANCELLED") is TaskStatus.CANCELLED
    assert TaskStatus.parse("canceled") is None
    assert TaskStatus.parse("") is None


def test_write_verified_requires_all_three_signals() -> None:
    artifact = VerifiedArtifact(path="report.txt", checksum="abc", size_bytes=3)

    assert ExecutionEvidence(True, True, (artifact,)).write_verified
    assert not ExecutionEvidence(True, True, ()).write_verified
    assert not ExecutionEvidence(True, False, (artifact,)).write_verified
    assert not ExecutionEvidence(False, True, (artifact,)).write_verified


def test_round_record_progress_is_either_signal() -> None:
    assert RoundRecord(executed_new_tool=True, text_changed=False).made_progress
    assert RoundRecord(executed_new_tool=False, text_changed=True).made_progress
    assert not RoundRecord(executed_new_tool=False, text_changed=False).made_progress
