from __future__ import annotations

import threading

import allure
import pytest

from task_relay.engine.registry import SenderLockRegistry
from task_relay.engine.scheduler import ContinuationQueue

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Scheduling & Serialization"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_sender_guard_is_exclusive_and_released_on_error() -> None:
    registry = SenderLockRegistry()

    with pytest.raises(RuntimeError), registry.guard("cli", "alice", "t1") as acquired:
        assert acquired
        with registry.guard("cli", "alice", "t2") as second:
            assert not second
        with registry.guard("cli", "bob", "t3") as other_sender:
            assert other_sender
        raise RuntimeError("boom")

    assert registry.holder("cli", "alice") is None
    assert registry.active_count() == 0


def test_sender_guard_is_reentrant_for_same_task() -> None:
    registry = SenderLockRegistry()

    assert registry.try_acquire("cli", "alice", "t1")
    assert registry.try_acquire("cli", "alice", "t1")
    registry.release("cli", "alice", "t2")
    assert registry.holder("cli", "alice") == "t1"


def test_queue_deduplicates_pending_signals() -> None:
    queue = ContinuationQueue()

    assert queue.enqueue("t1")
    assert not queue.enqueue("t1")
    assert queue.enqueue("t2")

    assert len(queue) == 2
    assert queue.pending_ids() == {"t1", "t2"}


def test_queue_orders_by_ready_time_then_fifo() -> None:
    clock = FakeClock()
    queue = ContinuationQueue(clock=clock)
    queue.enqueue("later", delay_seconds=5)
    queue.enqueue("first")
    queue.enqueue("second")

    assert queue.take() == "first"
    assert queue.take() == "second"
    assert queue.take() is None

    clock.now += 5
    assert queue.take() == "later"


def test_in_flight_task_is_not_handed_out_twice() -> None:
    queue = ContinuationQueue()
    queue.enqueue("t1")
    assert queue.take() == "t1"

    queue.enqueue("t1")
    assert queue.take() is None

    queue.done("t1")
    assert queue.take() == "t1"


def test_in_flight_count_tracks_taken_signals_until_done() -> None:
    queue = ContinuationQueue()
    queue.enqueue("t1")
    assert queue.in_flight_count() == 0

    assert queue.take() == "t1"
    assert len(queue) == 0
    assert queue.in_flight_count() == 1

    queue.done("t1")
    assert queue.in_flight_count() == 0


def test_discard_drops_pending_signal() -> None:
    queue = ContinuationQueue()
    queue.enqueue("t1")
    queue.discard("t1")

    assert queue.take() is None
    assert len(queue) == 0
    assert queue.enqueue("t1")


def test_take_waits_for_enqueue_from_another_thread() -> None:
    queue = ContinuationQueue()
    timer = threading.Timer(0.05, lambda: queue.enqueue("t1"))
    timer.start()

    try:
        assert queue.take(timeout=5) == "t1"
    finally:
        timer.cancel()
