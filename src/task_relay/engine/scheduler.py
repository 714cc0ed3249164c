"""In-process continuation queue."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable


class ContinuationQueue:
    """Delay queue of continuation signals keyed by task id.

    A task has at most one pending signal and is never handed to a second
    consumer while a previous signal for it is still in flight.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._condition = threading.Condition()
        self._heap: list[tuple[float, int, str]] = []
        self._pending: dict[str, float] = {}
        self._in_flight: set[str] = set()
        self._sequence = itertools.count()

    def enqueue(self, task_id: str, *, delay_seconds: float = 0.0) -> bool:
        """Schedule a step; returns False when the task already has a pending signal."""

        ready_at = self._clock() + max(0.0, delay_seconds)
        with self._condition:
            if task_id in self._pending:
                return False
            self._pending[task_id] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._sequence), task_id))
            self._condition.notify()
            return True

    def discard(self, task_id: str) -> None:
        with self._condition:
            self._pending.pop(task_id, None)

    def take(self, *, timeout: float | None = 0.0) -> str | None:
        """Pop the next ready task id, waiting up to ``timeout`` seconds."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._condition:
            while True:
                now = self._clock()
                task_id, wait = self._pop_ready(now)
                if task_id is not None:
                    self._in_flight.add(task_id)
                    return task_id
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._condition.wait(wait)

    def done(self, task_id: str) -> None:
        """Mark a taken signal as processed."""

        with self._condition:
            self._in_flight.discard(task_id)
            self._condition.notify_all()

    def pending_ids(self) -> set[str]:
        with self._condition:
            return set(self._pending)

    def in_flight_count(self) -> int:
        """Signals taken by a consumer and not yet marked done."""

        with self._condition:
            return len(self._in_flight)

    def __len__(self) -> int:
        with self._condition:
            return len(self._pending)

    def _pop_ready(self, now: float) -> tuple[str | None, float | None]:
        deferred: list[tuple[float, int, str]] = []
        result: tuple[str | None, float | None] = (None, None)
        while self._heap:
            ready_at, sequence, task_id = self._heap[0]
            if self._pending.get(task_id) != ready_at:
                heapq.heappop(self._heap)
                continue
            if ready_at > now:
                result = (None, ready_at - now)
                break
            heapq.heappop(self._heap)
            if task_id in self._in_flight:
                deferred.append((ready_at, sequence, task_id))
                continue
            del self._pending[task_id]
            result = (task_id, None)
            break
        for item in deferred:
            heapq.heappush(self._heap, item)
        if result[0] is None and deferred and result[1] is None:
            result = (None, 0.05)
        return result
