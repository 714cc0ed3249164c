"""Per-sender serialization registry."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class SenderLockRegistry:
    """Owned map from sender key to the task currently holding it.

    ``guard`` is the only way to take a sender slot, so the slot is released on
    every exit path of the guarded block.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[tuple[str, str], str] = {}

    def try_acquire(self, channel: str, sender_key: str, task_id: str) -> bool:
        key = (channel, sender_key)
        with self._lock:
            holder = self._active.get(key)
            if holder is not None and holder != task_id:
                return False
            self._active[key] = task_id
            return True

    def release(self, channel: str, sender_key: str, task_id: str) -> None:
        key = (channel, sender_key)
        with self._lock:
            if self._active.get(key) == task_id:
                del self._active[key]

    def holder(self, channel: str, sender_key: str) -> str | None:
        with self._lock:
            return self._active.get((channel, sender_key))

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @contextmanager
    def guard(self, channel: str, sender_key: str, task_id: str) -> Iterator[bool]:
        """Yield whether the slot was acquired; release it on exit if so."""

        acquired = self.try_acquire(channel, sender_key, task_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(channel, sender_key, task_id)
