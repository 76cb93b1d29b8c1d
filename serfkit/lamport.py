"""A thread-safe Lamport clock."""

from __future__ import annotations

import threading


class LamportClock:
    """Logical clock that orders events across the cluster."""

    __slots__ = ("_counter", "_lock")

    def __init__(self, counter: int = 0) -> None:
        self._counter = counter
        self._lock = threading.Lock()

    def time(self) -> int:
        """Return the current value of the clock."""
        with self._lock:
            return self._counter

    def increment(self) -> int:
        """Advance the clock by one and return the new value."""
        with self._lock:
            self._counter += 1
            return self._counter

    def witness(self, value: int) -> None:
        """Move the clock past a value seen from another process."""
        with self._lock:
            if value < self._counter:
                return
            self._counter = value + 1

    def __repr__(self) -> str:
        return f"LamportClock({self.time()})"