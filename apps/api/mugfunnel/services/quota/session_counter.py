from __future__ import annotations

import threading


class SessionCounter:
    """Layer 1: advisory per-client counter that resets on a new UTC day-key.

    Lives only in process memory; losing it on restart just hands the
    client a fresh allowance, which the durable layers still bound.
    """

    def __init__(self, day_key: str) -> None:
        self._day_key = day_key
        self._count = 0
        self._lock = threading.Lock()

    def count(self, day_key: str) -> int:
        with self._lock:
            if day_key != self._day_key:
                return 0
            return self._count

    def increment(self, day_key: str) -> int:
        with self._lock:
            if day_key != self._day_key:
                self._day_key = day_key
                self._count = 0
            self._count += 1
            return self._count

    @property
    def day_key(self) -> str:
        with self._lock:
            return self._day_key


class SessionCounterRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, SessionCounter] = {}
        self._lock = threading.Lock()

    def for_session(self, session_id: str, day_key: str) -> SessionCounter:
        with self._lock:
            counter = self._counters.get(session_id)
            if counter is None:
                counter = SessionCounter(day_key)
                self._counters[session_id] = counter
            return counter

    def prune(self, current_day_key: str) -> int:
        """Forget counters last used on an earlier day; they would reset anyway."""
        with self._lock:
            stale = [key for key, counter in self._counters.items() if counter.day_key < current_day_key]
        removed = 0
        for key in stale:
            with self._lock:
                counter = self._counters.get(key)
                if counter is not None and counter.day_key < current_day_key:
                    del self._counters[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
