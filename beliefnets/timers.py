"""Lightweight timing instrumentation.

A :class:`TimerRegistry` is a fixed-size table of named counters. Existing
names are updated under their own entry lock; only the first registration of a
name takes the registry-wide lock. When every slot is taken the measurement is
dropped with a warning, training is never interrupted.
"""

from __future__ import annotations

import sys
import threading
import time
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, TextIO

MAX_TIMERS = 32


@dataclass
class TimerEntry:
    """Accumulated count and duration (nanoseconds) of one label."""

    name: str | None = None
    count: int = 0
    duration: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, duration: int) -> None:
        with self._lock:
            self.duration += duration
            self.count += 1


def to_string_precision(value: float, precision: int = 6) -> str:
    return f"{value:.{precision}g}"


def duration_str(duration: float, precision: int = 6) -> str:
    """Format a nanosecond duration with a unit chosen by magnitude."""

    if duration > 1000.0 * 1000.0 * 1000.0:
        return to_string_precision(duration / (1000.0 * 1000.0 * 1000.0), precision) + "s"
    if duration > 1000.0 * 1000.0:
        return to_string_precision(duration / (1000.0 * 1000.0), precision) + "ms"
    if duration > 1000.0:
        return to_string_precision(duration / 1000.0, precision) + "us"
    return to_string_precision(duration, precision) + "ns"


class TimerRegistry:
    """Fixed-capacity table of named timers, safe for concurrent callers."""

    def __init__(self, capacity: int = MAX_TIMERS) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: List[TimerEntry] = [TimerEntry() for _ in range(capacity)]
        self._lock = threading.Lock()
        self._dropped: set[str] = set()

    def _find(self, name: str) -> TimerEntry | None:
        for entry in self._entries:
            if entry.name == name:
                return entry
        return None

    def record(self, name: str, duration: int) -> bool:
        """Add one measurement of ``duration`` nanoseconds under ``name``.

        Returns ``False`` when the table is full and the measurement was
        dropped.
        """

        entry = self._find(name)
        if entry is not None:
            entry.add(duration)
            return True

        with self._lock:
            entry = self._find(name)
            if entry is None:
                for candidate in self._entries:
                    if candidate.name is None:
                        candidate.name = name
                        entry = candidate
                        break
            if entry is None:
                if name not in self._dropped:
                    self._dropped.add(name)
                    warnings.warn(f"Unable to register timer {name}", RuntimeWarning, stacklevel=2)
                return False
        entry.add(duration)
        return True

    @contextmanager
    def time(self, name: str) -> Iterator[None]:
        """Record the wall-clock duration of the ``with`` block under ``name``."""

        start = time.perf_counter_ns()
        try:
            yield
        finally:
            self.record(name, time.perf_counter_ns() - start)

    def get(self, name: str) -> TimerEntry | None:
        return self._find(name)

    def entries(self) -> List[TimerEntry]:
        """Occupied slots in registration order."""

        return [entry for entry in self._entries if entry.name is not None]

    def reset(self) -> None:
        with self._lock:
            self._entries = [TimerEntry() for _ in range(self.capacity)]
            self._dropped.clear()

    def dump(self, stream: TextIO | None = None) -> None:
        """Print ``name(count) : duration`` for every registered timer."""

        out = stream or sys.stdout
        for entry in self.entries():
            print(f"{entry.name}({entry.count}) : {duration_str(entry.duration)}", file=out)


class NullTimerRegistry(TimerRegistry):
    """Registry that measures nothing."""

    def __init__(self) -> None:
        super().__init__(capacity=1)

    def record(self, name: str, duration: int) -> bool:
        return True

    @contextmanager
    def time(self, name: str) -> Iterator[None]:
        yield


__all__ = [
    "MAX_TIMERS",
    "NullTimerRegistry",
    "TimerEntry",
    "TimerRegistry",
    "duration_str",
]
