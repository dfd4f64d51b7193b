"""agent_panel.scheduler

Deferred callbacks for the engine's grace windows.

The engine never sleeps; it asks a scheduler to call back later on the same
thread. `QtScheduler` rides the Qt event loop. `ManualScheduler` runs
callbacks only when told to, which keeps headless runs and tests
deterministic.
"""

from __future__ import annotations

import heapq
import itertools
from typing import Callable, Protocol


class Scheduler(Protocol):
    """Minimal surface for dependency injection / faking."""

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> None:
        """Run `callback` on the engine thread after `delay_s` seconds."""


class QtScheduler:
    """Adapter over `QTimer.singleShot`; callbacks run on the Qt thread."""

    def __init__(self) -> None:
        from PySide6 import QtCore  # imported lazily

        self._QtCore = QtCore

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> None:
        ms = max(0, int(round(float(delay_s) * 1000)))
        self._QtCore.QTimer.singleShot(ms, callback)


class ManualScheduler:
    """Virtual-time scheduler driven by `advance()` / `run_all()`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._queue: list[tuple[float, int, Callable[[], None]]] = []

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> None:
        due = self.now + max(0.0, float(delay_s))
        heapq.heappush(self._queue, (due, next(self._seq), callback))

    @property
    def pending(self) -> int:
        return len(self._queue)

    def advance(self, seconds: float) -> int:
        """Move virtual time forward and run everything that came due."""

        target = self.now + max(0.0, float(seconds))
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, cb = heapq.heappop(self._queue)
            self.now = max(self.now, due)
            cb()
            ran += 1
        self.now = target
        return ran

    def run_all(self) -> int:
        ran = 0
        while self._queue:
            due, _, cb = heapq.heappop(self._queue)
            self.now = max(self.now, due)
            cb()
            ran += 1
        return ran
