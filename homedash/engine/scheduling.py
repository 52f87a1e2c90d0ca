"""Clock and timer abstraction used by liveness tracking and debounced work.

``LoopScheduler`` runs on the asyncio loop; ``ManualScheduler`` only moves
when ``advance`` is called, which keeps timer behaviour deterministic.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop (monotonic seconds)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(0.0, delay), callback)


@dataclass
class ManualTimer:
    deadline: float
    seq: int
    callback: Callable[[], None] = field(repr=False)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: List[ManualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self._now + max(0.0, delay), next(self._seq), callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in deadline order."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.deadline <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.deadline, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.deadline)
            timer.callback()
        self._now = target
        self._timers = [t for t in self._timers if not t.cancelled]
