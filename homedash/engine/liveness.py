"""Per-device online/offline state machine driven by a scheduler."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, List

from loguru import logger

from .scheduling import Scheduler, TimerHandle
from .timeouts import SensorTimeoutCache


class Liveness(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"


OfflineListener = Callable[[str], None]


class LivenessTracker:
    """Tracks which devices have been heard from within the timeout window.

    Every device starts OFFLINE. ``touch`` moves it to ONLINE and (re)arms a
    timer for the timeout current at that moment; the timer firing moves it
    back to OFFLINE and notifies listeners. Timers already armed keep their
    original deadline when the timeout changes.
    """

    def __init__(self, scheduler: Scheduler, timeouts: SensorTimeoutCache):
        self._scheduler = scheduler
        self._timeouts = timeouts
        self._timers: Dict[str, TimerHandle] = {}
        self._listeners: List[OfflineListener] = []

    def add_listener(self, listener: OfflineListener) -> None:
        self._listeners.append(listener)

    def state(self, device_id: str) -> Liveness:
        return Liveness.ONLINE if device_id in self._timers else Liveness.OFFLINE

    @property
    def online_count(self) -> int:
        return len(self._timers)

    def touch(self, device_id: str) -> Liveness:
        """Record activity for ``device_id``; returns the previous state."""
        previous = self.state(device_id)
        self._cancel_timer(device_id)

        timeout = self._timeouts.current
        handle: TimerHandle

        def expire() -> None:
            self._expire(device_id, handle)

        handle = self._scheduler.call_later(timeout, expire)
        self._timers[device_id] = handle
        if previous is Liveness.OFFLINE:
            logger.debug(f"Device {device_id} online (timeout {timeout}s)")
        return previous

    def cancel(self, device_id: str) -> None:
        """Forget ``device_id`` without notifying listeners."""
        self._cancel_timer(device_id)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _cancel_timer(self, device_id: str) -> None:
        handle = self._timers.pop(device_id, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, device_id: str, handle: TimerHandle) -> None:
        # A replaced or cancelled timer may still fire on some schedulers.
        if self._timers.get(device_id) is not handle:
            return
        del self._timers[device_id]
        logger.info(f"Device {device_id} offline, no messages within timeout")
        for listener in list(self._listeners):
            try:
                listener(device_id)
            except Exception as exc:
                logger.error(f"Offline listener failed for {device_id}: {exc}")
