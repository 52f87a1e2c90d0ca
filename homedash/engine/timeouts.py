"""Process-wide sensor offline timeout with TTL caching."""

from __future__ import annotations

import asyncio
import math
from typing import Optional, Protocol

from loguru import logger

from .scheduling import Scheduler

MIN_TIMEOUT_SECONDS = 1.0
MAX_TIMEOUT_SECONDS = 3600.0


class SensorTimeoutSource(Protocol):
    async def get_global_sensor_timeout_seconds(self) -> float: ...


def clamp_timeout(seconds: float) -> float:
    return min(MAX_TIMEOUT_SECONDS, max(MIN_TIMEOUT_SECONDS, seconds))


class SensorTimeoutCache:
    """Caches the admin-configured timeout.

    ``current`` never waits: while a lookup is in flight (or after one fails)
    callers keep getting the last good value, or the default if there has
    never been one.
    """

    def __init__(
        self,
        source: SensorTimeoutSource,
        clock: Scheduler,
        *,
        ttl: float = 300.0,
        default: float = 60.0,
    ):
        self._source = source
        self._clock = clock
        self.ttl = ttl
        self._value = clamp_timeout(default)
        self._fetched_at: Optional[float] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def current(self) -> float:
        return self._value

    @property
    def is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock.now() - self._fetched_at >= self.ttl

    def invalidate(self) -> None:
        self._fetched_at = None

    async def get(self) -> float:
        if not self.is_stale:
            return self._value
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch())
        return await self._inflight

    async def refresh(self) -> float:
        """Drop the cached value and look it up again."""
        self.invalidate()
        return await self.get()

    async def _fetch(self) -> float:
        try:
            raw = await self._source.get_global_sensor_timeout_seconds()
            seconds = float(raw)
            if not math.isfinite(seconds):
                raise ValueError(f"non-finite timeout {raw!r}")
        except Exception as exc:
            logger.warning(f"Sensor timeout lookup failed, keeping {self._value}s: {exc}")
            return self._value
        finally:
            self._inflight = None

        seconds = clamp_timeout(seconds)
        if seconds != self._value:
            logger.info(f"Sensor timeout changed from {self._value}s to {seconds}s")
        self._value = seconds
        self._fetched_at = self._clock.now()
        return seconds
