"""
Per-process request coalescing and TTL caching.

SingleFlight: concurrent callers share one in-flight computation; callers
arriving within ``min_interval`` of the last completion get the last result.

TTLCache: keyed get-or-set with expiry, sharing in-flight loads per key.

Both are non-authoritative, per-instance caches. Anything that must hold
across instances (claims, idempotency) lives in the ledger instead.

Usage:
    flight = SingleFlight(min_interval_seconds=0.3)
    result = await flight.run(compute_tick)
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from daybot.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Share one in-flight computation among concurrent callers."""

    def __init__(self, min_interval_seconds: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval_seconds
        self._clock = clock
        self._inflight: Optional[asyncio.Future] = None
        self._last: Optional[Tuple[T, float]] = None
        self.shared_count = 0
        self.cached_count = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def last_result(self) -> Optional[T]:
        return self._last[0] if self._last else None

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` unless a run is in flight (join it) or a result finished
        less than ``min_interval`` ago (return it).

        Failures propagate to every joined caller and are not cached.
        Cancelling one caller does not cancel the shared computation.
        """
        if self.in_flight:
            self.shared_count += 1
            return await asyncio.shield(self._inflight)

        if self._last is not None and self.min_interval > 0:
            result, finished_at = self._last
            if self._clock() - finished_at < self.min_interval:
                self.cached_count += 1
                return result

        task = asyncio.ensure_future(fn())
        self._inflight = task
        try:
            result = await asyncio.shield(task)
        finally:
            if self._inflight is task and task.done():
                self._inflight = None
        self._last = (result, self._clock())
        return result


class TTLCache:
    """Keyed cache with expiry and shared in-flight loads."""

    def __init__(self, max_size: int = 256, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self._clock = clock
        self._values: Dict[Hashable, Tuple[Any, float]] = {}
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl_seconds: float) -> None:
        self._values[key] = (value, self._clock() + ttl_seconds)
        if len(self._values) > self.max_size:
            self._cleanup()

    async def get_or_set(self, key: Hashable, ttl_seconds: float, loader: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None and not pending.done():
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(loader())
        self._inflight[key] = task
        try:
            value = await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task and task.done():
                del self._inflight[key]
        if value is not None and ttl_seconds > 0:
            self.set(key, value, ttl_seconds)
        return value

    def _cleanup(self) -> None:
        """Drop expired entries, then the oldest half if still over size."""
        now = self._clock()
        for k in [k for k, (_, exp) in self._values.items() if exp <= now]:
            del self._values[k]
        if len(self._values) > self.max_size:
            ordered = sorted(self._values.items(), key=lambda kv: kv[1][1])
            self._values = dict(ordered[len(ordered) // 2:])
            logger.debug("TTL_CACHE_TRIMMED", size=len(self._values))
