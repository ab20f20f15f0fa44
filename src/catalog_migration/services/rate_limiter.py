"""Rate-limited gateway to the remote embedding/completion service.

One ``RateLimitedClient`` is shared by every caller in the process (migration
jobs and anything else that talks to the remote service). Each operation
category gets its own limiter with:

* a ceiling on concurrent in-flight calls,
* a minimum spacing between dispatches,
* a reservoir of permits refilled on a fixed interval (token bucket).

Calls over capacity wait in a priority queue (lower number first, FIFO within
a priority). Calls still queued after ``expiration_ms`` raise ``TimeoutError``.
Throttling responses are retried inside the client with exponential backoff.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

import openai

from catalog_migration.config import LimiterProfile, Settings
from catalog_migration.core.constants import (
    CATEGORY_COMPLETION,
    CATEGORY_EMBEDDING,
    HTTP_TOO_MANY_REQUESTS,
)
from catalog_migration.core.exceptions import ConfigurationError, ThrottlingError
from catalog_migration.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PRIORITY = 5


@runtime_checkable
class RemoteExecutor(Protocol):
    """Capability to run a remote call under the shared quota."""

    async def execute(
        self,
        category: str,
        operation: Callable[[], Awaitable[T]],
        *,
        priority: int = DEFAULT_PRIORITY,
        operation_id: str | None = None,
    ) -> T: ...


def is_throttling_error(error: BaseException) -> bool:
    """True for HTTP 429-equivalent responses."""
    if isinstance(error, openai.RateLimitError):
        return True
    for attr in ("status_code", "status"):
        if getattr(error, attr, None) == HTTP_TOO_MANY_REQUESTS:
            return True
    return False


def backoff_delay(profile: LimiterProfile, attempt: int) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    delay_ms = min(profile.backoff_base_ms * 2 ** (attempt - 1), profile.backoff_max_ms)
    return delay_ms / 1000


@dataclass(slots=True)
class LimiterMetrics:
    """Counters for one category since the last reporting tick."""

    total_requests: int = 0
    queued: int = 0
    throttle_hits: int = 0
    completed: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.completed if self.completed else 0.0

    def reset(self) -> None:
        # In place: calls in flight hold a reference to this object.
        self.total_requests = 0
        self.queued = 0
        self.throttle_hits = 0
        self.completed = 0
        self.total_latency_ms = 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "queued": self.queued,
            "throttle_hits": self.throttle_hits,
            "completed": self.completed,
            "average_latency_ms": round(self.average_latency_ms, 1),
        }


class CategoryLimiter:
    """Permit scheduler for one operation category."""

    def __init__(
        self,
        name: str,
        profile: LimiterProfile,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.profile = profile
        self._clock = clock
        self._condition = asyncio.Condition()
        self._queue: list[tuple[int, int]] = []
        self._sequence = itertools.count()
        self._running = 0
        self._reservoir = profile.reservoir
        self._last_refresh = clock()
        self._last_dispatch: float | None = None

    @property
    def running(self) -> int:
        return self._running

    @property
    def reservoir(self) -> int:
        self._refill(self._clock())
        return self._reservoir

    @property
    def queued(self) -> int:
        return len(self._queue)

    def has_capacity(self) -> bool:
        """True if a call submitted now would dispatch without queueing."""
        return (
            not self._queue
            and self._running < self.profile.max_concurrent
            and self.reservoir > 0
        )

    def _refill(self, now: float) -> None:
        interval = self.profile.reservoir_refresh_interval_ms / 1000
        elapsed = now - self._last_refresh
        if interval <= 0 or elapsed < interval:
            return
        ticks = int(elapsed // interval)
        self._reservoir = min(
            self.profile.reservoir,
            self._reservoir + ticks * self.profile.reservoir_refresh_amount,
        )
        self._last_refresh += ticks * interval

    def _dispatch_delay(self, entry: tuple[int, int]) -> float | None:
        """0 to dispatch now, seconds to wait, or None to wait for a release."""
        if self._queue[0] != entry or self._running >= self.profile.max_concurrent:
            return None
        now = self._clock()
        self._refill(now)
        if self._reservoir <= 0:
            next_refresh = self._last_refresh + self.profile.reservoir_refresh_interval_ms / 1000
            return max(next_refresh - now, 0.001)
        if self._last_dispatch is not None:
            gap = self._last_dispatch + self.profile.min_time_ms / 1000 - now
            if gap > 0:
                return gap
        return 0

    async def acquire(self, priority: int = DEFAULT_PRIORITY) -> bool:
        """Wait for a permit. Returns True if the call had to queue."""
        deadline = self._clock() + self.profile.expiration_ms / 1000
        entry = (priority, next(self._sequence))
        waited = False

        async with self._condition:
            heapq.heappush(self._queue, entry)
            try:
                while True:
                    delay = self._dispatch_delay(entry)
                    if delay == 0:
                        heapq.heappop(self._queue)
                        self._reservoir -= 1
                        self._running += 1
                        self._last_dispatch = self._clock()
                        self._condition.notify_all()
                        return waited

                    waited = True
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise TimeoutError(
                            f"{self.name} call expired after {self.profile.expiration_ms} ms in queue"
                        )
                    timeout = remaining if delay is None else min(delay, remaining)
                    try:
                        await asyncio.wait_for(self._condition.wait(), timeout)
                    except TimeoutError:
                        continue  # Re-evaluate spacing, reservoir and deadline
            except BaseException:
                if entry in self._queue:
                    self._queue.remove(entry)
                    heapq.heapify(self._queue)
                    self._condition.notify_all()
                raise

    async def release(self) -> None:
        async with self._condition:
            self._running -= 1
            self._condition.notify_all()


class RateLimitedClient:
    """Shared, internally synchronized quota gateway implementing ``RemoteExecutor``."""

    def __init__(
        self,
        profiles: Mapping[str, LimiterProfile],
        *,
        metrics_interval_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limiters = {name: CategoryLimiter(name, p, clock) for name, p in profiles.items()}
        self._metrics = {name: LimiterMetrics() for name in profiles}
        self._metrics_interval = metrics_interval_seconds
        self._sleep = sleep
        self._clock = clock
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._reporter: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimitedClient:
        return cls(
            {
                CATEGORY_EMBEDDING: settings.embedding_limiter,
                CATEGORY_COMPLETION: settings.completion_limiter,
            },
            metrics_interval_seconds=settings.limiter_metrics_interval_seconds,
        )

    def _limiter(self, category: str) -> CategoryLimiter:
        try:
            return self._limiters[category]
        except KeyError:
            raise ConfigurationError(f"Unknown rate limit category: {category!r}") from None

    async def execute(
        self,
        category: str,
        operation: Callable[[], Awaitable[T]],
        *,
        priority: int = DEFAULT_PRIORITY,
        operation_id: str | None = None,
    ) -> T:
        """Run ``operation`` under the category's quota, retrying on throttling.

        Raises:
            ThrottlingError: Still throttled after ``max_retries`` retries.
            TimeoutError: The call expired while queued.
        """
        if self._closed:
            raise RuntimeError("Rate-limited client is shut down")

        limiter = self._limiter(category)
        metrics = self._metrics[category]
        label = operation_id or category
        metrics.total_requests += 1
        started = self._clock()
        attempt = 0
        delay = 0.0

        self._in_flight += 1
        self._idle.clear()
        try:
            while True:
                if await limiter.acquire(priority):
                    metrics.queued += 1
                try:
                    result = await operation()
                except Exception as e:
                    if not is_throttling_error(e):
                        raise
                    metrics.throttle_hits += 1
                    attempt += 1
                    if attempt > limiter.profile.max_retries:
                        raise ThrottlingError(
                            f"{label}: still throttled after {limiter.profile.max_retries} retries",
                            attempts=attempt,
                        ) from e
                    delay = backoff_delay(limiter.profile, attempt)
                    logger.warning(
                        f"Throttled on {label} (attempt {attempt}/{limiter.profile.max_retries}), "
                        f"retrying in {delay:.1f}s"
                    )
                else:
                    metrics.completed += 1
                    metrics.total_latency_ms += (self._clock() - started) * 1000
                    return result
                finally:
                    await limiter.release()

                await self._sleep(delay)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    def has_capacity(self, category: str = CATEGORY_EMBEDDING) -> bool:
        return self._limiter(category).has_capacity()

    def metrics(self) -> dict[str, dict[str, Any]]:
        """Counters since the last tick plus live limiter state, per category."""
        return {
            name: {
                **self._metrics[name].snapshot(),
                "running": limiter.running,
                "waiting": limiter.queued,
                "reservoir": limiter.reservoir,
            }
            for name, limiter in self._limiters.items()
        }

    def report_metrics(self) -> dict[str, dict[str, Any]]:
        """Log the counters and reset them for the next interval."""
        snapshot = self.metrics()
        for name, values in snapshot.items():
            logger.info(
                f"Rate limiter [{name}]: {values['total_requests']} requests, "
                f"{values['queued']} queued, {values['throttle_hits']} throttled, "
                f"avg latency {values['average_latency_ms']}ms, "
                f"running {values['running']}, reservoir {values['reservoir']}"
            )
            self._metrics[name].reset()
        return snapshot

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._metrics_interval)
            self.report_metrics()

    def start_reporting(self) -> None:
        if self._reporter is None or self._reporter.done():
            self._reporter = asyncio.create_task(self._report_loop())

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Stop reporting and wait for in-flight calls to finish."""
        self._closed = True
        if self._reporter is not None:
            self._reporter.cancel()
            try:
                await self._reporter
            except asyncio.CancelledError:
                pass
            self._reporter = None
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except TimeoutError:
            logger.warning(f"Shutdown with {self._in_flight} remote calls still in flight")
        logger.info("Rate-limited client shut down")
