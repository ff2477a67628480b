"""Rate-limited request scheduler.

All remote calls go through one Scheduler so that a single token bucket
sees every request. Entries wait in a priority queue and a single drain
task dispatches them one at a time, backing off when Notion throttles.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .notion import is_transient

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class SchedulerError(Exception):
    """Base exception for scheduler failures."""

    pass


class SchedulerRetryExhausted(SchedulerError):
    """Raised when an entry was throttled too many times."""

    def __init__(self, entry: "SyncQueueEntry", cause: BaseException):
        self.entry = entry
        self.cause = cause
        target = f" {entry.target}" if entry.target else ""
        super().__init__(
            f"Giving up on {entry.kind.value}{target} "
            f"after {entry.retry_count} attempts: {cause}"
        )


class SchedulerClosed(SchedulerError):
    """Raised for entries still queued when the scheduler shuts down."""

    pass


class OperationKind(str, Enum):
    """Kind of remote operation, for introspection and logging."""

    FETCH = "fetch"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncQueueEntry:
    """A pending remote operation."""

    operation: Operation
    future: asyncio.Future
    priority: int = 0
    kind: OperationKind = OperationKind.FETCH
    target: Optional[str] = None
    retry_count: int = 0


@dataclass
class SchedulerStatus:
    """Read-only snapshot for operational tooling."""

    queue_length: int
    tokens: float
    consecutive_throttles: int


@dataclass
class RateBudget:
    """Token bucket refilled continuously up to a burst ceiling."""

    rate: float
    burst: int
    tokens: float = field(init=False)
    last_refill: float = 0.0

    def __post_init__(self):
        self.tokens = float(self.burst)

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.burst), self.tokens + elapsed * self.rate)
        self.last_refill = now

    def consume(self) -> None:
        self.tokens = max(0.0, self.tokens - 1)


class Scheduler:
    """Serializes remote calls under a shared rate budget."""

    MAX_RETRIES = 6
    THROTTLE_EXPONENT_CAP = 4

    def __init__(
        self,
        requests_per_second: float = 2.5,
        burst_size: int = 5,
        adaptive_backoff: bool = True,
        backoff_base: float = 2.0,
        backoff_cap: float = 10.0,
        inter_request_delay: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the scheduler.

        Args:
            requests_per_second: Token refill rate
            burst_size: Token ceiling, also the starting balance
            adaptive_backoff: Sleep after a throttled response before continuing
            backoff_base: First adaptive backoff window in seconds
            backoff_cap: Largest adaptive backoff window in seconds
            inter_request_delay: Pause after every dispatched call
            clock: Monotonic time source in seconds
            sleep: Coroutine used for every wait
        """
        self.base_interval = 1.0 / requests_per_second
        self.adaptive_backoff = adaptive_backoff
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.inter_request_delay = inter_request_delay
        self._clock = clock
        self._sleep = sleep

        self.budget = RateBudget(rate=requests_per_second, burst=burst_size)
        self.budget.last_refill = clock()

        self._queue: list[tuple[int, int, SyncQueueEntry]] = []
        self._arrival = itertools.count()
        self._front = itertools.count(-1, -1)
        self._consecutive_throttles = 0
        self._drain_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[SyncQueueEntry] = None
        self._closed = False

    # ========================================================================
    # Public API
    # ========================================================================

    async def submit(
        self,
        operation: Operation,
        priority: int = 0,
        kind: OperationKind = OperationKind.FETCH,
        target: Optional[str] = None,
    ) -> Any:
        """Queue an operation and wait for its result.

        Args:
            operation: Zero-argument coroutine function performing one remote call
            priority: Higher runs sooner; ties keep submission order
            kind: Operation kind, for logging
            target: Identity of the remote object, for logging

        Returns:
            Whatever the operation returns
        """
        if self._closed:
            raise SchedulerClosed("Scheduler is closed")

        loop = asyncio.get_running_loop()
        entry = SyncQueueEntry(
            operation=operation,
            future=loop.create_future(),
            priority=priority,
            kind=kind,
            target=target,
        )
        self._push(entry, next(self._arrival))
        self._ensure_draining()
        return await entry.future

    __call__ = submit

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            queue_length=len(self._queue),
            tokens=self.budget.tokens,
            consecutive_throttles=self._consecutive_throttles,
        )

    async def close(self) -> None:
        """Stop draining and reject everything still queued."""
        self._closed = True
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
        if self._in_flight is not None and not self._in_flight.future.done():
            self._in_flight.future.set_exception(SchedulerClosed("Scheduler closed"))
        self._in_flight = None
        while self._queue:
            _, _, entry = heapq.heappop(self._queue)
            if not entry.future.done():
                entry.future.set_exception(SchedulerClosed("Scheduler closed"))

    # ========================================================================
    # Drain loop
    # ========================================================================

    def _push(self, entry: SyncQueueEntry, seq: int) -> None:
        heapq.heappush(self._queue, (-entry.priority, seq, entry))

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def _throttle_wait(self) -> float:
        exponent = min(self._consecutive_throttles, self.THROTTLE_EXPONENT_CAP)
        return self.base_interval * (2**exponent)

    def _backoff_window(self) -> float:
        return min(
            self.backoff_cap,
            self.backoff_base * (2 ** (self._consecutive_throttles - 1)),
        )

    async def _drain(self) -> None:
        while self._queue:
            self.budget.refill(self._clock())

            if self.budget.tokens < 1:
                wait = self._throttle_wait()
                logger.debug("Rate limiter: waiting %.3fs for token refill", wait)
                await self._sleep(wait)
                continue

            _, _, entry = heapq.heappop(self._queue)
            self.budget.consume()

            if entry.future.done():
                # Caller went away (cancelled); nothing to deliver.
                continue

            self._in_flight = entry
            try:
                result = await entry.operation()
            except Exception as e:
                self._in_flight = None
                await self._handle_failure(entry, e)
            else:
                self._in_flight = None
                self._consecutive_throttles = 0
                if not entry.future.done():
                    entry.future.set_result(result)

            await self._sleep(self.inter_request_delay)

    async def _handle_failure(self, entry: SyncQueueEntry, error: Exception) -> None:
        if not is_transient(error):
            if not entry.future.done():
                entry.future.set_exception(error)
            return

        self._consecutive_throttles += 1
        entry.retry_count += 1

        if entry.retry_count >= self.MAX_RETRIES:
            logger.warning(
                "Rate limiter: dropping %s %s after %d attempts",
                entry.kind.value,
                entry.target,
                entry.retry_count,
            )
            if not entry.future.done():
                entry.future.set_exception(SchedulerRetryExhausted(entry, error))
            return

        entry.priority -= 1
        self._push(entry, next(self._front))
        logger.info(
            "Rate limiter: %s, requeuing request (attempt %d)",
            type(error).__name__,
            entry.retry_count,
        )

        if self.adaptive_backoff:
            backoff = self._backoff_window()
            logger.info("Rate limiter: adaptive backoff %.2fs", backoff)
            await self._sleep(backoff)


# Process-wide scheduler instance
_scheduler: Optional[Scheduler] = None


def get_scheduler() -> Scheduler:
    """Get or create the process-wide scheduler."""
    global _scheduler
    if _scheduler is None:
        from ..config import get_config

        config = get_config()
        _scheduler = Scheduler(
            requests_per_second=config.requests_per_second,
            burst_size=config.burst_size,
            adaptive_backoff=config.adaptive_backoff,
        )
    return _scheduler


async def reset_scheduler() -> None:
    """Close and drop the process-wide scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.close()
    _scheduler = None
