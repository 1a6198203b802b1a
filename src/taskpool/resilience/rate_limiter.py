"""Quota-aware throttle, queue and batcher for calls to rate-limited APIs."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from taskpool.errors import (
    QueueFullError,
    QueueWaitExceededError,
    QuotaExceededError,
    TaskError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RESOURCE = "core"
DEFAULT_RESOURCE_LIMITS: dict[str, int] = {
    "core": 5000,
    "search": 30,
    "graphql": 5000,
}
_MIN_PROCESSOR_WAKE_SECONDS = 0.01
_QUOTA_STATUS = 429


@dataclass(slots=True)
class RateLimiterConfig:
    """Throttle, queue and batching knobs."""

    throttle_threshold: int = 100
    max_queue_size: int = 100
    max_queue_wait_seconds: float = 300.0
    min_throttle_delay_seconds: float = 0.1
    enable_batching: bool = True
    max_batch_size: int = 10
    batch_delay_seconds: float = 0.05
    queue_poll_interval_seconds: float = 1.0
    limited_backoff_seconds: float = 60.0
    default_limit: int = 5000


@dataclass(slots=True)
class RateLimitResource:
    """Live quota state of one bucket."""

    name: str
    limit: int
    remaining: int
    reset_at: float = 0.0
    used: int = 0
    is_limited: bool = False
    last_updated: float = 0.0


@dataclass(slots=True)
class QueueStats:
    """Snapshot of the limiter queue."""

    size: int
    by_resource: dict[str, int]
    oldest_wait_seconds: float
    processing: bool
    pending_batches: int


@dataclass(slots=True)
class _QueuedRequest:
    resource: str
    priority: int
    sequence: int
    enqueued_at: float
    future: asyncio.Future[None]


@dataclass(slots=True)
class _PendingBatch:
    resource: str
    operations: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)
    futures: list[asyncio.Future[Any]] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None


class RateLimiter:
    """Track per-resource quota and delay, queue or batch outgoing calls.

    All resource reads and writes happen on the owning event loop without an
    intervening ``await``, so each update is atomic with respect to every
    other call site sharing the same bucket.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._resources: dict[str, RateLimitResource] = {}
        self._queue: list[_QueuedRequest] = []
        self._sequence = itertools.count()
        self._processor: asyncio.Task[None] | None = None
        self._batches: dict[str, _PendingBatch] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._seed_resources()

    def get_resource(self, name: str = DEFAULT_RESOURCE) -> RateLimitResource:
        resource = self._resources.get(name)
        if resource is None:
            limit = DEFAULT_RESOURCE_LIMITS.get(name, self.config.default_limit)
            resource = RateLimitResource(name=name, limit=limit, remaining=limit)
            self._resources[name] = resource
        return resource

    def resources(self) -> dict[str, RateLimitResource]:
        """Copies of every tracked resource."""

        return {name: replace(resource) for name, resource in self._resources.items()}

    def update_from_headers(self, headers: Mapping[str, str]) -> RateLimitResource | None:
        """Absorb `x-ratelimit-*` headers from a response."""

        normalized = {str(key).lower(): str(value) for key, value in headers.items()}
        remaining_raw = normalized.get("x-ratelimit-remaining")
        if remaining_raw is None:
            return None
        resource = self.get_resource(normalized.get("x-ratelimit-resource", DEFAULT_RESOURCE))
        resource.remaining = int(remaining_raw)
        if "x-ratelimit-limit" in normalized:
            resource.limit = int(normalized["x-ratelimit-limit"])
        if "x-ratelimit-reset" in normalized:
            resource.reset_at = float(normalized["x-ratelimit-reset"])
        if "x-ratelimit-used" in normalized:
            resource.used = int(normalized["x-ratelimit-used"])
        resource.is_limited = resource.remaining <= 0
        resource.last_updated = self._clock()
        if resource.is_limited:
            logger.warning(
                "Rate limit exhausted for %s, resets in %.1fs",
                resource.name,
                max(0.0, resource.reset_at - resource.last_updated),
            )
        return resource

    def update_from_error(self, error: BaseException) -> RateLimitResource | None:
        """Mark a resource limited after a quota failure; other errors are ignored."""

        if isinstance(error, QuotaExceededError):
            if error.headers:
                self.update_from_headers(error.headers)
            name = error.resource
            retry_after = error.retry_after_seconds
        elif isinstance(error, TaskError) and error.status_code == _QUOTA_STATUS:
            name = DEFAULT_RESOURCE
            retry_after = None
        else:
            return None

        now = self._clock()
        resource = self.get_resource(name)
        resource.remaining = 0
        resource.is_limited = True
        if retry_after is not None:
            resource.reset_at = now + retry_after
        elif resource.reset_at <= now:
            resource.reset_at = now + self.config.limited_backoff_seconds
        resource.last_updated = now
        logger.warning(
            "Quota exceeded for %s, blocked for %.1fs",
            name,
            resource.reset_at - now,
        )
        return resource

    def should_throttle(self, name: str = DEFAULT_RESOURCE) -> bool:
        resource = self.get_resource(name)
        self._refresh(resource)
        return resource.is_limited or resource.remaining <= self.config.throttle_threshold

    def calculate_delay_for_resource(self, name: str = DEFAULT_RESOURCE) -> float:
        """Seconds to wait before the next call against `name`."""

        if not self.should_throttle(name):
            return 0.0
        resource = self._resources[name]
        time_to_reset = max(0.0, resource.reset_at - self._clock())
        floor = self.config.min_throttle_delay_seconds
        if _is_blocked(resource):
            return max(floor, time_to_reset)
        paced = time_to_reset / resource.remaining
        return max(floor, min(paced, time_to_reset))

    def calculate_required_delay(self) -> float:
        return max(
            (self.calculate_delay_for_resource(name) for name in list(self._resources)),
            default=0.0,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        resource: str = DEFAULT_RESOURCE,
        priority: int = 0,
        skip_queue: bool = False,
    ) -> T:
        """Run `operation` once quota allows it.

        A blocked resource parks the call in the priority queue unless
        `skip_queue` is set, in which case the call sleeps until the reset.
        Quota is checked again after every sleep and consumed only when a
        unit is left.
        """

        throttled = False
        while True:
            bucket = self.get_resource(resource)
            self._refresh(bucket)
            if _is_blocked(bucket):
                if not skip_queue:
                    # the queue processor consumes on release
                    await self._wait_in_queue(resource, priority)
                    break
                wait = max(_MIN_PROCESSOR_WAKE_SECONDS, bucket.reset_at - self._clock())
                logger.debug("Waiting %.3fs for %s reset", wait, resource)
                await self._sleep(wait)
                continue
            if not throttled:
                delay = self.calculate_delay_for_resource(resource)
                if delay > 0:
                    logger.debug("Throttling %s call for %.3fs", resource, delay)
                    await self._sleep(delay)
                    throttled = True
                    continue
            self._consume(bucket)
            break
        return await operation()

    async def add_to_batch(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        *,
        resource: str = DEFAULT_RESOURCE,
    ) -> T:
        """Accumulate calls sharing `key` and run them together under one quota unit."""

        if not self.config.enable_batching:
            return await self.execute(operation, resource=resource)

        batch = self._batches.get(key)
        if batch is None:
            batch = _PendingBatch(resource=resource)
            self._batches[key] = batch
            batch.timer = self._spawn(self._flush_after_delay(key, batch))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        batch.operations.append(operation)
        batch.futures.append(future)
        if len(batch.operations) >= self.config.max_batch_size:
            self._batches.pop(key, None)
            if batch.timer is not None:
                batch.timer.cancel()
            self._spawn(self._run_batch(batch))
        return await future

    def clear_queue(self) -> int:
        """Reject every queued call; returns how many were dropped."""

        now = self._clock()
        dropped = 0
        for request in self._queue:
            if request.future.done():
                continue
            request.future.set_exception(
                QueueWaitExceededError(request.resource, waited_seconds=now - request.enqueued_at),
            )
            dropped += 1
        self._queue.clear()
        return dropped

    def queue_stats(self) -> QueueStats:
        now = self._clock()
        by_resource: dict[str, int] = {}
        for request in self._queue:
            by_resource[request.resource] = by_resource.get(request.resource, 0) + 1
        oldest = min((request.enqueued_at for request in self._queue), default=now)
        return QueueStats(
            size=len(self._queue),
            by_resource=by_resource,
            oldest_wait_seconds=now - oldest,
            processing=self._processor is not None and not self._processor.done(),
            pending_batches=len(self._batches),
        )

    def reset(self) -> None:
        """Forget live quota state and drop queued calls."""

        self.clear_queue()
        self._resources.clear()
        self._seed_resources()

    async def aclose(self) -> None:
        """Cancel background processing and reject whatever is still queued."""

        self.clear_queue()
        tasks = [task for task in self._background if not task.done()]
        if self._processor is not None and not self._processor.done():
            tasks.append(self._processor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for batch in self._batches.values():
            for future in batch.futures:
                if not future.done():
                    future.cancel()
        self._batches.clear()
        self._processor = None

    def _seed_resources(self) -> None:
        for name, limit in DEFAULT_RESOURCE_LIMITS.items():
            self._resources[name] = RateLimitResource(name=name, limit=limit, remaining=limit)

    def _refresh(self, resource: RateLimitResource) -> None:
        if not _is_blocked(resource) or resource.reset_at > self._clock():
            return
        resource.remaining = resource.limit
        resource.used = 0
        resource.is_limited = False
        resource.last_updated = self._clock()
        logger.info("Rate limit window reset for %s", resource.name)

    def _consume(self, resource: RateLimitResource) -> None:
        self._refresh(resource)
        resource.remaining = max(0, resource.remaining - 1)
        resource.used += 1

    async def _wait_in_queue(self, resource: str, priority: int) -> None:
        if len(self._queue) >= self.config.max_queue_size:
            raise QueueFullError(
                f"Rate limit queue is full ({self.config.max_queue_size} requests)",
                resource=resource,
                retry_after_seconds=self.calculate_delay_for_resource(resource),
            )
        request = _QueuedRequest(
            resource=resource,
            priority=priority,
            sequence=next(self._sequence),
            enqueued_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._queue.append(request)
        logger.info(
            "Queued %s call (priority=%s, queue size=%s)",
            resource,
            priority,
            len(self._queue),
        )
        if self._processor is None or self._processor.done():
            self._processor = asyncio.create_task(self._process_queue())
        try:
            await asyncio.wait_for(request.future, timeout=self.config.max_queue_wait_seconds)
        except TimeoutError:
            if request in self._queue:
                self._queue.remove(request)
            raise QueueWaitExceededError(
                resource,
                waited_seconds=self._clock() - request.enqueued_at,
            ) from None

    async def _process_queue(self) -> None:
        while self._queue:
            self._release_ready()
            if not self._queue:
                break
            await self._sleep(self._next_wake_delay())

    def _release_ready(self) -> None:
        self._queue.sort(key=lambda request: (-request.priority, request.sequence))
        for request in list(self._queue):
            if request.future.done():
                self._queue.remove(request)
                continue
            bucket = self.get_resource(request.resource)
            self._refresh(bucket)
            if _is_blocked(bucket):
                continue
            self._consume(bucket)
            self._queue.remove(request)
            request.future.set_result(None)

    def _next_wake_delay(self) -> float:
        now = self._clock()
        resets = [
            self.get_resource(request.resource).reset_at - now
            for request in self._queue
            if not request.future.done()
        ]
        soonest = min(resets, default=self.config.queue_poll_interval_seconds)
        return max(
            _MIN_PROCESSOR_WAKE_SECONDS,
            min(soonest, self.config.queue_poll_interval_seconds),
        )

    async def _flush_after_delay(self, key: str, batch: _PendingBatch) -> None:
        await self._sleep(self.config.batch_delay_seconds)
        if self._batches.get(key) is batch:
            del self._batches[key]
            await self._run_batch(batch)

    async def _run_batch(self, batch: _PendingBatch) -> None:
        async def run_all() -> list[Any]:
            return await asyncio.gather(
                *(operation() for operation in batch.operations),
                return_exceptions=True,
            )

        logger.debug("Running batch of %s %s calls", len(batch.operations), batch.resource)
        try:
            results = await self.execute(run_all, resource=batch.resource)
        except TaskError as error:
            for future in batch.futures:
                if not future.done():
                    future.set_exception(error)
            return
        for future, result in zip(batch.futures, results, strict=True):
            if future.done():
                continue
            if isinstance(result, asyncio.CancelledError):
                future.cancel()
            elif isinstance(result, BaseException):
                future.set_exception(result)
            else:
                future.set_result(result)

    def _spawn(self, coroutine: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


def _is_blocked(resource: RateLimitResource) -> bool:
    return resource.is_limited or resource.remaining <= 0
