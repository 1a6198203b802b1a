"""Resource-aware worker pool: queue, dispatch loop, monitors and settlement."""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import itertools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from taskpool.dead_letter.store import DeadLetterStore
from taskpool.errors import CircuitOpenError, ErrorKind, TaskError, TransientError
from taskpool.models import (
    PoolStatus,
    SystemResources,
    Task,
    TaskOutcome,
    TaskResult,
    TaskSpec,
    TaskState,
    WorkerSlot,
    WorkerSlotStatus,
)
from taskpool.resilience.circuit_breaker import CircuitBreakerRegistry
from taskpool.scheduler.resources import (
    ResourceSampler,
    ScalingConfig,
    clamp_limit,
    log_limit_change,
    next_worker_limit,
    sample_system_resources,
)
from taskpool.scheduler.retry import RetryCoordinator, RetryDecision
from taskpool.scheduler.scoring import group_id_for_paths, priority_score, timeout_for
from taskpool.storage.common import utc_now
from taskpool.workers.base import WorkerExecutor

logger = logging.getLogger(__name__)

_NEVER = datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True)
class PoolConfig:
    """Pool sizing, monitor cadence and per-task execution limits."""

    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    initial_workers: int | None = None
    retry_check_interval_seconds: float = 1.0
    task_timeout_seconds: float | None = 1_800.0
    breaker_name: str | None = "worker-execution"

    def validate(self) -> None:
        self.scaling.validate()
        if self.retry_check_interval_seconds <= 0:
            raise ValueError("retry_check_interval_seconds must be > 0.")
        if self.task_timeout_seconds is not None and self.task_timeout_seconds <= 0:
            raise ValueError("task_timeout_seconds must be > 0 when set.")


class WorkerPool:
    """Dispatch tasks to a bounded, resource-scaled set of worker slots.

    All queue, slot and counter mutation happens on the event loop that runs
    the pool. Executions are independent asyncio tasks that report back
    through `_settle`; the blocking resource sampler runs in a thread and only
    its result is applied on the loop.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: WorkerExecutor,
        *,
        config: PoolConfig | None = None,
        retry: RetryCoordinator | None = None,
        dead_letters: DeadLetterStore | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        sampler: ResourceSampler = sample_system_resources,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or PoolConfig()
        self.config.validate()
        self._executor = executor
        if retry is None:
            if dead_letters is None:
                dead_letters = DeadLetterStore()
            retry = RetryCoordinator(dead_letters=dead_letters, clock=clock)
        self.retry = retry
        self.dead_letters = retry.dead_letters
        self.breakers = breakers if breakers is not None else CircuitBreakerRegistry()
        self._sampler = sampler
        self._clock = clock

        scaling = self.config.scaling
        self._slots: dict[str, WorkerSlot] = {
            f"worker-{index}": WorkerSlot(slot_id=f"worker-{index}")
            for index in range(1, scaling.max_workers + 1)
        }
        self._limit = clamp_limit(self.config.initial_workers or scaling.max_workers, scaling)
        self._queue: list[Task] = []
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._results: dict[str, TaskResult] = {}
        self._first_dispatch: dict[str, float] = {}
        self._sequence = itertools.count(1)
        self._succeeded = 0
        self._failed = 0
        self._resources: SystemResources | None = None
        self._running = False
        self._stopped = False
        self._monitors: list[asyncio.Task[None]] = []
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def current_worker_limit(self) -> int:
        return self._limit

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def slots(self) -> list[WorkerSlot]:
        return list(self._slots.values())

    @property
    def results(self) -> list[TaskResult]:
        return list(self._results.values())

    def submit(self, specs: Iterable[TaskSpec]) -> list[Task]:
        """Stamp ids, scores and group ids, then enqueue in score order."""

        submitted: list[Task] = []
        for spec in specs:
            sequence = next(self._sequence)
            task = Task(
                task_id=f"task-{sequence}",
                sequence=sequence,
                payload=dict(spec.payload),
                metadata=spec.metadata,
                submitted_at=self._clock(),
                key=spec.key,
                priority_score=priority_score(spec.metadata),
                group_id=group_id_for_paths(spec.metadata.affected_paths),
            )
            self._enqueue(task)
            submitted.append(task)

        if submitted:
            self._idle.clear()
            logger.info("Submitted %s tasks, %s queued", len(submitted), len(self._queue))
            self._dispatch()
        return submitted

    async def start(self) -> None:
        """Start the monitors and begin dispatching."""

        if self._running:
            return
        self._running = True
        self._stopped = False
        self.dead_letters.start_flusher()
        self._monitors = [asyncio.create_task(self._retry_monitor())]
        if self.config.scaling.enabled:
            self._monitors.append(asyncio.create_task(self._resource_monitor()))
        logger.info(
            "Worker pool started: limit=%s range=[%s, %s]",
            self._limit,
            self.config.scaling.min_workers,
            self.config.scaling.max_workers,
        )
        self._dispatch()
        self._check_idle()

    async def join(self) -> None:
        """Wait until nothing is queued, pending retry or in flight (or the pool stopped)."""

        self._check_idle()
        await self._idle.wait()

    async def run(self, specs: Iterable[TaskSpec]) -> list[TaskResult]:
        """Submit, drain and shut down; returns results in submission order."""

        tasks = self.submit(specs)
        await self.start()
        try:
            await self.join()
        finally:
            await self.shutdown()
        return [self._results[task.task_id] for task in tasks if task.task_id in self._results]

    def stop(self) -> None:
        """Halt new dispatches; in-flight executions finish on their own."""

        if not self._running:
            return
        self._running = False
        self._stopped = True
        for monitor in self._monitors:
            monitor.cancel()
        logger.info(
            "Worker pool stopping: active=%s queued=%s pending_retry=%s",
            len(self._in_flight),
            len(self._queue),
            self.retry.pending_count,
        )
        self._check_idle()

    async def shutdown(self) -> None:
        """Stop, wait for in-flight executions, then flush dead letters."""

        self.stop()
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        for monitor in self._monitors:
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
        self._monitors = []
        await self.dead_letters.stop_flusher()
        self.dead_letters.flush()

    async def rescale(self) -> int:
        """Sample resources now and apply the scaling rule; returns the new limit."""

        resources = await asyncio.to_thread(self._sampler)
        self._apply_resources(resources)
        return self._limit

    def get_status(self) -> PoolStatus:
        return PoolStatus(
            active=len(self._in_flight),
            queued=len(self._queue),
            pending_retry=self.retry.pending_count,
            completed=self._succeeded + self._failed,
            succeeded=self._succeeded,
            failed=self._failed,
            current_worker_limit=self._limit,
            min_workers=self.config.scaling.min_workers,
            max_workers=self.config.scaling.max_workers,
            task_groups=len({task.group_id for task in self._queue if task.group_id is not None}),
            is_running=self._running,
            system_resources=self._resources,
        )

    def _enqueue(self, task: Task) -> None:
        task.state = TaskState.QUEUED
        bisect.insort(self._queue, task, key=_queue_key)

    def _dispatch(self) -> None:
        if not self._running:
            return
        while self._queue and len(self._in_flight) < self._limit:
            slot = self._acquire_slot()
            if slot is None:
                break
            task = self._select_next_task(slot.group_id)
            self._start_execution(slot, task)

    def _acquire_slot(self) -> WorkerSlot | None:
        free = [slot for slot in self._slots.values() if slot.status is WorkerSlotStatus.FREE]
        if not free:
            unknown = [
                slot for slot in self._slots.values() if slot.status is WorkerSlotStatus.UNKNOWN
            ]
            if not unknown:
                return None
            recycled = unknown[0]
            logger.warning("Recycling worker slot %s from unknown state", recycled.slot_id)
            recycled.status = WorkerSlotStatus.FREE
            free = [recycled]

        queued_groups = {task.group_id for task in self._queue if task.group_id is not None}
        for slot in free:
            if slot.group_id is not None and slot.group_id in queued_groups:
                return slot
        return min(free, key=lambda slot: slot.last_assigned_at or _NEVER)

    def _select_next_task(self, preferred_group: str | None) -> Task:
        if preferred_group is not None:
            for index, task in enumerate(self._queue):
                if task.group_id == preferred_group:
                    return self._queue.pop(index)
        return self._queue.pop(0)

    def _start_execution(self, slot: WorkerSlot, task: Task) -> None:
        now = self._clock()
        slot.status = WorkerSlotStatus.BUSY
        slot.current_task_id = task.task_id
        slot.group_id = task.group_id
        slot.last_assigned_at = now
        slot.last_seen_at = now
        task.state = TaskState.DISPATCHED
        self._idle.clear()
        attempt = task.retry_count + 1
        self._first_dispatch.setdefault(task.task_id, time.monotonic())
        self._in_flight[task.task_id] = asyncio.create_task(
            self._execute(slot, task, attempt),
            name=f"taskpool-{task.task_id}",
        )
        logger.debug(
            "Dispatched %s (score=%s group=%s attempt=%s) to %s",
            task.task_id,
            task.priority_score,
            task.group_id,
            attempt,
            slot.slot_id,
        )

    async def _execute(self, slot: WorkerSlot, task: Task, attempt: int) -> None:
        started = time.monotonic()
        outcome: TaskOutcome | None = None
        crash: Exception | None = None
        try:
            outcome = await self._run_attempt(task, attempt)
        except asyncio.CancelledError:
            slot.status = WorkerSlotStatus.UNKNOWN
            slot.current_task_id = None
            self._in_flight.pop(task.task_id, None)
            raise
        except Exception as error:
            logger.exception("Executor crashed on %s", task.task_id)
            crash = error
        self._settle(
            slot,
            task,
            outcome=outcome,
            crash=crash,
            attempt=attempt,
            duration_seconds=time.monotonic() - started,
        )

    async def _run_attempt(self, task: Task, attempt: int) -> TaskOutcome:
        timeout = (
            timeout_for(task.metadata, self.config.task_timeout_seconds)
            if self.config.task_timeout_seconds is not None
            else None
        )

        async def attempt_once() -> TaskOutcome:
            try:
                outcome = await asyncio.wait_for(
                    self._executor.execute(task, attempt=attempt),
                    timeout=timeout,
                )
            except TimeoutError as error:
                raise TransientError(
                    f"{task.task_id} exceeded its {timeout}s timeout",
                    code="TASK_TIMEOUT",
                    kind=ErrorKind.TIMEOUT,
                ) from error
            error = outcome.error
            if (
                not outcome.success
                and error is not None
                and error.retryable
                and not isinstance(error, CircuitOpenError)
            ):
                raise error
            return outcome

        try:
            if self.config.breaker_name is None:
                return await attempt_once()
            breaker = self.breakers.get(self.config.breaker_name)
            return await breaker.call(attempt_once)
        except TaskError as error:
            return TaskOutcome.failed(error)

    def _settle(  # noqa: PLR0913
        self,
        slot: WorkerSlot,
        task: Task,
        *,
        outcome: TaskOutcome | None,
        crash: Exception | None,
        attempt: int,
        duration_seconds: float,
    ) -> None:
        self._in_flight.pop(task.task_id, None)
        slot.current_task_id = None
        slot.last_seen_at = self._clock()
        slot.status = WorkerSlotStatus.UNKNOWN if crash is not None else WorkerSlotStatus.FREE

        if outcome is not None and outcome.success:
            task.state = TaskState.COMPLETED
            self._succeeded += 1
            self.retry.forget(task.task_id)
            self._record_result(task, success=True, value=outcome.value)
            logger.info("Task %s succeeded on attempt %s", task.task_id, attempt)
        else:
            failure: BaseException
            if crash is not None:
                failure = crash
            elif outcome is not None and outcome.error is not None:
                failure = outcome.error
            else:
                failure = TaskError("worker reported failure without an error", code="NO_ERROR")
            decision = self.retry.handle_failure(
                task,
                failure,
                duration_seconds=duration_seconds,
                context={"slot_id": slot.slot_id, "attempt": attempt},
            )
            if decision.decision is RetryDecision.DEAD_LETTERED:
                self._failed += 1
                self._record_result(
                    task,
                    success=False,
                    dead_letter_id=decision.dead_letter.entry_id if decision.dead_letter else None,
                )

        self._dispatch()
        self._check_idle()

    def _record_result(
        self,
        task: Task,
        *,
        success: bool,
        value: object = None,
        dead_letter_id: str | None = None,
    ) -> None:
        started = self._first_dispatch.pop(task.task_id, time.monotonic())
        error = task.last_error if not success else None
        self._results[task.task_id] = TaskResult(
            task_id=task.task_id,
            key=task.key,
            success=success,
            attempts=task.retry_count + 1,
            duration_seconds=time.monotonic() - started,
            value=value,
            error_code=error.code if error is not None else None,
            error_message=error.message if error is not None else None,
            dead_letter_id=dead_letter_id,
        )

    def _promote_due_retries(self) -> None:
        due = self.retry.release_due()
        for task in due:
            task.priority_score = priority_score(task.metadata)
            self._enqueue(task)
            logger.info(
                "Task %s re-queued for retry %s (score=%s)",
                task.task_id,
                task.retry_count,
                task.priority_score,
            )
        if due:
            self._dispatch()

    def _apply_resources(self, resources: SystemResources) -> None:
        self._resources = resources
        previous = self._limit
        self._limit = next_worker_limit(
            current=previous,
            resources=resources,
            config=self.config.scaling,
        )
        log_limit_change(previous, self._limit, resources)
        if self._limit > previous:
            self._dispatch()

    async def _retry_monitor(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.retry_check_interval_seconds)
            self._promote_due_retries()
            self._check_idle()

    async def _resource_monitor(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.scaling.check_interval_seconds)
            try:
                await self.rescale()
            except Exception:
                logger.exception("Resource sampling failed; keeping limit %s", self._limit)

    def _check_idle(self) -> None:
        busy = bool(self._in_flight) or (
            not self._stopped and (bool(self._queue) or self.retry.pending_count > 0)
        )
        if busy:
            self._idle.clear()
        else:
            self._idle.set()


def _queue_key(task: Task) -> tuple[float, int]:
    return (-task.priority_score, task.sequence)
