"""Retry policy: classification, backoff, retry-pending set and dead-letter hand-off."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from taskpool.dead_letter.store import DeadLetterStore
from taskpool.errors import CircuitOpenError, QuotaExceededError
from taskpool.models import DeadLetterEntry, RetryAttempt, Task, TaskState
from taskpool.scheduler.failure_classifier import (
    FailureClass,
    FailureClassification,
    as_task_error,
    classify_failure,
)
from taskpool.storage.common import utc_now

logger = logging.getLogger(__name__)

_MAX_BACKOFF_EXPONENT = 64
_EPOCH = datetime.min.replace(tzinfo=UTC)


class RetryDecision(str, Enum):
    """What happened to a failed task."""

    RETRY_SCHEDULED = "retry_scheduled"
    DEFERRED = "deferred"
    DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class RetryPolicy:
    """Retry budget and exponential backoff parameters."""

    enabled: bool = True
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.25

    def validate(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1.")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be within [0, 1].")


@dataclass(slots=True)
class RetryOutcome:
    """Decision taken for one failure."""

    decision: RetryDecision
    classification: FailureClassification
    delay_seconds: float
    dead_letter: DeadLetterEntry | None = None


class RetryCoordinator:
    """Own the retry-pending set and every task's attempt history."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        dead_letters: DeadLetterStore,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.policy.validate()
        self.dead_letters = dead_letters
        self._clock = clock
        self._rng = rng or random.Random()
        self._pending: dict[str, Task] = {}
        self._history: dict[str, list[RetryAttempt]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_tasks(self) -> list[Task]:
        return sorted(self._pending.values(), key=_due_key)

    def history(self, task_id: str) -> list[RetryAttempt]:
        return list(self._history.get(task_id, ()))

    def forget(self, task_id: str) -> None:
        """Drop bookkeeping for a task that completed."""

        self._history.pop(task_id, None)
        self._pending.pop(task_id, None)

    def classify(self, error: BaseException) -> FailureClassification:
        return classify_failure(error)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``, capped at the max delay."""

        policy = self.policy
        exponent = min(max(attempt, 0), _MAX_BACKOFF_EXPONENT)
        raw = policy.base_delay_seconds * policy.backoff_multiplier**exponent
        delay = min(raw, policy.max_delay_seconds)
        if policy.jitter and policy.jitter_factor > 0:
            delay += delay * policy.jitter_factor * self._rng.uniform(-1.0, 1.0)
        return max(0.0, min(delay, policy.max_delay_seconds))

    def handle_failure(
        self,
        task: Task,
        error: BaseException,
        *,
        duration_seconds: float = 0.0,
        context: dict[str, Any] | None = None,
    ) -> RetryOutcome:
        """Schedule a retry, defer a rejected call, or dead-letter the task."""

        typed = as_task_error(error)
        classification = classify_failure(typed)
        now = self._clock()
        task.last_error = typed

        if isinstance(typed, CircuitOpenError):
            delay = max(typed.retry_after_seconds, self.policy.base_delay_seconds)
            self._park(task, now=now, delay_seconds=delay)
            logger.info(
                "Task %s deferred %.2fs: circuit %s is open",
                task.task_id,
                delay,
                typed.breaker_name,
            )
            return RetryOutcome(
                decision=RetryDecision.DEFERRED,
                classification=classification,
                delay_seconds=delay,
            )

        history = self._history.setdefault(task.task_id, [])
        will_retry = (
            self.policy.enabled
            and classification.retryable
            and task.retry_count < self.policy.max_retries
        )
        delay = self.backoff(task.retry_count) if will_retry else 0.0
        if will_retry and isinstance(typed, QuotaExceededError) and typed.retry_after_seconds:
            delay = max(delay, typed.retry_after_seconds)

        history.append(
            RetryAttempt(
                attempt=len(history) + 1,
                timestamp=now,
                error_code=typed.code,
                error_message=typed.message,
                delay_seconds=delay,
                duration_seconds=duration_seconds,
                context={
                    **classification.to_event_details(task_id=task.task_id),
                    **(context or {}),
                },
            ),
        )

        if will_retry:
            task.retry_count += 1
            self._park(task, now=now, delay_seconds=delay)
            logger.warning(
                "Task %s failed with %s, retry %s/%s in %.2fs",
                task.task_id,
                typed.code,
                task.retry_count,
                self.policy.max_retries,
                delay,
            )
            return RetryOutcome(
                decision=RetryDecision.RETRY_SCHEDULED,
                classification=classification,
                delay_seconds=delay,
            )

        if classification.failure_class in {FailureClass.VALIDATION, FailureClass.NON_RETRYABLE}:
            logger.warning("Task %s failed permanently: %s", task.task_id, typed.message)
        entry = self.dead_letters.add_entry(
            task,
            history,
            typed,
            max_retries=self.policy.max_retries,
        )
        task.state = TaskState.DEAD_LETTERED
        task.next_retry_at = None
        self._history.pop(task.task_id, None)
        return RetryOutcome(
            decision=RetryDecision.DEAD_LETTERED,
            classification=classification,
            delay_seconds=0.0,
            dead_letter=entry,
        )

    def release_due(self, now: datetime | None = None) -> list[Task]:
        """Pop retry-pending tasks whose next-retry time has passed, earliest first."""

        current = now or self._clock()
        due = sorted(
            (
                task
                for task in self._pending.values()
                if task.next_retry_at is None or task.next_retry_at <= current
            ),
            key=_due_key,
        )
        for task in due:
            del self._pending[task.task_id]
            task.state = TaskState.QUEUED
            task.next_retry_at = None
        return due

    def next_due_at(self) -> datetime | None:
        return min(
            (task.next_retry_at for task in self._pending.values() if task.next_retry_at),
            default=None,
        )

    def _park(self, task: Task, *, now: datetime, delay_seconds: float) -> None:
        task.next_retry_at = now + timedelta(seconds=delay_seconds)
        task.state = TaskState.RETRY_PENDING
        self._pending[task.task_id] = task


def _due_key(task: Task) -> tuple[datetime, int]:
    return (task.next_retry_at or _EPOCH, task.sequence)
