"""Deterministic failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskpool.errors import (
    CircuitOpenError,
    ErrorKind,
    QueueWaitExceededError,
    QuotaExceededError,
    TaskError,
    TransientError,
    ValidationError,
)

FAILURE_CLASSIFIER_VERSION = 1

EXIT_CODE_TIMEOUT = 124
DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (75, 137, 143)
DEFAULT_VALIDATION_EXIT_CODES: tuple[int, ...] = (64, 65)


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    QUOTA = "quota"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"
    QUEUE_WAIT = "queue_wait"
    NON_RETRYABLE = "non_retryable"


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    code: str
    reason: str

    def to_event_details(self, *, task_id: str) -> dict[str, object]:
        """Serialize classifier diagnostics for retry records."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "task_id": task_id,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason": self.reason,
        }


def as_task_error(error: BaseException) -> TaskError:
    """Wrap foreign exceptions into the typed taxonomy by exception type only."""

    if isinstance(error, TaskError):
        return error
    if isinstance(error, TimeoutError):
        return TransientError(
            str(error) or "execution timed out",
            code="TIMEOUT",
            kind=ErrorKind.TIMEOUT,
        )
    if isinstance(error, ConnectionError):
        return TransientError(str(error) or type(error).__name__, code="CONNECTION")
    return TaskError(f"{type(error).__name__}: {error}", code="UNHANDLED")


def classify_failure(error: BaseException) -> FailureClassification:
    """Map an error to a retry class using its type and explicit flags."""

    typed = as_task_error(error)
    if isinstance(typed, CircuitOpenError):
        return FailureClassification(
            failure_class=FailureClass.CIRCUIT_OPEN,
            retryable=True,
            code=typed.code,
            reason=f"breaker {typed.breaker_name} rejected the call",
        )
    if isinstance(typed, QueueWaitExceededError):
        return FailureClassification(
            failure_class=FailureClass.QUEUE_WAIT,
            retryable=True,
            code=typed.code,
            reason=f"rate limit queue wait exceeded for {typed.resource}",
        )
    if isinstance(typed, QuotaExceededError):
        return FailureClassification(
            failure_class=FailureClass.QUOTA,
            retryable=True,
            code=typed.code,
            reason=f"quota exhausted for {typed.resource}",
        )
    if isinstance(typed, ValidationError):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            retryable=False,
            code=typed.code,
            reason=typed.kind.value,
        )
    if typed.retryable:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            retryable=True,
            code=typed.code,
            reason=typed.kind.value,
        )
    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        retryable=False,
        code=typed.code,
        reason=typed.kind.value,
    )


def error_for_exit_code(
    *,
    exit_code: int,
    timed_out: bool,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
    validation_exit_codes: tuple[int, ...] = DEFAULT_VALIDATION_EXIT_CODES,
) -> TaskError:
    """Translate a worker process exit status into a typed error."""

    if timed_out or exit_code == EXIT_CODE_TIMEOUT:
        return TransientError(
            "worker process timed out",
            code="WORKER_TIMEOUT",
            kind=ErrorKind.TIMEOUT,
        )
    if exit_code in transient_exit_codes:
        return TransientError(
            f"worker process exited with transient code {exit_code}",
            code=f"EXIT_{exit_code}",
        )
    if exit_code in validation_exit_codes:
        return ValidationError(
            f"worker rejected task input (exit code {exit_code})",
            code=f"EXIT_{exit_code}",
        )
    return TaskError(
        f"worker process failed with exit code {exit_code}",
        code=f"EXIT_{exit_code}",
    )
