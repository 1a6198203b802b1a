"""Typed failure taxonomy shared by the pool, retry policy and guarded call paths."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any

_RETRYABLE_CLIENT_STATUSES = frozenset({408})
_QUOTA_STATUS = 429


class ErrorKind(str, Enum):
    """Normalized error kinds used for retry decisions."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    QUOTA = "quota"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"
    QUEUE_WAIT = "queue_wait"
    UNHANDLED = "unhandled"


class ErrorSeverity(str, Enum):
    """Severity recorded with dead-letter final errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskError(Exception):
    """Base error carrying an explicit retryability flag."""

    default_code = "TASK_ERROR"
    default_kind = ErrorKind.UNHANDLED
    default_retryable = False
    default_severity = ErrorSeverity.HIGH

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        code: str | None = None,
        kind: ErrorKind | None = None,
        retryable: bool | None = None,
        severity: ErrorSeverity | None = None,
        status_code: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.kind = kind or self.default_kind
        self.retryable = self.default_retryable if retryable is None else retryable
        self.severity = severity or self.default_severity
        self.status_code = status_code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Serialize for file contracts and diagnostics."""

        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "status_code": self.status_code,
            "details": self.details,
        }


class TransientError(TaskError):
    """Network, timeout or server-side failure that is safe to retry."""

    default_code = "TRANSIENT"
    default_kind = ErrorKind.NETWORK
    default_retryable = True
    default_severity = ErrorSeverity.MEDIUM


class QuotaExceededError(TaskError):
    """External quota exhausted; retry after the window resets."""

    default_code = "QUOTA_EXCEEDED"
    default_kind = ErrorKind.QUOTA
    default_retryable = True
    default_severity = ErrorSeverity.MEDIUM

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        resource: str = "core",
        retry_after_seconds: float | None = None,
        headers: Mapping[str, str] | None = None,
        code: str | None = None,
        status_code: int | None = _QUOTA_STATUS,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.resource = resource
        self.retry_after_seconds = retry_after_seconds
        self.headers: dict[str, str] = dict(headers or {})


class QueueFullError(QuotaExceededError):
    """Rate limiter queue is at capacity."""

    default_code = "RATE_LIMIT_QUEUE_FULL"


class ValidationError(TaskError):
    """Permanent input or request problem; never retried."""

    default_code = "VALIDATION"
    default_kind = ErrorKind.VALIDATION
    default_retryable = False


class CircuitOpenError(TaskError):
    """Call rejected by an open circuit breaker before it ran."""

    default_code = "CIRCUIT_OPEN"
    default_kind = ErrorKind.CIRCUIT_OPEN
    default_retryable = True
    default_severity = ErrorSeverity.MEDIUM

    def __init__(self, breaker_name: str, *, retry_after_seconds: float) -> None:
        super().__init__(
            f"Circuit '{breaker_name}' is open; retry in {retry_after_seconds:.1f}s",
        )
        self.breaker_name = breaker_name
        self.retry_after_seconds = retry_after_seconds


class QueueWaitExceededError(TaskError):
    """Queued rate-limited call waited longer than allowed."""

    default_code = "RATE_LIMIT_QUEUE_TIMEOUT"
    default_kind = ErrorKind.QUEUE_WAIT
    default_retryable = True
    default_severity = ErrorSeverity.MEDIUM

    def __init__(self, resource: str, *, waited_seconds: float) -> None:
        super().__init__(
            f"Queued request for '{resource}' waited {waited_seconds:.1f}s without capacity",
        )
        self.resource = resource
        self.waited_seconds = waited_seconds


def is_retryable_status(status_code: int) -> bool:
    """Whether an HTTP status signals a transient dependency problem."""

    return (
        status_code >= 500  # noqa: PLR2004
        or status_code == _QUOTA_STATUS
        or status_code in _RETRYABLE_CLIENT_STATUSES
    )


def error_for_status(
    status_code: int,
    message: str,
    *,
    resource: str = "core",
    retry_after_seconds: float | None = None,
) -> TaskError:
    """Map an HTTP status code onto the failure taxonomy."""

    if status_code == _QUOTA_STATUS:
        return QuotaExceededError(
            message,
            resource=resource,
            retry_after_seconds=retry_after_seconds,
        )
    kind = ErrorKind.TIMEOUT if status_code in _RETRYABLE_CLIENT_STATUSES else ErrorKind.SERVER
    if is_retryable_status(status_code):
        return TransientError(
            message,
            code=f"HTTP_{status_code}",
            kind=kind,
            status_code=status_code,
        )
    return ValidationError(message, code=f"HTTP_{status_code}", status_code=status_code)


def error_from_dict(payload: Mapping[str, Any]) -> TaskError:
    """Rebuild a typed error from a serialized contract payload."""

    message = str(payload.get("message") or "worker reported failure")
    raw_kind = str(payload.get("kind") or ErrorKind.UNHANDLED.value)
    try:
        kind = ErrorKind(raw_kind)
    except ValueError as error:
        raise ValidationError(f"Unknown error kind in worker result: {raw_kind!r}") from error
    retryable = payload.get("retryable")
    status_code = payload.get("status_code")
    common: dict[str, Any] = {
        "code": payload.get("code") or None,
        "status_code": int(status_code) if status_code is not None else None,
        "details": payload.get("details") or None,
    }
    if kind is ErrorKind.QUOTA:
        retry_after = payload.get("retry_after_seconds")
        return QuotaExceededError(
            message,
            resource=str(payload.get("resource") or "core"),
            retry_after_seconds=float(retry_after) if retry_after is not None else None,
            code=common["code"],
        )
    if kind is ErrorKind.VALIDATION:
        return ValidationError(message, **common)
    if kind in {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER}:
        return TransientError(
            message,
            kind=kind,
            retryable=None if retryable is None else bool(retryable),
            **common,
        )
    return TaskError(
        message,
        kind=kind,
        retryable=bool(retryable) if retryable is not None else False,
        **common,
    )
