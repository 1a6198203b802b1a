"""Domain models for task scheduling, retries and dead letters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskpool.errors import ErrorSeverity, TaskError


class TaskPriority(str, Enum):
    """Priority tiers assigned by the submitter."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskCategory(str, Enum):
    """Kind of work a task represents."""

    SECURITY = "security"
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DOCS = "docs"
    TEST = "test"
    CHORE = "chore"


class TaskComplexity(str, Enum):
    """Estimated effort, used to scale execution timeouts."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class TaskState(str, Enum):
    """Where a task currently lives inside the pool."""

    QUEUED = "queued"
    RETRY_PENDING = "retry_pending"
    DISPATCHED = "dispatched"
    DEAD_LETTERED = "dead_lettered"
    COMPLETED = "completed"


class WorkerSlotStatus(str, Enum):
    """Slot lifecycle: free -> busy -> free | unknown."""

    FREE = "free"
    BUSY = "busy"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class TaskMetadata:
    """Scheduling hints attached to a submitted task."""

    priority: TaskPriority = TaskPriority.MEDIUM
    category: TaskCategory = TaskCategory.FEATURE
    complexity: TaskComplexity = TaskComplexity.MODERATE
    affected_paths: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority.value,
            "category": self.category.value,
            "complexity": self.complexity.value,
            "affected_paths": list(self.affected_paths),
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskMetadata:
        return cls(
            priority=TaskPriority(payload.get("priority", TaskPriority.MEDIUM.value)),
            category=TaskCategory(payload.get("category", TaskCategory.FEATURE.value)),
            complexity=TaskComplexity(payload.get("complexity", TaskComplexity.MODERATE.value)),
            affected_paths=tuple(payload.get("affected_paths") or ()),
            labels=tuple(payload.get("labels") or ()),
        )


@dataclass(slots=True)
class TaskSpec:
    """Submission input: payload plus metadata."""

    payload: dict[str, Any] = field(default_factory=dict)
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    key: str | None = None


@dataclass(slots=True)
class Task:
    """Unit of work tracked by the pool."""

    task_id: str
    sequence: int
    payload: dict[str, Any]
    metadata: TaskMetadata
    submitted_at: datetime
    key: str | None = None
    priority_score: float = 0.0
    group_id: str | None = None
    retry_count: int = 0
    last_error: TaskError | None = None
    next_retry_at: datetime | None = None
    state: TaskState = TaskState.QUEUED

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of the task for dead-letter records."""

        return {
            "task_id": self.task_id,
            "key": self.key,
            "sequence": self.sequence,
            "payload": self.payload,
            "metadata": self.metadata.to_dict(),
            "priority_score": self.priority_score,
            "group_id": self.group_id,
            "retry_count": self.retry_count,
            "submitted_at": self.submitted_at.isoformat(),
        }


@dataclass(slots=True)
class WorkerSlot:
    """One execution slot in the pool's arena."""

    slot_id: str
    status: WorkerSlotStatus = WorkerSlotStatus.FREE
    current_task_id: str | None = None
    group_id: str | None = None
    last_assigned_at: datetime | None = None
    last_seen_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class RetryAttempt:
    """Immutable record of one failed attempt."""

    attempt: int
    timestamp: datetime
    error_code: str
    error_message: str
    delay_seconds: float
    duration_seconds: float
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "timestamp": self.timestamp.isoformat(),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "delay_seconds": self.delay_seconds,
            "duration_seconds": self.duration_seconds,
            "context": self.context,
        }


@dataclass(slots=True)
class FinalError:
    """Terminal error stored with a dead-letter entry."""

    code: str
    message: str
    severity: ErrorSeverity
    retryable: bool

    @classmethod
    def from_error(cls, error: TaskError) -> FinalError:
        return cls(
            code=error.code,
            message=error.message,
            severity=error.severity,
            retryable=error.retryable,
        )


@dataclass(slots=True)
class DeadLetterEntry:
    """Task that exhausted its retry budget or failed permanently."""

    entry_id: str
    task_id: str
    task_snapshot: dict[str, Any]
    total_attempts: int
    max_retries: int
    retry_history: list[RetryAttempt]
    final_error: FinalError
    created_at: datetime
    last_attempt_at: datetime
    can_reprocess: bool = False
    reprocess_after: datetime | None = None
    reprocess_attempts: int = 0

    @property
    def task_category(self) -> str | None:
        metadata = self.task_snapshot.get("metadata") or {}
        category = metadata.get("category")
        return str(category) if category is not None else None


@dataclass(slots=True)
class TaskOutcome:
    """Typed result produced by a worker-execution collaborator."""

    success: bool
    value: Any = None
    error: TaskError | None = None

    @classmethod
    def ok(cls, value: Any = None) -> TaskOutcome:
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, error: TaskError) -> TaskOutcome:
        return cls(success=False, error=error)


@dataclass(slots=True)
class TaskResult:
    """Eventual per-task outcome returned to the submitter."""

    task_id: str
    key: str | None
    success: bool
    attempts: int
    duration_seconds: float
    value: Any = None
    error_code: str | None = None
    error_message: str | None = None
    dead_letter_id: str | None = None


@dataclass(slots=True)
class SystemResources:
    """Sampled host utilization."""

    cpu_percent: float
    memory_percent: float
    cpu_cores: int
    memory_total_mb: float
    memory_free_mb: float
    sampled_at: datetime


@dataclass(slots=True)
class PoolStatus:
    """Aggregate progress snapshot for monitoring and CLI tooling."""

    active: int
    queued: int
    pending_retry: int
    completed: int
    succeeded: int
    failed: int
    current_worker_limit: int
    min_workers: int
    max_workers: int
    task_groups: int
    is_running: bool
    system_resources: SystemResources | None = None
