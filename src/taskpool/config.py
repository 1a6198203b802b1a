"""Runtime configuration for the worker pool, resilience guards and dead letters."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from taskpool.dead_letter.store import DeadLetterConfig
from taskpool.resilience.circuit_breaker import CircuitBreakerConfig
from taskpool.resilience.rate_limiter import RateLimiterConfig
from taskpool.scheduler.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    DEFAULT_VALIDATION_EXIT_CODES,
)
from taskpool.scheduler.pool import PoolConfig
from taskpool.scheduler.resources import ScalingConfig
from taskpool.scheduler.retry import RetryPolicy

DEFAULT_DB_PATH = ".taskpool.db"
DEFAULT_WORKER_COMMAND = (
    sys.executable + " -m taskpool.workers.echo_agent --task-manifest {task_manifest}"
)
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class PoolSettings:
    """Concurrency bounds and resource thresholds."""

    min_workers: int = 1
    max_workers: int = 10
    initial_workers: int | None = None
    cpu_high_percent: float = 80.0
    cpu_low_percent: float = 40.0
    memory_high_percent: float = 85.0
    memory_low_percent: float = 50.0
    resource_check_interval_seconds: float = 10.0
    retry_check_interval_seconds: float = 1.0
    scaling_enabled: bool = True
    task_timeout_seconds: float = 1_800.0


@dataclass(slots=True)
class RetrySettings:
    """Retry budget and backoff."""

    enabled: bool = True
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Default thresholds for every breaker."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    success_threshold: int = 1
    half_open_max_attempts: int = 3


@dataclass(slots=True)
class RateLimitSettings:
    """Throttle and queue settings for quota-bound calls."""

    throttle_threshold: int = 100
    max_queue_size: int = 100
    max_queue_wait_seconds: float = 300.0
    enable_batching: bool = True
    max_batch_size: int = 10


@dataclass(slots=True)
class DeadLetterSettings:
    """Dead-letter capacity and retention."""

    max_entries: int = 1_000
    retention_days: int = 30
    max_reprocess_attempts: int = 3
    reprocess_delay_seconds: float = 60.0
    flush_interval_seconds: float = 30.0


@dataclass(slots=True)
class WorkerSettings:
    """How the command worker launches one attempt."""

    command_template: str = DEFAULT_WORKER_COMMAND
    workdir_root: Path = Path(".taskpool/workdir")
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES
    validation_exit_codes: tuple[int, ...] = DEFAULT_VALIDATION_EXIT_CODES
    graceful_shutdown_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    log_level: str = "WARNING"
    sqlite_busy_timeout_ms: int = 5_000
    pool: PoolSettings = field(default_factory=PoolSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:  # noqa: PLR0915
        """Load settings from environment with defaults suitable for local runs."""

        initial_workers_raw = os.getenv("TASKPOOL_INITIAL_WORKERS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TASKPOOL_DB_PATH", DEFAULT_DB_PATH)),
            log_level=os.getenv("TASKPOOL_LOG_LEVEL", "WARNING").strip().upper(),
            sqlite_busy_timeout_ms=int(os.getenv("TASKPOOL_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            pool=PoolSettings(
                min_workers=int(os.getenv("TASKPOOL_MIN_WORKERS", "1")),
                max_workers=int(os.getenv("TASKPOOL_MAX_WORKERS", "10")),
                initial_workers=int(initial_workers_raw) if initial_workers_raw else None,
                cpu_high_percent=float(os.getenv("TASKPOOL_CPU_HIGH_PERCENT", "80")),
                cpu_low_percent=float(os.getenv("TASKPOOL_CPU_LOW_PERCENT", "40")),
                memory_high_percent=float(os.getenv("TASKPOOL_MEMORY_HIGH_PERCENT", "85")),
                memory_low_percent=float(os.getenv("TASKPOOL_MEMORY_LOW_PERCENT", "50")),
                resource_check_interval_seconds=float(
                    os.getenv("TASKPOOL_RESOURCE_CHECK_INTERVAL_SECONDS", "10"),
                ),
                retry_check_interval_seconds=float(
                    os.getenv("TASKPOOL_RETRY_CHECK_INTERVAL_SECONDS", "1"),
                ),
                scaling_enabled=_env_bool("TASKPOOL_SCALING_ENABLED", default=True),
                task_timeout_seconds=float(os.getenv("TASKPOOL_TASK_TIMEOUT_SECONDS", "1800")),
            ),
            retry=RetrySettings(
                enabled=_env_bool("TASKPOOL_RETRY_ENABLED", default=True),
                max_retries=int(os.getenv("TASKPOOL_MAX_RETRIES", "3")),
                base_delay_seconds=float(os.getenv("TASKPOOL_RETRY_BASE_DELAY_SECONDS", "1")),
                max_delay_seconds=float(os.getenv("TASKPOOL_RETRY_MAX_DELAY_SECONDS", "60")),
                backoff_multiplier=float(os.getenv("TASKPOOL_RETRY_BACKOFF_MULTIPLIER", "2")),
                jitter=_env_bool("TASKPOOL_RETRY_JITTER", default=True),
            ),
            circuit_breaker=CircuitBreakerSettings(
                failure_threshold=int(os.getenv("TASKPOOL_BREAKER_FAILURE_THRESHOLD", "5")),
                reset_timeout_seconds=float(
                    os.getenv("TASKPOOL_BREAKER_RESET_TIMEOUT_SECONDS", "60"),
                ),
                success_threshold=int(os.getenv("TASKPOOL_BREAKER_SUCCESS_THRESHOLD", "1")),
                half_open_max_attempts=int(
                    os.getenv("TASKPOOL_BREAKER_HALF_OPEN_MAX_ATTEMPTS", "3"),
                ),
            ),
            rate_limit=RateLimitSettings(
                throttle_threshold=int(os.getenv("TASKPOOL_RATE_LIMIT_THROTTLE_THRESHOLD", "100")),
                max_queue_size=int(os.getenv("TASKPOOL_RATE_LIMIT_MAX_QUEUE_SIZE", "100")),
                max_queue_wait_seconds=float(
                    os.getenv("TASKPOOL_RATE_LIMIT_MAX_QUEUE_WAIT_SECONDS", "300"),
                ),
                enable_batching=_env_bool("TASKPOOL_RATE_LIMIT_BATCHING", default=True),
                max_batch_size=int(os.getenv("TASKPOOL_RATE_LIMIT_MAX_BATCH_SIZE", "10")),
            ),
            dead_letter=DeadLetterSettings(
                max_entries=int(os.getenv("TASKPOOL_DLQ_MAX_ENTRIES", "1000")),
                retention_days=int(os.getenv("TASKPOOL_DLQ_RETENTION_DAYS", "30")),
                max_reprocess_attempts=int(
                    os.getenv("TASKPOOL_DLQ_MAX_REPROCESS_ATTEMPTS", "3"),
                ),
                reprocess_delay_seconds=float(
                    os.getenv("TASKPOOL_DLQ_REPROCESS_DELAY_SECONDS", "60"),
                ),
                flush_interval_seconds=float(
                    os.getenv("TASKPOOL_DLQ_FLUSH_INTERVAL_SECONDS", "30"),
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("TASKPOOL_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                workdir_root=Path(os.getenv("TASKPOOL_WORKDIR", ".taskpool/workdir")),
                transient_exit_codes=_env_int_tuple(
                    "TASKPOOL_TRANSIENT_EXIT_CODES",
                    DEFAULT_TRANSIENT_EXIT_CODES,
                ),
                validation_exit_codes=_env_int_tuple(
                    "TASKPOOL_VALIDATION_EXIT_CODES",
                    DEFAULT_VALIDATION_EXIT_CODES,
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("TASKPOOL_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"TASKPOOL_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("TASKPOOL_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.pool.task_timeout_seconds <= 0:
            raise ValueError("TASKPOOL_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.pool.initial_workers is not None and self.pool.initial_workers < 1:
            raise ValueError("TASKPOOL_INITIAL_WORKERS must be >= 1 when set.")
        if self.rate_limit.max_queue_size < 1:
            raise ValueError("TASKPOOL_RATE_LIMIT_MAX_QUEUE_SIZE must be >= 1.")
        if self.rate_limit.max_batch_size < 1:
            raise ValueError("TASKPOOL_RATE_LIMIT_MAX_BATCH_SIZE must be >= 1.")
        if not self.worker.command_template.strip():
            raise ValueError("TASKPOOL_WORKER_COMMAND must not be empty.")
        self.pool_config().validate()
        self.retry_policy().validate()
        self.breaker_config().validate()
        self.dead_letter_config().validate()

    def pool_config(self) -> PoolConfig:
        pool = self.pool
        return PoolConfig(
            scaling=ScalingConfig(
                min_workers=pool.min_workers,
                max_workers=pool.max_workers,
                cpu_high_percent=pool.cpu_high_percent,
                cpu_low_percent=pool.cpu_low_percent,
                memory_high_percent=pool.memory_high_percent,
                memory_low_percent=pool.memory_low_percent,
                check_interval_seconds=pool.resource_check_interval_seconds,
                enabled=pool.scaling_enabled,
            ),
            initial_workers=pool.initial_workers,
            retry_check_interval_seconds=pool.retry_check_interval_seconds,
            task_timeout_seconds=pool.task_timeout_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        retry = self.retry
        return RetryPolicy(
            enabled=retry.enabled,
            max_retries=retry.max_retries,
            base_delay_seconds=retry.base_delay_seconds,
            max_delay_seconds=retry.max_delay_seconds,
            backoff_multiplier=retry.backoff_multiplier,
            jitter=retry.jitter,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        breaker = self.circuit_breaker
        return CircuitBreakerConfig(
            failure_threshold=breaker.failure_threshold,
            reset_timeout_seconds=breaker.reset_timeout_seconds,
            success_threshold=breaker.success_threshold,
            half_open_max_attempts=breaker.half_open_max_attempts,
        )

    def rate_limiter_config(self) -> RateLimiterConfig:
        limits = self.rate_limit
        return RateLimiterConfig(
            throttle_threshold=limits.throttle_threshold,
            max_queue_size=limits.max_queue_size,
            max_queue_wait_seconds=limits.max_queue_wait_seconds,
            enable_batching=limits.enable_batching,
            max_batch_size=limits.max_batch_size,
        )

    def dead_letter_config(self) -> DeadLetterConfig:
        dead_letter = self.dead_letter
        return DeadLetterConfig(
            max_entries=dead_letter.max_entries,
            retention_days=dead_letter.retention_days,
            max_reprocess_attempts=dead_letter.max_reprocess_attempts,
            reprocess_delay_seconds=dead_letter.reprocess_delay_seconds,
            flush_interval_seconds=dead_letter.flush_interval_seconds,
        )


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
