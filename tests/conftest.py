"""Shared test fixtures."""

from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

from taskpool.dead_letter.store import DeadLetterStore
from taskpool.models import SystemResources, Task, TaskMetadata
from taskpool.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from taskpool.scheduler.pool import PoolConfig, WorkerPool
from taskpool.scheduler.resources import ScalingConfig
from taskpool.scheduler.retry import RetryCoordinator, RetryPolicy
from taskpool.scheduler.scoring import priority_score
from taskpool.workers.base import WorkerExecutor

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskpool.workers.echo_agent --task-manifest {{task_manifest}}"
)


class ManualClock:
    """Monotonic-style clock advanced explicitly by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_task(
    task_id: str = "task-1",
    *,
    sequence: int = 1,
    metadata: TaskMetadata | None = None,
    payload: dict | None = None,
) -> Task:
    metadata = metadata or TaskMetadata()
    return Task(
        task_id=task_id,
        sequence=sequence,
        payload=payload or {},
        metadata=metadata,
        submitted_at=datetime(2026, 1, 1, tzinfo=UTC),
        priority_score=priority_score(metadata),
    )


def static_sampler(cpu: float = 60.0, memory: float = 60.0):
    """Resource sampler that always reports the same usage."""

    def sample() -> SystemResources:
        return SystemResources(
            cpu_percent=cpu,
            memory_percent=memory,
            cpu_cores=4,
            memory_total_mb=8_192.0,
            memory_free_mb=4_096.0,
            sampled_at=datetime.now(tz=UTC),
        )

    return sample


def build_pool(  # noqa: PLR0913
    executor: WorkerExecutor,
    *,
    max_workers: int = 2,
    min_workers: int = 1,
    max_retries: int = 3,
    base_delay_seconds: float = 0.01,
    failure_threshold: int = 100,
    task_timeout_seconds: float | None = 5.0,
    dead_letters: DeadLetterStore | None = None,
    breakers: CircuitBreakerRegistry | None = None,
) -> WorkerPool:
    """Pool with fast retries and scaling disabled."""

    store = dead_letters if dead_letters is not None else DeadLetterStore()
    return WorkerPool(
        executor,
        config=PoolConfig(
            scaling=ScalingConfig(
                min_workers=min_workers,
                max_workers=max_workers,
                enabled=False,
            ),
            retry_check_interval_seconds=0.01,
            task_timeout_seconds=task_timeout_seconds,
        ),
        retry=RetryCoordinator(
            RetryPolicy(
                max_retries=max_retries,
                base_delay_seconds=base_delay_seconds,
                max_delay_seconds=max(base_delay_seconds, 0.05),
                jitter=False,
            ),
            dead_letters=store,
        ),
        breakers=(
            breakers
            if breakers is not None
            else CircuitBreakerRegistry(
                default_config=CircuitBreakerConfig(failure_threshold=failure_threshold),
            )
        ),
        sampler=static_sampler(),
    )


@pytest.fixture()
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def echo_agent_env(monkeypatch, tmp_path: Path) -> Path:
    """Point the CLI at the echo agent and an isolated workdir."""

    workdir = tmp_path / "workdir"
    monkeypatch.setenv("TASKPOOL_WORKER_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("TASKPOOL_WORKDIR", str(workdir))
    monkeypatch.setenv("TASKPOOL_RETRY_BASE_DELAY_SECONDS", "0.01")
    monkeypatch.setenv("TASKPOOL_RETRY_MAX_DELAY_SECONDS", "0.05")
    monkeypatch.setenv("TASKPOOL_RETRY_CHECK_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("TASKPOOL_SCALING_ENABLED", "0")
    monkeypatch.setenv("TASKPOOL_DLQ_REPROCESS_DELAY_SECONDS", "0")
    return workdir
