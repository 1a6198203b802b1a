"""Scheduling: worker pool, retry coordination and scoring."""

from taskpool.scheduler.pool import PoolConfig, WorkerPool
from taskpool.scheduler.resources import ScalingConfig
from taskpool.scheduler.retry import RetryCoordinator, RetryDecision, RetryOutcome, RetryPolicy

__all__ = [
    "PoolConfig",
    "RetryCoordinator",
    "RetryDecision",
    "RetryOutcome",
    "RetryPolicy",
    "ScalingConfig",
    "WorkerPool",
]
