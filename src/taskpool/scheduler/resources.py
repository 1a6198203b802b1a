"""Host resource sampling and hysteresis-based concurrency scaling."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from taskpool.models import SystemResources
from taskpool.storage.common import utc_now

logger = logging.getLogger(__name__)

ResourceSampler = Callable[[], SystemResources]

_BYTES_PER_MB = 1024 * 1024


@dataclass(slots=True)
class ScalingConfig:
    """Concurrency bounds and the usage thresholds that move the limit."""

    min_workers: int = 1
    max_workers: int = 10
    cpu_high_percent: float = 80.0
    cpu_low_percent: float = 40.0
    memory_high_percent: float = 85.0
    memory_low_percent: float = 50.0
    check_interval_seconds: float = 10.0
    scale_step: int = 1
    enabled: bool = True

    def validate(self) -> None:
        if self.min_workers < 1:
            raise ValueError("min_workers must be >= 1.")
        if self.max_workers < self.min_workers:
            raise ValueError("max_workers must be >= min_workers.")
        if self.cpu_low_percent >= self.cpu_high_percent:
            raise ValueError("cpu_low_percent must be below cpu_high_percent.")
        if self.memory_low_percent >= self.memory_high_percent:
            raise ValueError("memory_low_percent must be below memory_high_percent.")
        if self.scale_step < 1:
            raise ValueError("scale_step must be >= 1.")
        if self.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be > 0.")


def sample_system_resources() -> SystemResources:
    """Collect host CPU and memory usage. Blocking, run it in a thread."""

    memory = psutil.virtual_memory()
    return SystemResources(
        cpu_percent=psutil.cpu_percent(interval=0.1),
        memory_percent=memory.percent,
        cpu_cores=psutil.cpu_count(logical=True) or os.cpu_count() or 1,
        memory_total_mb=memory.total / _BYTES_PER_MB,
        memory_free_mb=memory.available / _BYTES_PER_MB,
        sampled_at=utc_now(),
    )


def next_worker_limit(
    *,
    current: int,
    resources: SystemResources,
    config: ScalingConfig,
) -> int:
    """Apply the hysteresis rule and clamp into ``[min_workers, max_workers]``.

    Any usage at or above its high threshold lowers the limit; all usage at or
    below the low thresholds raises it; anything in between keeps it.
    """

    if (
        resources.cpu_percent >= config.cpu_high_percent
        or resources.memory_percent >= config.memory_high_percent
    ):
        proposed = current - config.scale_step
    elif (
        resources.cpu_percent <= config.cpu_low_percent
        and resources.memory_percent <= config.memory_low_percent
    ):
        proposed = current + config.scale_step
    else:
        proposed = current
    return clamp_limit(proposed, config)


def clamp_limit(value: int, config: ScalingConfig) -> int:
    return max(config.min_workers, min(config.max_workers, value))


def log_limit_change(previous: int, current: int, resources: SystemResources) -> None:
    if previous == current:
        return
    logger.info(
        "Worker limit %s -> %s (cpu=%.1f%% memory=%.1f%%)",
        previous,
        current,
        resources.cpu_percent,
        resources.memory_percent,
    )
