"""Worker-execution collaborator interface."""

from __future__ import annotations

from typing import Protocol

from taskpool.models import Task, TaskOutcome


class WorkerExecutor(Protocol):
    """Protocol implemented by worker executors."""

    async def execute(self, task: Task, *, attempt: int) -> TaskOutcome:
        """Run one attempt of a task and return a typed outcome.

        Failures are reported as `TaskOutcome.failed(error)` with a typed
        `TaskError`; raising is reserved for executor faults.
        """
