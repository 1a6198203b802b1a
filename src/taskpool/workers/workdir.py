"""Per-attempt working directories for command workers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from taskpool.contracts import (
    CONTRACT_VERSION,
    TaskInputContract,
    TaskManifest,
    write_contract,
)
from taskpool.models import Task


@dataclass(slots=True)
class MaterializedTask:
    manifest_path: Path
    manifest: TaskManifest


@dataclass(frozen=True, slots=True)
class AttemptLayout:
    """Fixed file layout under ``<root>/<task_id>/attempt-<n>/``."""

    base: Path

    @property
    def task_input(self) -> Path:
        return self.base / "input" / "task.json"

    @property
    def result(self) -> Path:
        return self.base / "output" / "result.json"

    @property
    def stdout(self) -> Path:
        return self.base / "output" / "stdout.log"

    @property
    def stderr(self) -> Path:
        return self.base / "output" / "stderr.log"

    @property
    def manifest(self) -> Path:
        return self.base / "meta" / "task_manifest.json"

    def create(self) -> None:
        for path in (self.task_input, self.result, self.manifest):
            path.parent.mkdir(parents=True, exist_ok=True)


class TaskWorkdirManager:
    """Writes the task input and manifest for each attempt.

    A retried attempt gets its own directory; re-materializing the same
    attempt drops any stale result file first.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def layout(self, task_id: str, attempt: int) -> AttemptLayout:
        return AttemptLayout(self.root_dir / task_id / f"attempt-{attempt}")

    def materialize(self, *, task: Task, attempt: int) -> MaterializedTask:
        layout = self.layout(task.task_id, attempt)
        layout.create()
        layout.result.unlink(missing_ok=True)

        write_contract(
            layout.task_input,
            TaskInputContract(
                task_id=task.task_id,
                attempt=attempt,
                payload=task.payload,
                metadata=task.metadata.to_dict(),
            ),
        )
        manifest = TaskManifest(
            contract_version=CONTRACT_VERSION,
            task_id=task.task_id,
            attempt=attempt,
            workdir=str(layout.base),
            task_input_path=str(layout.task_input),
            output_result_path=str(layout.result),
            output_stdout_path=str(layout.stdout),
            output_stderr_path=str(layout.stderr),
        )
        write_contract(layout.manifest, manifest)
        return MaterializedTask(manifest_path=layout.manifest, manifest=manifest)
