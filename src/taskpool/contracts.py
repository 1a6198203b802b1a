"""JSON file contracts exchanged with command workers, plus the CLI tasks file."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from taskpool.errors import TaskError, error_from_dict
from taskpool.models import TaskMetadata, TaskSpec
from taskpool.scheduler.scoring import metadata_from_labels

CONTRACT_VERSION = 1
RESULT_SUCCEEDED = "succeeded"
RESULT_FAILED = "failed"


@dataclass(slots=True)
class TaskInputContract:
    """What the worker gets to work on: ``input/task.json``."""

    task_id: str
    attempt: int
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerResultContract:
    """Written by the worker to ``output/result.json``.

    A failed result carries an ``error`` object with ``kind``, ``code``,
    ``message`` and an explicit ``retryable`` flag.
    """

    status: str
    value: Any = None
    error: dict[str, Any] | None = None

    def to_error(self) -> TaskError | None:
        if self.status != RESULT_FAILED:
            return None
        return error_from_dict(self.error or {})


@dataclass(slots=True)
class TaskManifest:
    """Paths of one materialized task attempt."""

    contract_version: int
    task_id: str
    attempt: int
    workdir: str
    task_input_path: str
    output_result_path: str
    output_stdout_path: str
    output_stderr_path: str


def write_contract(
    path: Path,
    contract: TaskInputContract | WorkerResultContract | TaskManifest,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(asdict(contract), ensure_ascii=False, indent=2, sort_keys=True)
    path.write_text(text, "utf-8")


def read_object(path: Path) -> dict[str, Any]:
    """Read a JSON file that must hold an object at the top level."""

    document = json.loads(path.read_text("utf-8"))
    if not isinstance(document, dict):
        raise TypeError(f"{path} must contain a JSON object")
    return document


def read_task_input(path: Path) -> TaskInputContract:
    raw = read_object(path)
    task_id = raw.get("task_id")
    attempt = raw.get("attempt")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError("task_input.task_id must be a non-empty string")
    if not isinstance(attempt, int) or attempt < 1:
        raise ValueError("task_input.attempt must be an integer >= 1")
    payload = raw.get("payload") or {}
    metadata = raw.get("metadata") or {}
    for name, value in (("payload", payload), ("metadata", metadata)):
        if not isinstance(value, dict):
            raise TypeError(f"task_input.{name} must be an object")
    return TaskInputContract(task_id=task_id, attempt=attempt, payload=payload, metadata=metadata)


def read_worker_result(path: Path) -> WorkerResultContract:
    raw = read_object(path)
    status = raw.get("status")
    if status not in {RESULT_SUCCEEDED, RESULT_FAILED}:
        raise ValueError(
            f"worker_result.status must be {RESULT_SUCCEEDED!r} or {RESULT_FAILED!r}",
        )
    error = raw.get("error")
    if error is not None and not isinstance(error, dict):
        raise TypeError("worker_result.error must be an object when provided")
    return WorkerResultContract(status=status, value=raw.get("value"), error=error)


def read_manifest(path: Path) -> TaskManifest:
    raw = read_object(path)
    raw.setdefault("contract_version", CONTRACT_VERSION)
    names = [item.name for item in fields(TaskManifest)]
    absent = [name for name in names if name not in raw]
    if absent:
        raise ValueError(f"task manifest {path} lacks: {', '.join(absent)}")
    values: dict[str, Any] = {name: str(raw[name]) for name in names}
    values["contract_version"] = int(raw["contract_version"])
    values["attempt"] = int(raw["attempt"])
    return TaskManifest(**values)


def read_task_specs(path: Path) -> list[TaskSpec]:
    """Load a tasks file: a JSON object with a ``tasks`` array.

    Each item may carry ``key``, ``payload`` and either explicit
    ``metadata`` or issue-style ``labels`` plus ``affected_paths``.
    """

    items = read_object(path).get("tasks")
    if not isinstance(items, list):
        raise TypeError("tasks file must contain a 'tasks' array")

    specs: list[TaskSpec] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise TypeError(f"tasks[{index}] must be an object")
        payload = item.get("payload", {})
        if not isinstance(payload, dict):
            raise TypeError(f"tasks[{index}].payload must be an object")
        if "metadata" in item:
            metadata = TaskMetadata.from_dict(item["metadata"])
        else:
            metadata = metadata_from_labels(
                item.get("labels") or (),
                affected_paths=item.get("affected_paths") or (),
            )
        key = item.get("key")
        specs.append(
            TaskSpec(payload=payload, metadata=metadata, key=str(key) if key is not None else None),
        )
    return specs
