from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND_TEMPLATE, build_pool, make_task

from taskpool.contracts import TaskManifest, read_manifest
from taskpool.errors import QuotaExceededError, TransientError, ValidationError
from taskpool.models import TaskMetadata, TaskSpec
from taskpool.workers.command import CommandWorkerExecutor, build_run_args
from taskpool.workers.workdir import TaskWorkdirManager

pytestmark = [
    allure.epic("Worker Execution"),
    allure.feature("Command Worker"),
]


def _executor(tmp_path: Path, template: str = ECHO_AGENT_COMMAND_TEMPLATE) -> CommandWorkerExecutor:
    return CommandWorkerExecutor(command_template=template, workdir_root=tmp_path / "workdir")


def test_echo_agent_success_returns_result_value(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task = make_task(payload={"message": "hello"})

    outcome = asyncio.run(executor.execute(task, attempt=1))

    assert outcome.success is True
    assert outcome.value == {
        "task_id": "task-1",
        "attempt": 1,
        "echo": "hello",
        "env_attempt": "1",
    }


def test_reported_failure_keeps_kind_and_retryable_flag(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task = make_task(payload={"fail_kind": "network", "message": "socket closed"})

    outcome = asyncio.run(executor.execute(task, attempt=1))

    assert outcome.success is False
    assert isinstance(outcome.error, TransientError)
    assert outcome.error.retryable is True
    assert outcome.error.code == "ECHO_NETWORK"
    assert str(outcome.error) == "socket closed"


def test_reported_quota_failure_carries_retry_after(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    task = make_task(payload={"fail_kind": "quota", "retry_after_seconds": 12})

    outcome = asyncio.run(executor.execute(task, attempt=1))

    assert isinstance(outcome.error, QuotaExceededError)
    assert outcome.error.retry_after_seconds == 12.0


@pytest.mark.parametrize(
    ("exit_code", "retryable", "error_type"),
    [
        (75, True, TransientError),
        (64, False, ValidationError),
    ],
)
def test_exit_code_without_result_is_classified(
    tmp_path: Path,
    exit_code: int,
    retryable: bool,
    error_type: type,
) -> None:
    executor = _executor(tmp_path)
    task = make_task(payload={"exit_code": exit_code})

    outcome = asyncio.run(executor.execute(task, attempt=1))

    assert isinstance(outcome.error, error_type)
    assert outcome.error.retryable is retryable
    assert outcome.error.code == f"EXIT_{exit_code}"


def test_missing_command_is_a_validation_failure(tmp_path: Path) -> None:
    executor = _executor(tmp_path, "definitely-not-a-real-binary-7c1 {task_manifest}")

    outcome = asyncio.run(executor.execute(make_task(), attempt=1))

    assert isinstance(outcome.error, ValidationError)
    assert outcome.error.code == "COMMAND_NOT_FOUND"


def test_pool_retries_transient_worker_failure(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    pool = build_pool(executor, max_workers=1)
    spec = TaskSpec(
        payload={"fail_kind": "server", "fail_times": 1, "message": "busy"},
        metadata=TaskMetadata(),
    )

    [result] = asyncio.run(pool.run([spec]))

    assert result.success is True
    assert result.attempts == 2
    assert result.value["attempt"] == 2
    assert (tmp_path / "workdir" / "task-1" / "attempt-1" / "output" / "result.json").exists()


def test_workdir_layout_and_manifest(tmp_path: Path) -> None:
    materialized = TaskWorkdirManager(tmp_path).materialize(
        task=make_task(payload={"value": 3}),
        attempt=2,
    )

    base = tmp_path / "task-1" / "attempt-2"
    assert materialized.manifest_path == base / "meta" / "task_manifest.json"
    assert read_manifest(materialized.manifest_path) == materialized.manifest
    task_input = json.loads((base / "input" / "task.json").read_text("utf-8"))
    assert task_input["payload"] == {"value": 3}
    assert task_input["attempt"] == 2


def _manifest(tmp_path: Path) -> TaskManifest:
    return TaskManifest(
        contract_version=1,
        task_id="task-1",
        attempt=1,
        workdir=str(tmp_path),
        task_input_path=str(tmp_path / "in.json"),
        output_result_path=str(tmp_path / "out.json"),
        output_stdout_path=str(tmp_path / "stdout.log"),
        output_stderr_path=str(tmp_path / "stderr.log"),
    )


def test_build_run_args_renders_placeholders(tmp_path: Path) -> None:
    args = build_run_args(
        command_template="agent --id {task_id} --result {result_file}",
        manifest=_manifest(tmp_path),
        manifest_path=tmp_path / "manifest.json",
    )

    assert args == ["agent", "--id", "task-1", "--result", str(tmp_path / "out.json")]


@pytest.mark.parametrize("template", ["", "agent {unknown}"])
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str) -> None:
    with pytest.raises(ValidationError):
        build_run_args(
            command_template=template,
            manifest=_manifest(tmp_path),
            manifest_path=tmp_path / "manifest.json",
        )
