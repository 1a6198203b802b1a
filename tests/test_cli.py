from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskpool.dead_letter.repository import DeadLetterRepository
from taskpool.dead_letter.store import DeadLetterStore
from taskpool.main import taskpool

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Pool Runs & Dead-Letter Ops"),
]


def _tasks_file(tmp_path: Path, tasks: list[dict]) -> Path:
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps({"tasks": tasks}), "utf-8")
    return path


def _entry_ids(db_path: Path) -> list[str]:
    store = DeadLetterStore(repository=DeadLetterRepository(db_path))
    store.open()
    try:
        return [entry.entry_id for entry in store.list_entries()]
    finally:
        store.close()


def _invoke(args: list[str]):
    result = CliRunner().invoke(taskpool, args)
    assert result.exit_code == 0, result.output
    return result


def test_run_then_inspect_and_remove_dead_letter(
    tmp_path: Path,
    echo_agent_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKPOOL_MAX_RETRIES", "1")
    db_path = tmp_path / "pool.db"
    tasks_file = _tasks_file(
        tmp_path,
        [
            {"key": "ok", "payload": {"message": "hi"}, "labels": ["bug", "priority:high"]},
            {"key": "flaky", "payload": {"fail_kind": "server", "fail_times": 1}},
            {"key": "bad", "payload": {"fail_kind": "validation", "message": "bad input"}},
        ],
    )

    run = _invoke(["run", "--tasks-file", str(tasks_file), "--db-path", str(db_path)])

    assert "Results: total=3 succeeded=2 failed=1" in run.output
    assert "key=flaky status=succeeded attempts=2" in run.output
    assert "key=bad status=failed attempts=1 " in run.output
    assert "Pool status: completed=3" in run.output
    assert (echo_agent_env / "task-2" / "attempt-2").is_dir()

    listed = _invoke(["dlq", "list", "--db-path", str(db_path)])
    assert "Dead letters: 1" in listed.output
    assert "error=ECHO_VALIDATION" in listed.output
    assert "reprocess=no" in listed.output

    stats = _invoke(["dlq", "stats", "--db-path", str(db_path)])
    assert "total=1 reprocessable=0" in stats.output
    assert "ECHO_VALIDATION: 1" in stats.output

    [entry_id] = _entry_ids(db_path)
    inspected = _invoke(["dlq", "inspect", entry_id, "--db-path", str(db_path)])
    assert f"Entry: {entry_id}" in inspected.output
    assert "retryable=False" in inspected.output
    assert "Message: bad input" in inspected.output
    assert "History: 1" in inspected.output

    removed = _invoke(["dlq", "remove", entry_id, "--db-path", str(db_path)])
    assert f"Dead letter removed: {entry_id}" in removed.output
    assert _entry_ids(db_path) == []


def test_reprocess_removes_recovered_entries(
    tmp_path: Path,
    echo_agent_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKPOOL_MAX_RETRIES", "0")
    db_path = tmp_path / "pool.db"
    tasks_file = _tasks_file(tmp_path, [{"payload": {"fail_kind": "network"}}])

    run = _invoke(["run", "--tasks-file", str(tasks_file), "--db-path", str(db_path)])
    assert "failed=1" in run.output
    [entry_id] = _entry_ids(db_path)

    monkeypatch.setenv("TASKPOOL_WORKER_COMMAND", f"{sys.executable} -c pass")
    reprocessed = _invoke(["dlq", "reprocess", "--db-path", str(db_path)])

    assert "Reprocessed dead letters: 1 recovered=1 still_failing=0" in reprocessed.output
    assert f"key={entry_id} status=succeeded" in reprocessed.output
    assert _entry_ids(db_path) == []


def test_failed_reprocess_keeps_entry_marked(
    tmp_path: Path,
    echo_agent_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKPOOL_MAX_RETRIES", "0")
    db_path = tmp_path / "pool.db"
    tasks_file = _tasks_file(tmp_path, [{"payload": {"fail_kind": "timeout"}}])
    _invoke(["run", "--tasks-file", str(tasks_file), "--db-path", str(db_path)])
    [entry_id] = _entry_ids(db_path)

    reprocessed = _invoke(
        ["dlq", "reprocess", "--entry-id", entry_id, "--db-path", str(db_path)],
    )
    assert "recovered=0 still_failing=1" in reprocessed.output
    assert _entry_ids(db_path) == [entry_id]

    inspected = _invoke(["dlq", "inspect", entry_id, "--db-path", str(db_path)])
    assert "attempts=1 after=" in inspected.output


def test_reprocess_and_cleanup_on_empty_store(tmp_path: Path, echo_agent_env: Path) -> None:
    db_path = tmp_path / "pool.db"

    reprocessed = _invoke(["dlq", "reprocess", "--db-path", str(db_path)])
    cleaned = _invoke(["dlq", "cleanup", "--db-path", str(db_path)])
    missing = _invoke(["dlq", "inspect", "dlq-missing", "--db-path", str(db_path)])

    assert "No dead letters eligible for reprocessing." in reprocessed.output
    assert "Expired dead letters removed: 0" in cleaned.output
    assert "Dead letter not found: dlq-missing" in missing.output


def test_max_workers_option_overrides_env(tmp_path: Path, echo_agent_env: Path) -> None:
    tasks_file = _tasks_file(tmp_path, [{"payload": {"message": "one"}}])

    run = _invoke(
        [
            "run",
            "--tasks-file",
            str(tasks_file),
            "--max-workers",
            "1",
            "--db-path",
            str(tmp_path / "pool.db"),
        ],
    )

    assert "range=[1, 1]" in run.output


def test_invalid_configuration_is_reported(
    tmp_path: Path,
    echo_agent_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKPOOL_MAX_RETRIES", "-1")
    tasks_file = _tasks_file(tmp_path, [{"payload": {}}])

    result = CliRunner().invoke(
        taskpool,
        ["run", "--tasks-file", str(tasks_file), "--db-path", str(tmp_path / "pool.db")],
    )

    assert result.exit_code == 1
    assert "max_retries must be >= 0" in result.output


def test_malformed_tasks_file_is_reported(tmp_path: Path, echo_agent_env: Path) -> None:
    tasks_file = tmp_path / "tasks.json"
    tasks_file.write_text(json.dumps({"tasks": {"not": "a list"}}), "utf-8")

    result = CliRunner().invoke(
        taskpool,
        ["run", "--tasks-file", str(tasks_file), "--db-path", str(tmp_path / "pool.db")],
    )

    assert result.exit_code == 1
    assert "tasks" in result.output
