"""Local demo worker for command executor integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any

from taskpool.contracts import (
    RESULT_FAILED,
    RESULT_SUCCEEDED,
    WorkerResultContract,
    read_manifest,
    read_task_input,
    write_contract,
)

_RETRYABLE_KINDS = {"network", "timeout", "server", "quota"}


def main(argv: list[str] | None = None) -> int:
    """Echo the task payload, or fail the way the payload asks to."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-manifest", required=True)
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.task_manifest))
    task_input = read_task_input(Path(manifest.task_input_path))
    payload = task_input.payload

    sleep_seconds = float(payload.get("sleep_seconds", 0) or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    if _should_fail(payload, attempt=task_input.attempt):
        if "exit_code" in payload:
            return int(payload["exit_code"])
        kind = str(payload.get("fail_kind", "unhandled"))
        error: dict[str, Any] = {
            "code": payload.get("fail_code") or f"ECHO_{kind.upper()}",
            "kind": kind,
            "message": str(payload.get("message") or f"echo agent failed with {kind}"),
            "retryable": kind in _RETRYABLE_KINDS,
        }
        if kind == "quota" and "retry_after_seconds" in payload:
            error["retry_after_seconds"] = float(payload["retry_after_seconds"])
        write_contract(
            Path(manifest.output_result_path),
            WorkerResultContract(status=RESULT_FAILED, error=error),
        )
        return 1

    write_contract(
        Path(manifest.output_result_path),
        WorkerResultContract(
            status=RESULT_SUCCEEDED,
            value={
                "task_id": task_input.task_id,
                "attempt": task_input.attempt,
                "echo": payload.get("message", ""),
                "env_attempt": os.getenv("TASKPOOL_ATTEMPT"),
            },
        ),
    )
    return 0


def _should_fail(payload: dict[str, Any], *, attempt: int) -> bool:
    if "fail_kind" not in payload and "exit_code" not in payload:
        return False
    fail_times = payload.get("fail_times")
    if fail_times is None:
        return True
    return attempt <= int(fail_times)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
