"""Subprocess-based worker executor driven by a command template."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from pathlib import Path

from taskpool.contracts import RESULT_SUCCEEDED, TaskManifest, read_worker_result
from taskpool.errors import TaskError, TransientError, ValidationError
from taskpool.models import Task, TaskOutcome
from taskpool.scheduler.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    DEFAULT_VALIDATION_EXIT_CODES,
    error_for_exit_code,
)
from taskpool.workers.workdir import TaskWorkdirManager

logger = logging.getLogger(__name__)

SUPPORTED_PLACEHOLDERS = ("task_manifest", "task_file", "result_file", "task_id", "workdir")


class CommandWorkerExecutor:
    """Run one task attempt as a child process speaking the file contract."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        workdir_root: Path,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
        validation_exit_codes: tuple[int, ...] = DEFAULT_VALIDATION_EXIT_CODES,
        graceful_shutdown_seconds: float = 2.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.transient_exit_codes = transient_exit_codes
        self.validation_exit_codes = validation_exit_codes
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._extra_env = dict(env or {})
        self._workdirs = TaskWorkdirManager(workdir_root)

    async def execute(self, task: Task, *, attempt: int) -> TaskOutcome:
        materialized = self._workdirs.materialize(task=task, attempt=attempt)
        manifest = materialized.manifest
        try:
            run_args = build_run_args(
                command_template=self.command_template,
                manifest=manifest,
                manifest_path=materialized.manifest_path,
            )
        except ValidationError as error:
            return TaskOutcome.failed(error)

        env = os.environ.copy()
        env.update(self._extra_env)
        env["TASKPOOL_TASK_ID"] = task.task_id
        env["TASKPOOL_ATTEMPT"] = str(attempt)

        try:
            exit_code = await self._run_process(run_args, env=env, manifest=manifest)
        except FileNotFoundError:
            return TaskOutcome.failed(
                ValidationError(
                    f"Worker command not found: {run_args[0]}",
                    code="COMMAND_NOT_FOUND",
                ),
            )
        except OSError as error:
            return TaskOutcome.failed(
                TransientError(f"Worker command failed to start: {error}", code="COMMAND_START"),
            )

        logger.debug("Worker for %s attempt %s exited with %s", task.task_id, attempt, exit_code)
        return self._outcome_from_result(manifest, exit_code)

    async def _run_process(
        self,
        run_args: list[str],
        *,
        env: dict[str, str],
        manifest: TaskManifest,
    ) -> int:
        with (
            Path(manifest.output_stdout_path).open("w", encoding="utf-8") as stdout_handle,
            Path(manifest.output_stderr_path).open("w", encoding="utf-8") as stderr_handle,
        ):
            process = await asyncio.create_subprocess_exec(
                *run_args,
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
            )
            try:
                return await process.wait()
            except asyncio.CancelledError:
                await _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
                raise

    def _outcome_from_result(self, manifest: TaskManifest, exit_code: int) -> TaskOutcome:
        result_path = Path(manifest.output_result_path)
        if result_path.exists():
            try:
                result = read_worker_result(result_path)
            except (ValueError, TypeError) as error:
                return TaskOutcome.failed(
                    TaskError(f"Invalid worker result: {error}", code="RESULT_INVALID"),
                )
            if result.status == RESULT_SUCCEEDED and exit_code == 0:
                return TaskOutcome.ok(result.value)
            try:
                reported = result.to_error()
            except TaskError as error:
                return TaskOutcome.failed(error)
            if reported is not None:
                return TaskOutcome.failed(reported)

        if exit_code == 0:
            return TaskOutcome.ok(_read_tail(Path(manifest.output_stdout_path)))
        return TaskOutcome.failed(
            error_for_exit_code(
                exit_code=exit_code,
                timed_out=False,
                transient_exit_codes=self.transient_exit_codes,
                validation_exit_codes=self.validation_exit_codes,
            ),
        )


def build_run_args(
    *,
    command_template: str,
    manifest: TaskManifest,
    manifest_path: Path,
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise ValidationError("Worker command template is empty.", code="COMMAND_TEMPLATE")
    try:
        rendered = stripped.format(
            task_manifest=shlex.quote(str(manifest_path)),
            task_file=shlex.quote(manifest.task_input_path),
            result_file=shlex.quote(manifest.output_result_path),
            task_id=shlex.quote(manifest.task_id),
            workdir=shlex.quote(manifest.workdir),
        )
    except (KeyError, IndexError) as error:
        raise ValidationError(
            f"Unsupported command template placeholder: {error}. "
            f"Supported: {', '.join(SUPPORTED_PLACEHOLDERS)}",
            code="COMMAND_TEMPLATE",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValidationError(
            "Worker command template rendered empty command.",
            code="COMMAND_TEMPLATE",
        )
    return argv


async def _terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _read_tail(path: Path, limit: int = 2_000) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace")
    return text[-limit:].strip()

