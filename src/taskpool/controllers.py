"""Controllers for taskpool CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskpool.config import Settings
from taskpool.contracts import read_task_specs
from taskpool.dead_letter.repository import DeadLetterRepository
from taskpool.dead_letter.store import DeadLetterStore
from taskpool.models import DeadLetterEntry, PoolStatus, TaskMetadata, TaskResult, TaskSpec
from taskpool.resilience.circuit_breaker import CircuitBreakerRegistry
from taskpool.scheduler.pool import WorkerPool
from taskpool.scheduler.retry import RetryCoordinator
from taskpool.workers.command import CommandWorkerExecutor

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 120


@dataclass(slots=True)
class RunCommand:
    """CLI input for one pool run over a tasks file."""

    db_path: Path | None
    tasks_file: Path
    max_workers: int | None = None


@dataclass(slots=True)
class DlqListCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    category: str | None
    error_code: str | None
    limit: int


@dataclass(slots=True)
class DlqInspectCommand:
    """CLI input for one dead-letter entry."""

    db_path: Path | None
    entry_id: str


@dataclass(slots=True)
class DlqStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class DlqMutateCommand:
    """CLI input for removing an entry."""

    db_path: Path | None
    entry_id: str


@dataclass(slots=True)
class DlqCleanupCommand:
    db_path: Path | None


@dataclass(slots=True)
class DlqReprocessCommand:
    """CLI input for re-running eligible dead letters."""

    db_path: Path | None
    entry_ids: tuple[str, ...] = ()
    limit: int | None = None


class TaskpoolCliController:
    """Coordinates pool runs and dead-letter maintenance CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_workers is not None:
            settings.pool.max_workers = command.max_workers
            settings.pool.min_workers = min(settings.pool.min_workers, command.max_workers)
        settings.validate()
        specs = read_task_specs(command.tasks_file)
        if not specs:
            return [f"No tasks in {command.tasks_file}"]

        with _dead_letter_store(settings) as store:
            pool = _build_pool(settings, dead_letters=store)
            results = asyncio.run(pool.run(specs))
            status = pool.get_status()

        return [*_render_results(results), _render_status(status)]

    def dlq_list(self, command: DlqListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _dead_letter_store(settings) as store:
            entries = store.list_entries(
                category=command.category,
                error_code=command.error_code,
                limit=command.limit,
            )

        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.entry_id} task={entry.task_id} "
                f"category={entry.task_category or '-'} error={entry.final_error.code} "
                f"attempts={entry.total_attempts} reprocess={_reprocess_label(entry)} "
                f"created_at={entry.created_at.isoformat()}",
            )
        return lines

    def dlq_inspect(self, command: DlqInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _dead_letter_store(settings) as store:
            entry = store.get_entry(command.entry_id)
        if entry is None:
            return [f"Dead letter not found: {command.entry_id}"]

        final = entry.final_error
        lines = [
            f"Entry: {entry.entry_id}",
            f"Task: {entry.task_id}",
            f"Category: {entry.task_category or '-'}",
            f"Attempts: {entry.total_attempts} (max retries {entry.max_retries})",
            f"Final error: {final.code} severity={final.severity.value} "
            f"retryable={final.retryable}",
            f"Message: {final.message}",
            f"Reprocess: {_reprocess_label(entry)} attempts={entry.reprocess_attempts} "
            f"after={entry.reprocess_after.isoformat() if entry.reprocess_after else '-'}",
            f"Created: {entry.created_at.isoformat()}",
            f"Payload: {_preview(entry.task_snapshot.get('payload'))}",
            f"History: {len(entry.retry_history)}",
        ]
        for attempt in entry.retry_history:
            lines.append(
                f"  #{attempt.attempt} {attempt.timestamp.isoformat()} {attempt.error_code} "
                f"delay={attempt.delay_seconds:.2f}s duration={attempt.duration_seconds:.2f}s "
                f"{attempt.error_message}",
            )
        return lines

    def dlq_stats(self, command: DlqStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _dead_letter_store(settings) as store:
            stats = store.stats()

        lines = [
            f"Dead letters: total={stats.total} reprocessable={stats.reprocessable}",
            f"Oldest: {stats.oldest_at.isoformat() if stats.oldest_at else '-'}",
            f"Newest: {stats.newest_at.isoformat() if stats.newest_at else '-'}",
            "By category:",
        ]
        lines.extend(f"  {name}: {count}" for name, count in sorted(stats.by_category.items()))
        lines.append("By error code:")
        lines.extend(f"  {code}: {count}" for code, count in sorted(stats.by_error_code.items()))
        return lines

    def dlq_remove(self, command: DlqMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _dead_letter_store(settings) as store:
            removed = store.remove_entry(command.entry_id)
        if not removed:
            return [f"Dead letter not found: {command.entry_id}"]
        return [f"Dead letter removed: {command.entry_id}"]

    def dlq_cleanup(self, command: DlqCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _dead_letter_store(settings) as store:
            removed = store.cleanup_expired()
            remaining = len(store)
        return [
            f"Expired dead letters removed: {removed} "
            f"(retention {settings.dead_letter.retention_days} days, remaining {remaining})",
        ]

    def dlq_reprocess(self, command: DlqReprocessCommand) -> list[str]:
        """Re-run eligible entries; successes leave the store, failures stay marked."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _dead_letter_store(settings) as store:
            entries = store.get_reprocessable_entries()
            if command.entry_ids:
                wanted = set(command.entry_ids)
                entries = [entry for entry in entries if entry.entry_id in wanted]
            if command.limit is not None:
                entries = entries[: command.limit]
            if not entries:
                return ["No dead letters eligible for reprocessing."]

            specs = []
            for entry in entries:
                store.mark_reprocessing(entry.entry_id)
                specs.append(_spec_from_entry(entry))

            logger.info("Reprocessing %s dead letters", len(specs))
            # Failed reprocessing keeps the original entry instead of adding a new one.
            scratch = DeadLetterStore(settings.dead_letter_config())
            pool = _build_pool(settings, dead_letters=scratch)
            results = asyncio.run(pool.run(specs))

            recovered = 0
            for result in results:
                if result.success and result.key is not None:
                    recovered += int(store.remove_entry(result.key))

        lines = [
            f"Reprocessed dead letters: {len(entries)} recovered={recovered} "
            f"still_failing={len(entries) - recovered}",
        ]
        lines.extend(_render_results(results)[1:])
        return lines


@contextmanager
def _dead_letter_store(settings: Settings) -> Iterator[DeadLetterStore]:
    repository = DeadLetterRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store = DeadLetterStore(settings.dead_letter_config(), repository=repository)
    store.open()
    try:
        yield store
    finally:
        store.close()


def _build_pool(settings: Settings, *, dead_letters: DeadLetterStore) -> WorkerPool:
    worker = settings.worker
    executor = CommandWorkerExecutor(
        command_template=worker.command_template,
        workdir_root=worker.workdir_root,
        transient_exit_codes=worker.transient_exit_codes,
        validation_exit_codes=worker.validation_exit_codes,
        graceful_shutdown_seconds=worker.graceful_shutdown_seconds,
    )
    return WorkerPool(
        executor,
        config=settings.pool_config(),
        retry=RetryCoordinator(settings.retry_policy(), dead_letters=dead_letters),
        breakers=CircuitBreakerRegistry(default_config=settings.breaker_config()),
    )


def _spec_from_entry(entry: DeadLetterEntry) -> TaskSpec:
    snapshot = entry.task_snapshot
    return TaskSpec(
        payload=dict(snapshot.get("payload") or {}),
        metadata=TaskMetadata.from_dict(snapshot.get("metadata") or {}),
        key=entry.entry_id,
    )


def _render_results(results: list[TaskResult]) -> list[str]:
    succeeded = sum(1 for result in results if result.success)
    lines = [
        f"Results: total={len(results)} succeeded={succeeded} "
        f"failed={len(results) - succeeded}",
    ]
    for result in results:
        status = "succeeded" if result.success else "failed"
        line = (
            f"  {result.task_id} key={result.key or '-'} status={status} "
            f"attempts={result.attempts} duration={result.duration_seconds:.2f}s"
        )
        if result.success:
            line += f" value={_preview(result.value)}"
        else:
            line += f" error={result.error_code} dead_letter={result.dead_letter_id or '-'}"
        lines.append(line)
    return lines


def _render_status(status: PoolStatus) -> str:
    return (
        "Pool status: "
        f"completed={status.completed} succeeded={status.succeeded} failed={status.failed} "
        f"queued={status.queued} pending_retry={status.pending_retry} "
        f"worker_limit={status.current_worker_limit} "
        f"range=[{status.min_workers}, {status.max_workers}] groups={status.task_groups}"
    )


def _reprocess_label(entry: DeadLetterEntry) -> str:
    return "yes" if entry.can_reprocess else "no"


def _preview(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[: _PREVIEW_CHARS - 3] + "..."
