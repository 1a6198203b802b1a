from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from conftest import make_task
from sqlalchemy import text

from taskpool.dead_letter.repository import DeadLetterRepository
from taskpool.dead_letter.store import DeadLetterConfig, DeadLetterStore
from taskpool.errors import ErrorSeverity, TransientError, ValidationError
from taskpool.models import RetryAttempt, TaskCategory, TaskMetadata

pytestmark = [
    allure.epic("Dead Letters"),
    allure.feature("Store & Persistence"),
]

_START = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = _START

    def __call__(self) -> datetime:
        return self.now


def _attempt(number: int, code: str = "TRANSIENT") -> RetryAttempt:
    return RetryAttempt(
        attempt=number,
        timestamp=_START + timedelta(seconds=number),
        error_code=code,
        error_message="upstream down",
        delay_seconds=float(number),
        duration_seconds=0.5,
        context={"slot_id": "worker-1"},
    )


def _store(clock: _Clock, **config: float) -> DeadLetterStore:
    return DeadLetterStore(
        DeadLetterConfig(
            max_entries=int(config.get("max_entries", 10)),
            retention_days=int(config.get("retention_days", 30)),
            max_reprocess_attempts=int(config.get("max_reprocess_attempts", 2)),
            reprocess_delay_seconds=config.get("reprocess_delay_seconds", 60.0),
        ),
        clock=clock,
    )


def test_add_entry_records_history_and_reprocess_window() -> None:
    clock = _Clock()
    store = _store(clock)
    task = make_task(metadata=TaskMetadata(category=TaskCategory.BUGFIX))

    entry = store.add_entry(
        task,
        [_attempt(1), _attempt(2)],
        TransientError("upstream down"),
        max_retries=1,
    )

    assert entry.entry_id.startswith("dlq-")
    assert entry.total_attempts == 2
    assert entry.task_category == "bugfix"
    assert entry.final_error.severity is ErrorSeverity.MEDIUM
    assert entry.can_reprocess is True
    assert entry.reprocess_after == _START + timedelta(seconds=60)
    assert entry.last_attempt_at == _START + timedelta(seconds=2)
    assert store.get_entry(entry.entry_id) is entry


def test_capacity_evicts_oldest_entry() -> None:
    clock = _Clock()
    store = _store(clock, max_entries=2)
    first = store.add_entry(make_task("task-1"), [_attempt(1)], TransientError("x"))
    second = store.add_entry(make_task("task-2"), [_attempt(1)], TransientError("x"))
    third = store.add_entry(make_task("task-3"), [_attempt(1)], TransientError("x"))

    assert len(store) == 2
    assert store.get_entry(first.entry_id) is None
    assert [entry.entry_id for entry in store.list_entries()] == [
        second.entry_id,
        third.entry_id,
    ]


def test_list_entries_filters_by_category_and_error_code() -> None:
    store = _store(_Clock())
    store.add_entry(
        make_task("task-1", metadata=TaskMetadata(category=TaskCategory.DOCS)),
        [_attempt(1)],
        TransientError("x"),
    )
    store.add_entry(
        make_task("task-2", metadata=TaskMetadata(category=TaskCategory.SECURITY)),
        [_attempt(1, "VALIDATION")],
        ValidationError("bad"),
    )

    assert [entry.task_id for entry in store.list_entries(category="docs")] == ["task-1"]
    assert [entry.task_id for entry in store.list_entries(error_code="VALIDATION")] == [
        "task-2",
    ]
    assert len(store.list_entries(limit=1)) == 1


def test_reprocessable_entries_respect_delay_and_attempt_cap() -> None:
    clock = _Clock()
    store = _store(clock, reprocess_delay_seconds=10, max_reprocess_attempts=2)
    retryable = store.add_entry(make_task("task-1"), [_attempt(1)], TransientError("x"))
    store.add_entry(make_task("task-2"), [_attempt(1)], ValidationError("bad"))

    assert store.get_reprocessable_entries() == []

    clock.now += timedelta(seconds=10)
    assert [entry.entry_id for entry in store.get_reprocessable_entries()] == [retryable.entry_id]

    assert store.mark_reprocessing(retryable.entry_id) is True
    assert retryable.reprocess_attempts == 1
    assert retryable.reprocess_after == clock.now + timedelta(seconds=20)
    assert store.get_reprocessable_entries() == []

    clock.now += timedelta(seconds=20)
    store.mark_reprocessing(retryable.entry_id)
    clock.now += timedelta(days=1)
    assert store.get_reprocessable_entries() == []
    assert store.mark_reprocessing("dlq-missing") is False


def test_cleanup_removes_entries_past_retention() -> None:
    clock = _Clock()
    store = _store(clock, retention_days=7)
    old = store.add_entry(make_task("task-1"), [_attempt(1)], TransientError("x"))
    clock.now += timedelta(days=5)
    fresh = store.add_entry(make_task("task-2"), [_attempt(1)], TransientError("x"))
    clock.now += timedelta(days=3)

    assert store.cleanup_expired() == 1
    assert store.get_entry(old.entry_id) is None
    assert store.get_entry(fresh.entry_id) is not None


def test_stats_aggregate_by_category_and_code() -> None:
    clock = _Clock()
    store = _store(clock, reprocess_delay_seconds=0)
    store.add_entry(make_task("task-1"), [_attempt(1)], TransientError("x"))
    clock.now += timedelta(hours=1)
    store.add_entry(make_task("task-2"), [_attempt(1)], ValidationError("bad"))

    stats = store.stats()

    assert stats.total == 2
    assert stats.by_category == {"feature": 2}
    assert stats.by_error_code == {"TRANSIENT": 1, "VALIDATION": 1}
    assert stats.reprocessable == 1
    assert stats.oldest_at == _START
    assert stats.newest_at == _START + timedelta(hours=1)


def test_entries_survive_store_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "dlq.db"
    store = DeadLetterStore(repository=DeadLetterRepository(db_path))
    store.open()
    kept = store.add_entry(make_task("task-1"), [_attempt(1), _attempt(2)], TransientError("x"))
    dropped = store.add_entry(make_task("task-2"), [_attempt(1)], ValidationError("bad"))
    store.remove_entry(dropped.entry_id)
    store.close()

    reopened = DeadLetterStore(repository=DeadLetterRepository(db_path))
    reopened.open()
    entries = reopened.list_entries()
    reopened.close()

    assert [entry.entry_id for entry in entries] == [kept.entry_id]
    restored = entries[0]
    assert [attempt.attempt for attempt in restored.retry_history] == [1, 2]
    assert restored.retry_history[0].context == {"slot_id": "worker-1"}
    assert restored.created_at == kept.created_at
    assert restored.final_error == kept.final_error
    assert restored.task_snapshot["task_id"] == "task-1"


def test_periodic_flusher_persists_changes(tmp_path: Path) -> None:
    db_path = tmp_path / "dlq.db"
    repository = DeadLetterRepository(db_path)
    store = DeadLetterStore(DeadLetterConfig(flush_interval_seconds=0.01), repository=repository)
    store.open()

    async def scenario() -> None:
        store.start_flusher()
        store.add_entry(make_task(), [_attempt(1)], TransientError("x"))
        await asyncio.sleep(0.2)
        await store.stop_flusher()

    asyncio.run(scenario())

    assert len(repository.load_entries()) == 1
    store.close()


def test_failed_flush_keeps_changes_pending(tmp_path: Path) -> None:
    class BrokenRepository(DeadLetterRepository):
        def save_entries(self, *, upserts, deletions) -> int:  # type: ignore[override]
            raise OSError("disk full")

    store = DeadLetterStore(repository=BrokenRepository(tmp_path / "dlq.db"))
    store.add_entry(make_task(), [_attempt(1)], TransientError("x"))

    with pytest.raises(OSError, match="disk full"):
        store.flush()
    with pytest.raises(OSError, match="disk full"):
        store.flush()


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    repository = DeadLetterRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        columns = {
            row[1]
            for row in connection.execute(text("PRAGMA table_info(dead_letter_entries)"))
        }
    repository.close()

    assert version == "20261018_0001"
    assert {"entry_id", "retry_history_json", "reprocess_after", "created_at"} <= columns
