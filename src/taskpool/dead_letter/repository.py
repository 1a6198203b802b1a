"""Durable dead-letter persistence backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sqlmodel import Session, col, select

from taskpool.errors import ErrorSeverity
from taskpool.models import DeadLetterEntry, FinalError, RetryAttempt
from taskpool.storage.alembic_runner import upgrade_head
from taskpool.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware,
)
from taskpool.storage.sqlmodel_models import DeadLetterRow

logger = logging.getLogger(__name__)


class DeadLetterRepository:
    """One row per dead-letter entry; history and snapshot stored as JSON."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def load_entries(self) -> list[DeadLetterEntry]:
        """All stored entries, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetterRow).order_by(
                    col(DeadLetterRow.created_at).asc(),
                    col(DeadLetterRow.entry_id).asc(),
                ),
            ).all()
            return [_row_to_entry(row) for row in rows]

    def save_entries(
        self,
        *,
        upserts: Iterable[DeadLetterEntry],
        deletions: Iterable[str],
    ) -> int:
        """Apply pending changes in one transaction; returns rows touched."""

        touched = 0
        with Session(self.engine) as session:
            for entry in upserts:
                session.merge(_entry_to_row(entry))
                touched += 1
            for entry_id in deletions:
                row = session.get(DeadLetterRow, entry_id)
                if row is None:
                    continue
                session.delete(row)
                touched += 1
            session.commit()
        if touched:
            logger.debug("Persisted %s dead-letter changes to %s", touched, self.db_path)
        return touched


def _entry_to_row(entry: DeadLetterEntry) -> DeadLetterRow:
    return DeadLetterRow(
        entry_id=entry.entry_id,
        task_id=entry.task_id,
        task_category=entry.task_category,
        task_snapshot_json=json.dumps(entry.task_snapshot, ensure_ascii=False, sort_keys=True),
        total_attempts=entry.total_attempts,
        max_retries=entry.max_retries,
        retry_history_json=json.dumps(
            [attempt.to_dict() for attempt in entry.retry_history],
            ensure_ascii=False,
        ),
        final_error_code=entry.final_error.code,
        final_error_message=entry.final_error.message,
        final_error_severity=entry.final_error.severity.value,
        final_error_retryable=entry.final_error.retryable,
        can_reprocess=entry.can_reprocess,
        reprocess_after=(
            to_db_datetime(entry.reprocess_after) if entry.reprocess_after is not None else None
        ),
        reprocess_attempts=entry.reprocess_attempts,
        created_at=to_db_datetime(entry.created_at),
        last_attempt_at=to_db_datetime(entry.last_attempt_at),
    )


def _row_to_entry(row: DeadLetterRow) -> DeadLetterEntry:
    history_payload: list[dict[str, Any]] = json.loads(row.retry_history_json)
    return DeadLetterEntry(
        entry_id=row.entry_id,
        task_id=row.task_id,
        task_snapshot=json.loads(row.task_snapshot_json),
        total_attempts=row.total_attempts,
        max_retries=row.max_retries,
        retry_history=[_attempt_from_dict(item) for item in history_payload],
        final_error=FinalError(
            code=row.final_error_code,
            message=row.final_error_message,
            severity=ErrorSeverity(row.final_error_severity),
            retryable=row.final_error_retryable,
        ),
        created_at=to_utc_aware(row.created_at),
        last_attempt_at=to_utc_aware(row.last_attempt_at),
        can_reprocess=row.can_reprocess,
        reprocess_after=(
            to_utc_aware(row.reprocess_after) if row.reprocess_after is not None else None
        ),
        reprocess_attempts=row.reprocess_attempts,
    )


def _attempt_from_dict(payload: dict[str, Any]) -> RetryAttempt:
    return RetryAttempt(
        attempt=int(payload["attempt"]),
        timestamp=from_iso(str(payload["timestamp"])),
        error_code=str(payload["error_code"]),
        error_message=str(payload["error_message"]),
        delay_seconds=float(payload["delay_seconds"]),
        duration_seconds=float(payload["duration_seconds"]),
        context=dict(payload.get("context") or {}),
    )
