"""Dead-letter store: bounded, retention-limited, periodically flushed."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import uuid4

from taskpool.dead_letter.repository import DeadLetterRepository
from taskpool.errors import TaskError
from taskpool.models import DeadLetterEntry, FinalError, RetryAttempt, Task
from taskpool.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeadLetterConfig:
    """Capacity, retention and reprocessing policy."""

    max_entries: int = 1000
    retention_days: int = 30
    max_reprocess_attempts: int = 3
    reprocess_delay_seconds: float = 60.0
    flush_interval_seconds: float = 30.0

    def validate(self) -> None:
        if self.max_entries < 1:
            raise ValueError("max_entries must be >= 1.")
        if self.retention_days < 0:
            raise ValueError("retention_days must be >= 0.")
        if self.max_reprocess_attempts < 0:
            raise ValueError("max_reprocess_attempts must be >= 0.")
        if self.flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be > 0.")


@dataclass(slots=True)
class DeadLetterStats:
    """Aggregated view of the store."""

    total: int
    by_category: dict[str, int]
    by_error_code: dict[str, int]
    reprocessable: int
    oldest_at: datetime | None
    newest_at: datetime | None


class DeadLetterStore:
    """In-memory index of dead letters mirrored to an optional repository.

    Mutations mark entries dirty; `flush()` writes them in one transaction.
    A store without a repository lives only in memory.
    """

    def __init__(
        self,
        config: DeadLetterConfig | None = None,
        *,
        repository: DeadLetterRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or DeadLetterConfig()
        self.config.validate()
        self._repository = repository
        self._clock = clock
        self._entries: dict[str, DeadLetterEntry] = {}
        self._dirty: set[str] = set()
        self._removed: set[str] = set()
        self._flusher: asyncio.Task[None] | None = None

    def open(self) -> None:
        """Create the schema if needed and load persisted entries."""

        if self._repository is None:
            return
        self._repository.init_schema()
        entries = self._repository.load_entries()
        self._entries = {entry.entry_id: entry for entry in entries}
        self._dirty.clear()
        self._removed.clear()
        logger.info("Loaded %s dead-letter entries", len(entries))

    def close(self) -> None:
        """Flush pending changes and release storage."""

        self.flush()
        if self._repository is not None:
            self._repository.close()

    def __len__(self) -> int:
        return len(self._entries)

    def add_entry(
        self,
        task: Task,
        retry_history: Sequence[RetryAttempt],
        final_error: TaskError | FinalError,
        *,
        max_retries: int = 0,
    ) -> DeadLetterEntry:
        """Record a permanently failed task, evicting the oldest entry at capacity."""

        while len(self._entries) >= self.config.max_entries:
            oldest_id = next(iter(self._entries))
            self._drop(oldest_id)
            logger.warning("Dead-letter store full, evicted oldest entry %s", oldest_id)

        now = self._clock()
        final = (
            final_error
            if isinstance(final_error, FinalError)
            else FinalError.from_error(final_error)
        )
        history = list(retry_history)
        entry = DeadLetterEntry(
            entry_id=f"dlq-{uuid4().hex}",
            task_id=task.task_id,
            task_snapshot=task.snapshot(),
            total_attempts=len(history) or task.retry_count + 1,
            max_retries=max_retries,
            retry_history=history,
            final_error=final,
            created_at=now,
            last_attempt_at=history[-1].timestamp if history else now,
            can_reprocess=final.retryable,
            reprocess_after=(
                now + timedelta(seconds=self.config.reprocess_delay_seconds)
                if final.retryable
                else None
            ),
        )
        self._entries[entry.entry_id] = entry
        self._dirty.add(entry.entry_id)
        logger.warning(
            "Dead-lettered task %s after %s attempts: %s %s",
            task.task_id,
            entry.total_attempts,
            final.code,
            final.message,
        )
        return entry

    def get_entry(self, entry_id: str) -> DeadLetterEntry | None:
        return self._entries.get(entry_id)

    def list_entries(
        self,
        *,
        category: str | None = None,
        error_code: str | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterEntry]:
        """Entries oldest first, optionally filtered."""

        entries = [
            entry
            for entry in self._entries.values()
            if (category is None or entry.task_category == category)
            and (error_code is None or entry.final_error.code == error_code)
        ]
        return entries[:limit] if limit is not None else entries

    def get_reprocessable_entries(self) -> list[DeadLetterEntry]:
        now = self._clock()
        return [entry for entry in self._entries.values() if self._is_reprocessable(entry, now)]

    def mark_reprocessing(self, entry_id: str) -> bool:
        """Count a reprocessing attempt and push the next eligibility out exponentially."""

        entry = self._entries.get(entry_id)
        if entry is None or not entry.can_reprocess:
            return False
        entry.reprocess_attempts += 1
        backoff = self.config.reprocess_delay_seconds * (2**entry.reprocess_attempts)
        entry.reprocess_after = self._clock() + timedelta(seconds=backoff)
        self._dirty.add(entry_id)
        logger.info(
            "Reprocessing dead letter %s (attempt %s/%s)",
            entry_id,
            entry.reprocess_attempts,
            self.config.max_reprocess_attempts,
        )
        return True

    def remove_entry(self, entry_id: str) -> bool:
        if entry_id not in self._entries:
            return False
        self._drop(entry_id)
        return True

    def cleanup_expired(self) -> int:
        """Remove entries older than the retention window; returns how many."""

        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        expired = [
            entry_id for entry_id, entry in self._entries.items() if entry.created_at < cutoff
        ]
        for entry_id in expired:
            self._drop(entry_id)
        if expired:
            logger.info("Removed %s expired dead-letter entries", len(expired))
        return len(expired)

    def stats(self) -> DeadLetterStats:
        entries = list(self._entries.values())
        now = self._clock()
        created = [entry.created_at for entry in entries]
        return DeadLetterStats(
            total=len(entries),
            by_category=dict(Counter(entry.task_category or "unknown" for entry in entries)),
            by_error_code=dict(Counter(entry.final_error.code for entry in entries)),
            reprocessable=sum(1 for entry in entries if self._is_reprocessable(entry, now)),
            oldest_at=min(created, default=None),
            newest_at=max(created, default=None),
        )

    def flush(self) -> int:
        """Write pending changes to the repository; returns rows touched."""

        if self._repository is None:
            self._dirty.clear()
            self._removed.clear()
            return 0
        upserts, deletions = self._take_pending()
        try:
            return self._repository.save_entries(upserts=upserts, deletions=deletions)
        except Exception:
            self._restore_pending(upserts, deletions)
            raise

    def start_flusher(self) -> None:
        """Flush on `flush_interval_seconds` from the running event loop."""

        if self._repository is None or (self._flusher is not None and not self._flusher.done()):
            return
        self._flusher = asyncio.create_task(self._flush_periodically())

    async def stop_flusher(self) -> None:
        if self._flusher is None:
            return
        self._flusher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._flusher
        self._flusher = None

    async def _flush_periodically(self) -> None:
        repository = self._repository
        if repository is None:
            return
        while True:
            await asyncio.sleep(self.config.flush_interval_seconds)
            upserts, deletions = self._take_pending()
            if not upserts and not deletions:
                continue
            try:
                await asyncio.to_thread(
                    repository.save_entries,
                    upserts=upserts,
                    deletions=deletions,
                )
            except Exception:
                self._restore_pending(upserts, deletions)
                logger.exception("Dead-letter flush failed; will retry next interval")

    def _is_reprocessable(self, entry: DeadLetterEntry, now: datetime) -> bool:
        return (
            entry.can_reprocess
            and (entry.reprocess_after is None or entry.reprocess_after <= now)
            and entry.reprocess_attempts < self.config.max_reprocess_attempts
        )

    def _drop(self, entry_id: str) -> None:
        del self._entries[entry_id]
        self._dirty.discard(entry_id)
        self._removed.add(entry_id)

    def _take_pending(self) -> tuple[list[DeadLetterEntry], list[str]]:
        upserts = [
            replace(self._entries[entry_id])
            for entry_id in self._dirty
            if entry_id in self._entries
        ]
        deletions = sorted(self._removed)
        self._dirty.clear()
        self._removed.clear()
        return upserts, deletions

    def _restore_pending(self, upserts: list[DeadLetterEntry], deletions: list[str]) -> None:
        self._dirty.update(entry.entry_id for entry in upserts if entry.entry_id in self._entries)
        self._removed.update(entry_id for entry_id in deletions if entry_id not in self._entries)
