"""Durable quarantine for permanently failed tasks."""

from taskpool.dead_letter.repository import DeadLetterRepository
from taskpool.dead_letter.store import DeadLetterConfig, DeadLetterStats, DeadLetterStore

__all__ = [
    "DeadLetterConfig",
    "DeadLetterRepository",
    "DeadLetterStats",
    "DeadLetterStore",
]
