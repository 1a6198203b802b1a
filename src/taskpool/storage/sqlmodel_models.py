"""SQLModel ORM tables for the dead-letter store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Text, text
from sqlmodel import Field, SQLModel


class DeadLetterRow(SQLModel, table=True):
    __tablename__ = "dead_letter_entries"  # type: ignore[bad-override]

    entry_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    task_category: str | None = Field(default=None)
    task_snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    total_attempts: int
    max_retries: int
    retry_history_json: str = Field(sa_column=Column(Text, nullable=False))
    final_error_code: str
    final_error_message: str = Field(sa_column=Column(Text, nullable=False))
    final_error_severity: str
    final_error_retryable: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    can_reprocess: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    reprocess_after: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    reprocess_attempts: int = Field(default=0)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    last_attempt_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
