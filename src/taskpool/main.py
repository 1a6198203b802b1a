"""CLI entrypoint for taskpool."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskpool import __version__
from taskpool.controllers import (
    DlqCleanupCommand,
    DlqInspectCommand,
    DlqListCommand,
    DlqMutateCommand,
    DlqReprocessCommand,
    DlqStatsCommand,
    RunCommand,
    TaskpoolCliController,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskpoolCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="taskpool")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to TASKPOOL_LOG_LEVEL or WARNING.",
)
def taskpool(log_level: str | None) -> None:
    """Resilient task pool CLI."""

    level = (log_level or os.getenv("TASKPOOL_LOG_LEVEL", "WARNING")).strip().upper()
    if level not in LOG_LEVELS:
        raise click.ClickException(f"Unknown log level: {level}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskpool.command("run")
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with a `tasks` array.",
)
@click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    default=None,
    help="Upper concurrency bound; overrides TASKPOOL_MAX_WORKERS.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def run(tasks_file: Path, max_workers: int | None, db_path: Path | None) -> None:
    """Run every task in the file through the worker pool."""

    _emit_lines(
        _guarded(
            CONTROLLER.run,
            RunCommand(db_path=db_path, tasks_file=tasks_file, max_workers=max_workers),
        ),
    )


@taskpool.group()
def dlq() -> None:
    """Dead-letter store commands."""


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--category", default=None, help="Filter by task category, for example bugfix.")
@click.option("--error-code", default=None, help="Filter by final error code.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max entries to show.",
)
def dlq_list(
    db_path: Path | None,
    category: str | None,
    error_code: str | None,
    limit: int,
) -> None:
    """List dead-letter entries, oldest first."""

    _emit_lines(
        CONTROLLER.dlq_list(
            DlqListCommand(
                db_path=db_path,
                category=category,
                error_code=error_code,
                limit=limit,
            ),
        ),
    )


@dlq.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("entry_id")
def dlq_inspect(db_path: Path | None, entry_id: str) -> None:
    """Show one entry with its retry history."""

    _emit_lines(CONTROLLER.dlq_inspect(DlqInspectCommand(db_path=db_path, entry_id=entry_id)))


@dlq.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def dlq_stats(db_path: Path | None) -> None:
    """Show dead-letter counts by category and error code."""

    _emit_lines(CONTROLLER.dlq_stats(DlqStatsCommand(db_path=db_path)))


@dlq.command("remove")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("entry_id")
def dlq_remove(db_path: Path | None, entry_id: str) -> None:
    """Delete one entry."""

    _emit_lines(CONTROLLER.dlq_remove(DlqMutateCommand(db_path=db_path, entry_id=entry_id)))


@dlq.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def dlq_cleanup(db_path: Path | None) -> None:
    """Remove entries older than the retention window."""

    _emit_lines(CONTROLLER.dlq_cleanup(DlqCleanupCommand(db_path=db_path)))


@dlq.command("reprocess")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--entry-id",
    "entry_ids",
    multiple=True,
    help="Only reprocess this entry. Can be repeated.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max entries to reprocess.",
)
def dlq_reprocess(db_path: Path | None, entry_ids: tuple[str, ...], limit: int | None) -> None:
    """Re-run eligible entries through the pool; recovered ones are removed."""

    _emit_lines(
        _guarded(
            CONTROLLER.dlq_reprocess,
            DlqReprocessCommand(db_path=db_path, entry_ids=entry_ids, limit=limit),
        ),
    )


def _guarded(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskpool()
