"""CLI entrypoint for sequencer."""

import logging
from pathlib import Path

import rich_click as click

from sequencer import __version__
from sequencer.config import STRATEGY_NAMES
from sequencer.orchestrator.controllers import (
    CommandResult,
    ExecuteCommand,
    ProcessCommand,
    ScheduledCommand,
    SequencerCliController,
    StatusCommand,
    WorkCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SequencerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="sequencer")
def sequencer() -> None:
    """Run migrations and operations once, in order."""


@sequencer.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--isolate", is_flag=True, help="Hold the sequencer lock for the whole run.")
@click.option("--dry-run", is_flag=True, help="Show what would run without executing anything.")
@click.option(
    "--from",
    "from_timestamp",
    default=None,
    help="Only run tasks at or after this timestamp (YYYY_MM_DD_HHMMSS).",
)
@click.option("--repeat", is_flag=True, help="Re-run tasks that already have history.")
@click.option("--sync", "force_sync", is_flag=True, help="Run every task inline.")
@click.option("--async", "force_async", is_flag=True, help="Dispatch every task to the queue.")
@click.option("--queue", default=None, help="Queue name for dispatched tasks.")
@click.option(
    "--tags",
    "tags",
    multiple=True,
    help="Only run operations carrying this tag. Can be repeated.",
)
@click.option(
    "--strategy",
    type=click.Choice(STRATEGY_NAMES),
    default=None,
    help="Orchestration strategy; defaults to SEQUENCER_STRATEGY.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show per-task progress and tracebacks.")
def process(  # noqa: PLR0913
    db_path: Path | None,
    isolate: bool,
    dry_run: bool,
    from_timestamp: str | None,
    repeat: bool,
    force_sync: bool,
    force_async: bool,
    queue: str | None,
    tags: tuple[str, ...],
    strategy: str | None,
    verbose: bool,
) -> None:
    """Execute pending migrations and operations."""

    if force_sync and force_async:
        raise click.UsageError("Cannot use --sync and --async together.")
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    tag_values = tuple(
        tag.strip() for value in tags for tag in value.split(",") if tag.strip()
    )
    _emit_result(
        CONTROLLER.process(
            ProcessCommand(
                db_path=db_path,
                isolate=isolate,
                dry_run=dry_run,
                from_timestamp=from_timestamp,
                repeat=repeat,
                force_sync=force_sync,
                force_async=force_async,
                queue=queue,
                tags=tag_values,
                strategy=strategy,
                verbose=verbose,
            ),
        ),
    )


@sequencer.command("execute")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--sync", "force_sync", is_flag=True, help="Run the operation inline.")
@click.option("--async", "force_async", is_flag=True, help="Dispatch the operation to the queue.")
@click.option("--queue", default=None, help="Queue name when dispatching.")
@click.option(
    "--no-record",
    "no_record",
    is_flag=True,
    help="Run without writing an execution record.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show progress and the traceback on failure.")
def execute(  # noqa: PLR0913
    name: str,
    db_path: Path | None,
    force_sync: bool,
    force_async: bool,
    queue: str | None,
    no_record: bool,
    verbose: bool,
) -> None:
    """Execute one operation by name or timestamp, whatever its history says."""

    if force_sync and force_async:
        raise click.UsageError("Cannot use --sync and --async together.")
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    _emit_result(
        CONTROLLER.execute(
            ExecuteCommand(
                db_path=db_path,
                name=name,
                force_sync=force_sync,
                force_async=force_async,
                queue=queue,
                record=not no_record,
                verbose=verbose,
            ),
        ),
    )


@sequencer.command("scheduled")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--dry-run", is_flag=True, help="List scheduled tasks without dispatching them.")
@click.option("--queue", default=None, help="Queue name for dispatched tasks.")
def scheduled(db_path: Path | None, dry_run: bool, queue: str | None) -> None:
    """Dispatch pending scheduled operations to the queue with their delay."""

    _emit_result(
        CONTROLLER.scheduled(ScheduledCommand(db_path=db_path, dry_run=dry_run, queue=queue)),
    )


@sequencer.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--pending", is_flag=True, help="Show pending tasks.")
@click.option("--completed", is_flag=True, help="Show completed tasks.")
@click.option("--failed", is_flag=True, help="Show failed tasks.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Maximum history rows per section.",
)
def status(  # noqa: PLR0913
    db_path: Path | None,
    pending: bool,
    completed: bool,
    failed: bool,
    limit: int,
) -> None:
    """Show pending, completed, and failed tasks."""

    _emit_result(
        CONTROLLER.status(
            StatusCommand(
                db_path=db_path,
                pending=pending,
                completed=completed,
                failed=failed,
                limit=limit,
            ),
        ),
    )


@sequencer.command("work")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Process at most one job and exit.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs.",
)
@click.option("--queue", "queues", multiple=True, help="Only consume this queue. Can be repeated.")
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
def work(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    queues: tuple[str, ...],
    max_idle_polls: int,
) -> None:
    """Run the queue worker for dispatched tasks."""

    _emit_result(
        CONTROLLER.work(
            WorkCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                queues=queues,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.progress)
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(result.error or "Sequencer run failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sequencer()
