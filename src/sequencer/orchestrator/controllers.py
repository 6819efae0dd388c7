"""Controllers for sequencer CLI commands."""

from __future__ import annotations

import traceback
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from sequencer.config import Settings
from sequencer.errors import SequencerError
from sequencer.execution.transactions import NullTransactor, SqlTransactor, Transactor
from sequencer.orchestrator.models import ProcessOptions, RunReport
from sequencer.orchestrator.service import Sequencer
from sequencer.orchestrator.worker import QueueWorker
from sequencer.storage.common import build_engine, utc_now
from sequencer.storage.history import SqlHistoryStore
from sequencer.storage.locks import SqlLockProvider
from sequencer.storage.queue import SqlJobQueue
from sequencer.tasks.models import EventKind, Outcome, TaskEvent, TaskState


@dataclass(slots=True)
class ProcessCommand:
    """CLI input for one ``process`` run."""

    db_path: Path | None
    isolate: bool = False
    dry_run: bool = False
    from_timestamp: str | None = None
    repeat: bool = False
    force_sync: bool = False
    force_async: bool = False
    queue: str | None = None
    tags: tuple[str, ...] = ()
    strategy: str | None = None
    verbose: bool = False


@dataclass(slots=True)
class ExecuteCommand:
    """CLI input for running one named operation."""

    db_path: Path | None
    name: str
    force_sync: bool = False
    force_async: bool = False
    queue: str | None = None
    record: bool = True
    verbose: bool = False


@dataclass(slots=True)
class ScheduledCommand:
    """CLI input for scheduled task dispatch."""

    db_path: Path | None
    dry_run: bool = False
    queue: str | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for history inspection."""

    db_path: Path | None
    pending: bool = False
    completed: bool = False
    failed: bool = False
    limit: int = 50


@dataclass(slots=True)
class WorkCommand:
    """CLI input for queue worker execution."""

    db_path: Path | None
    once: bool = False
    max_jobs: int | None = None
    queues: tuple[str, ...] = ()
    max_idle_polls: int = 1


@dataclass(slots=True)
class CommandResult:
    """Lines to render in CLI plus the exit status they imply."""

    lines: list[str]
    success: bool = True
    error: str | None = None
    progress: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Stack:
    history: SqlHistoryStore
    locks: SqlLockProvider
    queue: SqlJobQueue
    transactor: Transactor


class SequencerCliController:
    """Coordinates process, execute, scheduled, status, and worker CLI operations."""

    def process(self, command: ProcessCommand) -> CommandResult:
        options = ProcessOptions(
            isolate=command.isolate,
            dry_run=command.dry_run,
            from_timestamp=command.from_timestamp,
            repeat=command.repeat,
            force_sync=command.force_sync,
            force_async=command.force_async,
            queue=command.queue,
            tags=command.tags,
            strategy=command.strategy,
        )
        options.validate()
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()

        progress: list[str] = []
        with _stack(settings) as stack:
            sequencer = _sequencer(settings, stack, on_event=_progress_recorder(progress))
            try:
                report = sequencer.process(options, raise_on_failure=False)
            except SequencerError as error:
                return CommandResult(lines=[], success=False, error=str(error), progress=progress)

        if command.dry_run:
            return CommandResult(lines=render_plan(report))
        lines = render_report(report, verbose=command.verbose)
        return CommandResult(
            lines=lines,
            success=report.ok,
            error=str(report.error) if report.error is not None else None,
            progress=progress if command.verbose else [],
        )

    def execute(self, command: ExecuteCommand) -> CommandResult:
        if command.force_sync and command.force_async:
            raise ValueError("Cannot use --sync and --async together.")
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()

        lines = [f"Executing operation: {command.name}"]
        if command.force_sync:
            lines.append("Mode: Synchronous (forced)")
        elif command.force_async:
            lines.append("Mode: Asynchronous (forced)")
        if command.queue:
            lines.append(f"Queue: {command.queue}")
            if not command.force_async:
                lines.append(
                    "Queue specified but not in async mode. Use --async to dispatch to queue.",
                )
        if not command.record:
            lines.append("Recording: Disabled")

        progress: list[str] = []
        with _stack(settings) as stack:
            sequencer = _sequencer(settings, stack, on_event=_progress_recorder(progress))
            try:
                result = sequencer.execute(
                    command.name,
                    asynchronous=command.force_async,
                    queue=command.queue,
                    record=command.record,
                )
            except SequencerError as error:
                lines.extend(["Failed to execute operation:", str(error)])
                return CommandResult(lines=lines, success=False, error=str(error))

        progress = progress if command.verbose else []
        if result.outcome is Outcome.FAILED:
            lines.extend(["Failed to execute operation:", str(result.error)])
            if command.verbose and result.error is not None:
                lines.extend(_format_trace(result.error))
            return CommandResult(
                lines=lines,
                success=False,
                error=str(result.error),
                progress=progress,
            )
        if result.outcome is Outcome.DISPATCHED:
            lines.append(f"Operation dispatched ({result.reason}).")
        elif result.outcome is Outcome.SKIPPED:
            lines.append(f"Operation skipped: {result.reason}")
        else:
            lines.append("Operation executed successfully.")
        return CommandResult(lines=lines, progress=progress)

    def scheduled(self, command: ScheduledCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        options = ProcessOptions(queue=command.queue)
        with _stack(settings) as stack:
            sequencer = _sequencer(settings, stack)
            try:
                if command.dry_run:
                    tasks = sequencer.scheduled_tasks(options)
                    now = utc_now()
                    lines = [f"Scheduled tasks pending: {len(tasks)}"]
                    for task in tasks:
                        execute_at = task.definition.execute_at()
                        state = "due" if _as_utc(execute_at) <= now else "waiting"
                        lines.append(f"  {task.name}  execute_at={execute_at.isoformat()}  {state}")
                    return CommandResult(lines=lines)
                results = sequencer.dispatch_scheduled(options)
            except SequencerError as error:
                return CommandResult(lines=[], success=False, error=str(error))

        dispatched = [result for result in results if result.outcome is Outcome.DISPATCHED]
        lines = [f"Dispatched {len(dispatched)} scheduled task(s)."]
        lines.extend(f"  {result.task.name}  {result.reason or ''}".rstrip() for result in results)
        if not results:
            lines = ["No pending scheduled tasks found."]
        return CommandResult(lines=lines)

    def status(self, command: StatusCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        show_all = not (command.pending or command.completed or command.failed)
        lines: list[str] = []
        with _stack(settings) as stack:
            if show_all or command.pending:
                sequencer = _sequencer(settings, stack)
                try:
                    pending = sequencer.discover(ProcessOptions())
                except SequencerError as error:
                    return CommandResult(lines=[], success=False, error=str(error))
                lines.append(f"Pending ({len(pending)}):")
                lines.extend(
                    f"  {task.kind.value:<9}  {task.timestamp}  {task.name}" for task in pending
                )
            if show_all or command.completed:
                records = stack.history.list_records(
                    state=TaskState.COMPLETED,
                    limit=command.limit,
                )
                lines.append(f"Completed ({len(records)}):")
                lines.extend(
                    f"  {record.name}  type={record.type.value}  "
                    f"completed_at={_iso(record.completed_at)}"
                    for record in records
                )
            if show_all or command.failed:
                records = stack.history.list_records(state=TaskState.FAILED, limit=command.limit)
                lines.append(f"Failed ({len(records)}):")
                for record in records:
                    errors = stack.history.list_errors(record.id)
                    message = errors[-1].message if errors else "-"
                    lines.append(
                        f"  {record.name}  failed_at={_iso(record.failed_at)}  error={message}",
                    )
        return CommandResult(lines=lines)

    def work(self, command: WorkCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _stack(settings) as stack:
            sequencer = _sequencer(settings, stack)
            worker = QueueWorker(
                queue=stack.queue,
                executor=sequencer.build_executor(),
                locks=stack.locks,
                queues=command.queues,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return CommandResult(
            lines=[
                "Worker summary: "
                f"processed={summary.processed} succeeded={summary.succeeded} "
                f"skipped={summary.skipped} failed={summary.failed} "
                f"retried={summary.retried} idle_polls={summary.idle_polls}",
            ],
        )


def render_plan(report: RunReport) -> list[str]:
    if not report.planned:
        return ["No pending migrations or operations found."]
    lines = [f"Dry run ({report.strategy}): {len(report.planned)} task(s) would run."]
    for planned in report.planned:
        wave = f"[wave {planned.wave}] " if planned.wave is not None else ""
        lines.append(f"  {wave}{planned.kind.value:<9}  {planned.timestamp}  {planned.name}")
    return lines


def render_report(report: RunReport, *, verbose: bool = False) -> list[str]:
    if not report.results and report.error is None:
        return ["No pending migrations or operations found."]
    lines = [
        f"Processed {report.migrations} migration(s), {report.operations} operation(s), "
        f"{report.skipped} skipped, {report.failed} failed in {report.elapsed_ms / 1000:.2f}s",
    ]
    if report.dispatched:
        lines.append(f"Dispatched {report.dispatched} task(s) to the queue.")
    if report.rolled_back:
        lines.append(f"Rolled back: {', '.join(report.rolled_back)}")
    for result in report.results:
        if result.outcome is not Outcome.FAILED:
            continue
        lines.append(f"Failed: {result.task.name}: {result.error}")
        if verbose and result.error is not None:
            lines.extend(_format_trace(result.error))
    return lines


def _format_trace(error: BaseException) -> list[str]:
    return "".join(traceback.format_exception(error)).rstrip().splitlines()


def _progress_recorder(lines: list[str]) -> Callable[[TaskEvent], None]:
    def _record(event: TaskEvent) -> None:
        if event.name is None:
            return
        label = {
            EventKind.TASK_STARTED: "running",
            EventKind.TASK_COMPLETED: "done",
            EventKind.TASK_SKIPPED: "skipped",
            EventKind.TASK_FAILED: "FAILED",
            EventKind.TASK_DISPATCHED: "queued",
            EventKind.TASK_ROLLED_BACK: "rolled back",
        }.get(event.kind, event.kind.value)
        detail = f" ({event.message})" if event.message else ""
        lines.append(f"  {label:<11} {event.name}{detail}")

    return _record


def _sequencer(
    settings: Settings,
    stack: _Stack,
    on_event: Callable[[TaskEvent], None] | None = None,
) -> Sequencer:
    return Sequencer(
        history=stack.history,
        settings=settings,
        locks=stack.locks,
        queue=stack.queue,
        transactor=stack.transactor,
        on_event=on_event,
    )


@contextmanager
def _stack(settings: Settings) -> Iterator[_Stack]:
    history = SqlHistoryStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    history.init_schema()
    target = (
        build_engine(
            db_url=settings.execution.target_db_url,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        if settings.execution.target_db_url
        else None
    )
    try:
        yield _Stack(
            history=history,
            locks=SqlLockProvider(history.engine),
            queue=SqlJobQueue(history.engine),
            transactor=SqlTransactor(target) if target is not None else NullTransactor(),
        )
    finally:
        if target is not None:
            target.dispose()
        history.close()


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value
