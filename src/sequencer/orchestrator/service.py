"""Entry point that wires discovery, strategies, locking, and guards into one run."""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext

from sequencer.config import Settings
from sequencer.errors import BatchExecutionError, TaskFailedError, WaveExecutionError
from sequencer.execution.guards import GuardManager, HostnameGuard, IpAddressGuard
from sequencer.execution.state_machine import EventCallback, TaskExecutor
from sequencer.execution.transactions import Transactor
from sequencer.orchestrator.dispatch import Dispatcher
from sequencer.orchestrator.locking import with_lock
from sequencer.orchestrator.models import ProcessOptions, RunReport
from sequencer.orchestrator.strategies import (
    BatchStrategy,
    DependencyWaveStrategy,
    RunContext,
    get_strategy,
    schedule_delay,
)
from sequencer.storage.common import utc_now
from sequencer.storage.history import HistoryStore, InMemoryHistoryStore
from sequencer.storage.locks import LockProvider
from sequencer.storage.queue import JobQueue
from sequencer.tasks.discovery import discover, find_operation, load_all
from sequencer.tasks.graph import build_waves, order_by_dependencies
from sequencer.tasks.models import (
    Capability,
    EventKind,
    PlannedTask,
    Task,
    TaskEvent,
    TaskKind,
    TaskResult,
)

logger = logging.getLogger(__name__)

_RUN_FAILURES = (TaskFailedError, BatchExecutionError, WaveExecutionError)


class Sequencer:
    """Discover pending tasks and execute them with the configured strategy."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        history: HistoryStore,
        settings: Settings | None = None,
        locks: LockProvider | None = None,
        queue: JobQueue | None = None,
        transactor: Transactor | None = None,
        guards: GuardManager | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.history = history
        self.settings = settings or Settings()
        self.locks = locks
        self.queue = queue
        self.transactor = transactor
        self.guards = guards or GuardManager(
            [
                HostnameGuard(self.settings.guards.allowed_hostnames),
                IpAddressGuard(self.settings.guards.allowed_ips),
            ],
        )
        self.on_event = on_event

    def build_executor(self, history: HistoryStore | None = None) -> TaskExecutor:
        execution = self.settings.execution
        return TaskExecutor(
            history=self.history if history is None else history,
            transactor=self.transactor,
            auto_transaction=execution.auto_transaction,
            record_errors=execution.record_errors,
            environment=execution.environment,
            executed_by=execution.executed_by,
            on_event=self.on_event,
        )

    def discover(self, options: ProcessOptions) -> list[Task]:
        return discover(
            migration_paths=self.settings.discovery.migration_paths,
            operation_paths=self.settings.discovery.operation_paths,
            history=self.history,
            from_timestamp=options.from_timestamp,
            tags=options.tags,
            repeat=options.repeat,
        )

    def preview(self, options: ProcessOptions) -> list[PlannedTask]:
        """Planned tasks in execution order; history is read but never written."""

        strategy = get_strategy(options.strategy or self.settings.execution.strategy)
        tasks = self.discover(options)
        completed = self.history.completed_names()
        if isinstance(strategy, DependencyWaveStrategy):
            return [
                PlannedTask(kind=task.kind, timestamp=task.timestamp, name=task.name, wave=number)
                for number, wave in enumerate(build_waves(tasks, completed), start=1)
                for task in wave
            ]
        if isinstance(strategy, BatchStrategy):
            migrations = [task for task in tasks if task.kind is TaskKind.MIGRATION]
            operations = [task for task in tasks if task.kind is TaskKind.OPERATION]
            ordered = [*order_by_dependencies(migrations, completed), *operations]
        else:
            ordered = order_by_dependencies(tasks, completed)
        return [
            PlannedTask(kind=task.kind, timestamp=task.timestamp, name=task.name)
            for task in ordered
        ]

    def process(
        self,
        options: ProcessOptions | None = None,
        *,
        raise_on_failure: bool = True,
    ) -> RunReport:
        """Run every pending task.

        Task failures surface as ``TaskFailedError``, ``BatchExecutionError`` or
        ``WaveExecutionError``; with ``raise_on_failure=False`` they are stored on
        the returned report instead. Discovery, lock, guard, and queue errors are
        always raised.
        """

        options = options or ProcessOptions()
        options.validate()
        strategy = get_strategy(options.strategy or self.settings.execution.strategy)
        report = RunReport(strategy=strategy.name)

        if options.dry_run:
            report.planned = self.preview(options)
            return report

        self.guards.check()
        lock_scope = nullcontext()
        if options.isolate:
            if self.locks is None:
                raise ValueError("Isolated runs need a lock provider.")
            lock_scope = with_lock(
                self.locks,
                self.settings.lock.name,
                timeout=self.settings.lock.timeout_seconds,
                ttl=self.settings.lock.ttl_seconds,
            )

        started = time.monotonic()
        with lock_scope:
            tasks = self.discover(options)
            if not tasks:
                logger.info("No pending tasks found.")
                self._emit(EventKind.NO_PENDING_TASKS)
                return report

            self._emit(EventKind.RUN_STARTED, message=f"{len(tasks)} task(s)")
            executor = self.build_executor()
            context = RunContext(
                executor=executor,
                dispatcher=Dispatcher(
                    executor=executor,
                    queue=self.queue,
                    locks=self.locks,
                    default_queue=self.settings.queue.default_queue,
                    queue_override=options.queue,
                ),
                options=options,
                completed=self.history.completed_names(),
                max_workers=self.settings.execution.max_workers,
            )
            try:
                strategy.run(tasks, context)
            except _RUN_FAILURES as error:
                report.error = error
            finally:
                report.results = list(context.results)
                report.rolled_back = list(context.rolled_back)
                report.elapsed_ms = int((time.monotonic() - started) * 1000)

        self._emit(
            EventKind.RUN_FINISHED,
            message="failed" if report.error is not None else "ok",
            elapsed_ms=report.elapsed_ms,
        )
        if report.error is not None and raise_on_failure:
            raise report.error
        return report

    def execute(
        self,
        name: str,
        *,
        asynchronous: bool = False,
        queue: str | None = None,
        record: bool = True,
    ) -> TaskResult:
        """Run one operation now, whatever its history says.

        ``name`` is the task name, its file name, or its timestamp. With
        ``record=False`` the operation runs inline against a throwaway history,
        so nothing reaches the store and ``asynchronous`` is ignored.
        """

        task = find_operation(
            load_all(
                migration_paths=(),
                operation_paths=self.settings.discovery.operation_paths,
            ),
            name,
        )
        self.guards.check()
        if not record:
            return self.build_executor(history=InMemoryHistoryStore()).execute(task)
        executor = self.build_executor()
        if not asynchronous:
            return executor.execute(task)
        dispatcher = Dispatcher(
            executor=executor,
            queue=self.queue,
            locks=self.locks,
            default_queue=self.settings.queue.default_queue,
            queue_override=queue,
        )
        return dispatcher.dispatch(task)

    def scheduled_tasks(self, options: ProcessOptions | None = None) -> list[Task]:
        """Pending operations that declare ``execute_at()``."""

        options = options or ProcessOptions()
        return [task for task in self.discover(options) if task.has(Capability.SCHEDULED)]

    def dispatch_scheduled(self, options: ProcessOptions | None = None) -> list[TaskResult]:
        """Queue every pending scheduled task with its delay; nothing runs inline."""

        options = options or ProcessOptions()
        options.validate()
        self.guards.check()
        executor = self.build_executor()
        dispatcher = Dispatcher(
            executor=executor,
            queue=self.queue,
            locks=self.locks,
            default_queue=self.settings.queue.default_queue,
            queue_override=options.queue,
        )
        now = utc_now()
        return [
            dispatcher.dispatch(task, delay_seconds=schedule_delay(task, now=now))
            for task in self.scheduled_tasks(options)
        ]

    def _emit(self, kind: EventKind, *, message: str | None = None, elapsed_ms: int = 0) -> None:
        if self.on_event is not None:
            self.on_event(TaskEvent(kind=kind, message=message, elapsed_ms=elapsed_ms))
