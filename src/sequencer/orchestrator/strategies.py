"""Orchestration strategies: six ways to drive pending tasks through the executor."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from sequencer.errors import BatchExecutionError, TaskFailedError, WaveExecutionError
from sequencer.execution.state_machine import TaskExecutor
from sequencer.orchestrator.dispatch import Dispatcher
from sequencer.orchestrator.models import ProcessOptions
from sequencer.storage.common import utc_now
from sequencer.tasks.graph import build_waves, order_by_dependencies
from sequencer.tasks.models import Capability, Outcome, Task, TaskKind, TaskResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunContext:
    """Shared state for one strategy run.

    ``results`` is filled as tasks finish so the caller can report partial
    progress even when the strategy raises.
    """

    executor: TaskExecutor
    dispatcher: Dispatcher
    options: ProcessOptions
    completed: set[str] = field(default_factory=set)
    max_workers: int = 8
    results: list[TaskResult] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)

    def wants_async(self, task: Task) -> bool:
        if self.options.force_sync:
            return False
        return self.options.force_async or task.has(Capability.ASYNCHRONOUS)

    def run_one(self, task: Task) -> TaskResult:
        if self.wants_async(task):
            return self.dispatcher.dispatch(task)
        return self.executor.execute(task)

    def run_sequentially(self, tasks: Sequence[Task]) -> TaskResult | None:
        """Run ``tasks`` one by one; return the first failure, stopping there."""

        for task in tasks:
            result = self.run_one(task)
            self.results.append(result)
            if result.outcome is Outcome.FAILED:
                return result
        return None

    def run_concurrently(self, tasks: Sequence[Task]) -> list[TaskResult]:
        """Run ``tasks`` in a thread pool and wait for all of them.

        Results come back in submission order. An infrastructure error raised by
        any worker thread is re-raised after the whole group finished.
        """

        if not tasks:
            return []
        workers = max(1, min(self.max_workers, len(tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sequencer-task") as pool:
            futures: list[Future[TaskResult]] = [pool.submit(self.run_one, task) for task in tasks]
        group: list[TaskResult] = []
        first_error: BaseException | None = None
        for future in futures:
            error = future.exception()
            if error is not None:
                first_error = first_error or error
                continue
            group.append(future.result())
        self.results.extend(group)
        if first_error is not None:
            raise first_error
        return group


class Strategy(Protocol):
    name: str

    def run(self, tasks: Sequence[Task], context: RunContext) -> None: ...


def _split(tasks: Sequence[Task]) -> tuple[list[Task], list[Task]]:
    migrations = [task for task in tasks if task.kind is TaskKind.MIGRATION]
    operations = [task for task in tasks if task.kind is TaskKind.OPERATION]
    return migrations, operations


def _raise_task_failure(result: TaskResult) -> None:
    error = result.error or RuntimeError(f"Task {result.task.name} failed")
    raise TaskFailedError(result.task.name, error) from error


class SequentialStrategy:
    """One task at a time; a failure rolls back what this run completed."""

    name = "sequential"

    def run(self, tasks: Sequence[Task], context: RunContext) -> None:
        ordered = order_by_dependencies(tasks, context.completed)
        failure = context.run_sequentially(ordered)
        if failure is None:
            return
        context.rolled_back.extend(context.executor.rollback(context.results[:-1]))
        _raise_task_failure(failure)


class BatchStrategy:
    """Migrations in order, then every operation at once; failures are not rolled back."""

    name = "batch"

    def run(self, tasks: Sequence[Task], context: RunContext) -> None:
        migrations, operations = _split(tasks)
        failure = context.run_sequentially(order_by_dependencies(migrations, context.completed))
        if failure is not None:
            _raise_task_failure(failure)
        group = context.run_concurrently(operations)
        self.handle_group(group, context)

    def handle_group(self, group: list[TaskResult], context: RunContext) -> None:
        failed = [result.task.name for result in group if result.outcome is Outcome.FAILED]
        if failed:
            raise BatchExecutionError(self.name, failed)


class TransactionalBatchStrategy(BatchStrategy):
    """As batch, but any failure undoes every completed operation of the group."""

    name = "transactional_batch"

    def handle_group(self, group: list[TaskResult], context: RunContext) -> None:
        failed = [result.task.name for result in group if result.outcome is Outcome.FAILED]
        if not failed:
            return
        logger.warning(
            "Transactional batch failed (%s); rolling back completed operations.",
            ", ".join(failed),
        )
        context.rolled_back.extend(context.executor.rollback(group))
        raise BatchExecutionError(self.name, failed)


class AllowedToFailBatchStrategy(BatchStrategy):
    """As batch, but failures of tasks marked ``allowed_to_fail`` are tolerated."""

    name = "allowed_to_fail_batch"

    def handle_group(self, group: list[TaskResult], context: RunContext) -> None:
        blocking: list[str] = []
        for result in group:
            if result.outcome is not Outcome.FAILED:
                continue
            if result.task.has(Capability.ALLOWED_TO_FAIL):
                logger.warning(
                    "Task %s failed but is allowed to fail: %s",
                    result.task.name,
                    result.error,
                )
                continue
            blocking.append(result.task.name)
        if blocking:
            raise BatchExecutionError(self.name, blocking)


class DependencyWaveStrategy:
    """Waves from the dependency graph; each wave runs concurrently and is a barrier."""

    name = "dependency_wave"

    def run(self, tasks: Sequence[Task], context: RunContext) -> None:
        waves = build_waves(tasks, context.completed)
        for number, wave in enumerate(waves, start=1):
            logger.debug("Running wave %d with %d task(s).", number, len(wave))
            if all(task.kind is TaskKind.MIGRATION for task in wave):
                failure = context.run_sequentially(wave)
                failed = [failure.task.name] if failure is not None else []
            else:
                group = context.run_concurrently(wave)
                failed = [result.task.name for result in group if result.outcome is Outcome.FAILED]
            if failed:
                raise WaveExecutionError(number, failed)


class ScheduledStrategy:
    """Queue tasks with ``execute_at()`` for later; run the rest like sequential."""

    name = "scheduled"

    def run(self, tasks: Sequence[Task], context: RunContext) -> None:
        ordered = order_by_dependencies(tasks, context.completed)
        now = utc_now()
        for task in ordered:
            if task.has(Capability.SCHEDULED):
                delay = schedule_delay(task, now=now)
                result = context.dispatcher.dispatch(task, delay_seconds=delay)
            else:
                result = context.run_one(task)
            context.results.append(result)
            if result.outcome is Outcome.FAILED:
                context.rolled_back.extend(context.executor.rollback(context.results[:-1]))
                _raise_task_failure(result)


def schedule_delay(task: Task, *, now: datetime) -> float:
    """Seconds until ``execute_at()``; zero for times already past."""

    execute_at = task.definition.execute_at()
    if execute_at.tzinfo is None:
        execute_at = execute_at.replace(tzinfo=UTC)
    return max(0.0, (execute_at - now).total_seconds())


STRATEGIES: dict[str, type[Strategy]] = {
    SequentialStrategy.name: SequentialStrategy,
    BatchStrategy.name: BatchStrategy,
    TransactionalBatchStrategy.name: TransactionalBatchStrategy,
    AllowedToFailBatchStrategy.name: AllowedToFailBatchStrategy,
    DependencyWaveStrategy.name: DependencyWaveStrategy,
    ScheduledStrategy.name: ScheduledStrategy,
}


def get_strategy(name: str) -> Strategy:
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown strategy {name!r}. Expected one of: {', '.join(STRATEGIES)}.",
        ) from None
