"""Drive one task through its execution lifecycle and record the outcome."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from sequencer.errors import (
    HistoryWriteError,
    InvalidTransitionError,
    SkipTask,
    TaskTimeoutError,
)
from sequencer.execution.fake import TaskFake
from sequencer.execution.transactions import NullTransactor, Transactor
from sequencer.storage.common import utc_now
from sequencer.storage.history import HistoryStore
from sequencer.tasks.capabilities import opts_out_of_transaction, timeout_policy
from sequencer.tasks.models import (
    Capability,
    EventKind,
    ExecutionMethod,
    ExecutionRecord,
    Outcome,
    Task,
    TaskEvent,
    TaskResult,
    TaskState,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.NOT_STARTED: frozenset(
        {TaskState.RUNNING, TaskState.COMPLETED, TaskState.SKIPPED},
    ),
    TaskState.RUNNING: frozenset(
        {TaskState.COMPLETED, TaskState.FAILED, TaskState.SKIPPED, TaskState.NOT_STARTED},
    ),
    TaskState.COMPLETED: frozenset({TaskState.ROLLED_BACK}),
    TaskState.FAILED: frozenset(),
    TaskState.SKIPPED: frozenset(),
    TaskState.ROLLED_BACK: frozenset(),
}

EventCallback = Callable[[TaskEvent], None]


def error_context(error: BaseException) -> dict[str, Any]:
    """``{file, line, code}`` of the innermost frame that raised ``error``."""

    frames = traceback.extract_tb(error.__traceback__)
    last = frames[-1] if frames else None
    code = getattr(error, "code", None)
    if not isinstance(code, int):
        code = getattr(error, "errno", None)
    return {
        "file": last.filename if last is not None else None,
        "line": last.lineno if last is not None else None,
        "code": code if isinstance(code, int) else 0,
    }


class TaskExecutor:
    """The per-task state machine shared by every strategy and the queue worker.

    Each call owns exactly one execution record. Failures are returned as a
    tagged ``TaskResult`` rather than raised so the calling strategy decides
    whether to halt, roll back, or tolerate them.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        history: HistoryStore,
        transactor: Transactor | None = None,
        auto_transaction: bool = True,
        record_errors: bool = True,
        environment: str = "production",
        executed_by: str | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.history = history
        self.transactor = transactor or NullTransactor()
        self.auto_transaction = auto_transaction
        self.record_errors = record_errors
        self.environment = environment
        self.executed_by = executed_by
        self.on_event = on_event

    def transition(
        self,
        task: Task,
        record: ExecutionRecord,
        target: TaskState,
        **fields: Any,
    ) -> ExecutionRecord:
        if target not in ALLOWED_TRANSITIONS[record.state]:
            raise InvalidTransitionError(task.name, record.state.value, target.value)
        try:
            return self.history.update(record.id, state=target, **fields)
        except Exception as error:
            raise HistoryWriteError(task.name, target.value, error) from error

    def create_record(self, task: Task, method: ExecutionMethod) -> ExecutionRecord:
        try:
            return self.history.create(
                name=task.name,
                type=method,
                state=TaskState.NOT_STARTED,
                executed_by=self.executed_by,
            )
        except Exception as error:
            raise HistoryWriteError(task.name, TaskState.NOT_STARTED.value, error) from error

    def execute(
        self,
        task: Task,
        *,
        record: ExecutionRecord | None = None,
        will_retry: Callable[[BaseException], bool] | None = None,
    ) -> TaskResult:
        """Run ``task`` once and persist the outcome.

        ``record`` is given when the task was dispatched earlier and the queue
        worker now runs it; otherwise a fresh ``sync`` record is created.
        ``will_retry`` lets the worker claim a failure for another attempt, in
        which case the record returns to ``not_started`` instead of ``failed``.

        A rejected state write after the record exists still yields a
        ``failed`` result, and the record is driven to ``failed`` if the store
        accepts that write.
        """

        fake = TaskFake.active()
        if fake is not None:
            fake.record(task.name)
            faked = self.create_record(task, ExecutionMethod.FAKE)
            faked = self.transition(task, faked, TaskState.COMPLETED, completed_at=utc_now())
            return TaskResult(task=task, outcome=Outcome.COMPLETED, record=faked, executed=False)

        if record is None:
            record = self.create_record(task, ExecutionMethod.SYNC)

        started = time.monotonic()
        try:
            return self._drive(task, record, started=started, will_retry=will_retry)
        except HistoryWriteError as error:
            return self._history_failure(task, record, error, started=started)

    def _drive(  # noqa: C901, PLR0911
        self,
        task: Task,
        record: ExecutionRecord,
        *,
        started: float,
        will_retry: Callable[[BaseException], bool] | None,
    ) -> TaskResult:
        if task.has(Capability.ENVIRONMENT_SPECIFIC):
            environments = [str(name) for name in task.definition.environments()]
            if environments and self.environment not in environments:
                reason = (
                    f"environment {self.environment!r} not in {', '.join(environments)}"
                )
                logger.info("Task %s not run: %s.", task.name, reason)
                record = self.transition(task, record, TaskState.COMPLETED, completed_at=utc_now())
                self.emit(EventKind.TASK_COMPLETED, task, message=reason)
                return TaskResult(
                    task=task,
                    outcome=Outcome.COMPLETED,
                    record=record,
                    reason=reason,
                    executed=False,
                )

        if task.has(Capability.CONDITIONAL):
            try:
                should_run = bool(task.definition.should_run())
            except SkipTask as skip:
                return self.skip_record(task, record, skip.reason or "skipped")
            except Exception as error:  # noqa: BLE001
                record = self.transition(task, record, TaskState.RUNNING)
                return self._fail(task, record, error, started=started, will_retry=will_retry)
            if not should_run:
                reason = "condition not met"
                logger.info("Task %s not run: %s.", task.name, reason)
                record = self.transition(task, record, TaskState.COMPLETED, completed_at=utc_now())
                self.emit(EventKind.TASK_COMPLETED, task, message=reason)
                return TaskResult(
                    task=task,
                    outcome=Outcome.COMPLETED,
                    record=record,
                    reason=reason,
                    executed=False,
                )

        record = self.transition(task, record, TaskState.RUNNING)
        self.emit(EventKind.TASK_STARTED, task)
        try:
            with self._boundary(task):
                self._invoke(task, started=started)
        except SkipTask as skip:
            reason = skip.reason or "skipped"
            record = self.transition(
                task,
                record,
                TaskState.SKIPPED,
                skipped_at=utc_now(),
                skip_reason=reason,
            )
            logger.info("Task %s skipped: %s", task.name, reason)
            elapsed_ms = _elapsed_ms(started)
            self.emit(EventKind.TASK_SKIPPED, task, message=reason, elapsed_ms=elapsed_ms)
            return TaskResult(
                task=task,
                outcome=Outcome.SKIPPED,
                record=record,
                reason=reason,
                elapsed_ms=elapsed_ms,
            )
        except Exception as error:  # noqa: BLE001
            return self._fail(task, record, error, started=started, will_retry=will_retry)

        record = self.transition(task, record, TaskState.COMPLETED, completed_at=utc_now())
        elapsed_ms = _elapsed_ms(started)
        logger.debug("Task %s completed in %d ms.", task.name, elapsed_ms)
        self.emit(EventKind.TASK_COMPLETED, task, elapsed_ms=elapsed_ms)
        return TaskResult(
            task=task,
            outcome=Outcome.COMPLETED,
            record=record,
            elapsed_ms=elapsed_ms,
        )

    def skip_record(self, task: Task, record: ExecutionRecord, reason: str) -> TaskResult:
        """End a record as skipped without running the task."""

        record = self.transition(
            task,
            record,
            TaskState.SKIPPED,
            skipped_at=utc_now(),
            skip_reason=reason,
        )
        logger.info("Task %s skipped: %s", task.name, reason)
        self.emit(EventKind.TASK_SKIPPED, task, message=reason)
        return TaskResult(task=task, outcome=Outcome.SKIPPED, record=record, reason=reason)

    def abandon(self, record: ExecutionRecord, error: BaseException) -> ExecutionRecord:
        """Fail a dispatched record whose task file can no longer be loaded."""

        if record.state is not TaskState.NOT_STARTED:
            raise InvalidTransitionError(record.name, record.state.value, TaskState.FAILED.value)
        self.history.update(record.id, state=TaskState.RUNNING)
        record = self.history.update(record.id, state=TaskState.FAILED, failed_at=utc_now())
        if self.record_errors:
            self.history.add_error(
                record.id,
                exception=type(error).__qualname__,
                message=str(error),
                trace="".join(traceback.format_exception(error)),
                context=error_context(error),
            )
        logger.error("Task %s could not be loaded: %s", record.name, error)
        return record

    def rollback(self, results: Sequence[TaskResult]) -> list[str]:
        """Undo completed rollbackable tasks, newest first.

        Rollback errors are logged and do not stop the remaining rollbacks.
        """

        rolled_back: list[str] = []
        for result in reversed(results):
            task = result.task
            record = result.record
            if (
                result.outcome is not Outcome.COMPLETED
                or not result.executed
                or record is None
                or record.state is not TaskState.COMPLETED
            ):
                continue
            if not task.has(Capability.ROLLBACKABLE):
                logger.debug("Task %s has no rollback; leaving it applied.", task.name)
                continue
            try:
                with self._boundary(task):
                    task.undo()
            except Exception as error:  # noqa: BLE001
                logger.error("Failed to roll back task %s: %s", task.name, error)
                continue
            try:
                result.record = self.transition(
                    task,
                    record,
                    TaskState.ROLLED_BACK,
                    rolled_back_at=utc_now(),
                )
            except HistoryWriteError as error:
                logger.error(
                    "Task %s was undone but its record still says completed: %s",
                    task.name,
                    error,
                )
            logger.info("Task %s rolled back successfully.", task.name)
            self.emit(EventKind.TASK_ROLLED_BACK, task)
            rolled_back.append(task.name)
        return rolled_back

    def _invoke(self, task: Task, *, started: float) -> None:
        hooks = task.has(Capability.HAS_LIFECYCLE_HOOKS)
        if hooks:
            task.definition.before()
        task.run()
        if task.has(Capability.TIMEOUTABLE):
            timeout, fail_on_timeout = timeout_policy(task.definition)
            elapsed = time.monotonic() - started
            if timeout > 0 and elapsed > timeout:
                if fail_on_timeout:
                    raise TaskTimeoutError(task.name, timeout, elapsed)
                logger.warning(
                    "Task %s exceeded its %gs timeout (ran %.2fs); keeping the result.",
                    task.name,
                    timeout,
                    elapsed,
                )
        if hooks:
            task.definition.after()

    @contextmanager
    def _boundary(self, task: Task) -> Iterator[None]:
        wrap = task.has(Capability.TRANSACTIONAL) or (
            self.auto_transaction and not opts_out_of_transaction(task.definition)
        )
        if not wrap:
            yield
            return
        with self.transactor.transaction():
            yield

    def _fail(
        self,
        task: Task,
        record: ExecutionRecord,
        error: BaseException,
        *,
        started: float,
        will_retry: Callable[[BaseException], bool] | None,
    ) -> TaskResult:
        elapsed_ms = _elapsed_ms(started)
        retrying = will_retry is not None and will_retry(error)
        if retrying:
            record = self.transition(task, record, TaskState.NOT_STARTED)
        else:
            record = self.transition(task, record, TaskState.FAILED, failed_at=utc_now())
        if self.record_errors:
            self.history.add_error(
                record.id,
                exception=type(error).__qualname__,
                message=str(error),
                trace="".join(traceback.format_exception(error)),
                context=error_context(error),
            )

        if retrying:
            logger.warning("Task %s failed and will be retried: %s", task.name, error)
            return TaskResult(
                task=task,
                outcome=Outcome.FAILED,
                record=record,
                error=error,
                elapsed_ms=elapsed_ms,
                will_retry=True,
            )

        if task.has(Capability.HAS_LIFECYCLE_HOOKS):
            try:
                task.definition.failed(error)
            except Exception:
                logger.exception("failed() hook of task %s raised.", task.name)
        logger.error("Task %s failed: %s", task.name, error)
        self.emit(EventKind.TASK_FAILED, task, message=str(error), elapsed_ms=elapsed_ms)
        return TaskResult(
            task=task,
            outcome=Outcome.FAILED,
            record=record,
            error=error,
            elapsed_ms=elapsed_ms,
        )

    def _history_failure(
        self,
        task: Task,
        record: ExecutionRecord,
        error: HistoryWriteError,
        *,
        started: float,
    ) -> TaskResult:
        elapsed_ms = _elapsed_ms(started)
        logger.error("Task %s failed: %s", task.name, error)
        current = record
        try:
            current = self.history.get(record.id) or record
            if current.state is TaskState.NOT_STARTED:
                current = self.history.update(current.id, state=TaskState.RUNNING)
            if current.state is TaskState.RUNNING:
                current = self.history.update(
                    current.id,
                    state=TaskState.FAILED,
                    failed_at=utc_now(),
                )
            if self.record_errors and current.state is TaskState.FAILED:
                self.history.add_error(
                    current.id,
                    exception=type(error).__qualname__,
                    message=str(error),
                    trace="".join(traceback.format_exception(error)),
                    context=error_context(error),
                )
        except Exception:
            logger.exception("Could not mark the record of task %s as failed.", task.name)
        self.emit(EventKind.TASK_FAILED, task, message=str(error), elapsed_ms=elapsed_ms)
        return TaskResult(
            task=task,
            outcome=Outcome.FAILED,
            record=current,
            error=error,
            elapsed_ms=elapsed_ms,
        )

    def emit(
        self,
        kind: EventKind,
        task: Task,
        *,
        message: str | None = None,
        elapsed_ms: int = 0,
    ) -> None:
        if self.on_event is None:
            return
        self.on_event(
            TaskEvent(
                kind=kind,
                name=task.name,
                task_kind=task.kind,
                message=message,
                elapsed_ms=elapsed_ms,
            ),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
