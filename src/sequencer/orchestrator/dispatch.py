"""Hand tasks to the job queue instead of running them inline."""

from __future__ import annotations

import logging

from sequencer.errors import QueueDispatchError
from sequencer.execution.fake import TaskFake
from sequencer.execution.state_machine import TaskExecutor
from sequencer.storage.locks import LockProvider
from sequencer.storage.queue import JobQueue, JobRequest
from sequencer.tasks.capabilities import unique_policy
from sequencer.tasks.models import Capability, EventKind, ExecutionMethod, Outcome, Task, TaskResult

logger = logging.getLogger(__name__)

UNIQUE_LOCK_PREFIX = "sequencer:unique:"


def unique_lock_name(unique_id: str) -> str:
    return f"{UNIQUE_LOCK_PREFIX}{unique_id}"


class Dispatcher:
    """Create the ``async`` record and enqueue a job for the queue worker."""

    def __init__(
        self,
        *,
        executor: TaskExecutor,
        queue: JobQueue | None,
        locks: LockProvider | None = None,
        default_queue: str = "default",
        queue_override: str | None = None,
    ) -> None:
        self.executor = executor
        self.queue = queue
        self.locks = locks
        self.default_queue = default_queue
        self.queue_override = queue_override

    def resolve_queue(self, task: Task) -> str:
        """``--queue`` beats the task's own ``queue()``, which beats the configured default."""

        if self.queue_override:
            return self.queue_override
        if task.has(Capability.SPECIFIES_QUEUE):
            name = task.definition.queue()
            if name:
                return str(name)
        return self.default_queue

    def dispatch(self, task: Task, *, delay_seconds: float = 0) -> TaskResult:
        if TaskFake.is_faking():
            return self.executor.execute(task)
        if self.queue is None:
            raise QueueDispatchError(
                f"Task {task.name!r} needs asynchronous dispatch but no job queue is configured.",
            )

        record = self.executor.create_record(task, ExecutionMethod.ASYNC)
        lock_name: str | None = None
        if task.has(Capability.UNIQUE_EXECUTION) and self.locks is not None:
            unique_id, unique_for = unique_policy(task.definition)
            lock_name = unique_lock_name(unique_id)
            if self.locks.acquire(lock_name, 0, unique_for) is None:
                return self.executor.skip_record(
                    task,
                    record,
                    f"unique task {unique_id!r} is already queued or running",
                )

        queue_name = self.resolve_queue(task)
        try:
            job_id = self.queue.enqueue(
                JobRequest(
                    task_name=task.name,
                    task_path=task.path,
                    task_kind=task.kind,
                    record_id=record.id,
                    queue=queue_name,
                ),
                delay_seconds=max(0.0, delay_seconds),
            )
        except QueueDispatchError:
            if lock_name is not None and self.locks is not None:
                self.locks.force_release(lock_name)
            raise
        except Exception as error:
            if lock_name is not None and self.locks is not None:
                self.locks.force_release(lock_name)
            raise QueueDispatchError(f"Failed to enqueue task {task.name!r}: {error}") from error

        reason = f"queue={queue_name} job={job_id}"
        if delay_seconds > 0:
            reason += f" delay={delay_seconds:.0f}s"
        logger.info("Dispatched task %s (%s).", task.name, reason)
        self.executor.emit(EventKind.TASK_DISPATCHED, task, message=reason)
        return TaskResult(task=task, outcome=Outcome.DISPATCHED, record=record, reason=reason)
