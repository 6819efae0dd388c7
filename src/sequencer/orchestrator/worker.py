"""Queue worker that runs dispatched tasks through the state machine."""

from __future__ import annotations

import logging
import os
import signal
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sequencer.errors import DiscoveryError
from sequencer.execution.state_machine import TaskExecutor
from sequencer.orchestrator.dispatch import unique_lock_name
from sequencer.storage.common import utc_now
from sequencer.storage.locks import LockProvider
from sequencer.storage.queue import ConsumableJobQueue, JobView
from sequencer.tasks.capabilities import backoff_for_attempt, retry_policy, unique_policy
from sequencer.tasks.loader import load_task
from sequencer.tasks.models import Capability, Outcome, Task, TaskState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.skipped += other.skipped
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class QueueWorker:
    """Claims due jobs and executes their tasks on the dispatched record."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: ConsumableJobQueue,
        executor: TaskExecutor,
        locks: LockProvider | None = None,
        worker_id: str | None = None,
        queues: tuple[str, ...] = (),
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.locks = locks
        self.worker_id = worker_id or default_worker_id()
        self.queues = queues
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.queue.claim_next(worker_id=self.worker_id, queues=self.queues)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.debug("Claimed job %s for task %s (attempt %d).", job.id, job.task_name, job.attempt)
        try:
            self._process(job, summary)
        except Exception as error:
            logger.exception("Unexpected error while processing job %s.", job.id)
            self.queue.fail(job.id, error_summary=f"{type(error).__name__}: {error}")
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle for ``max_idle_polls`` polls or ``max_jobs`` ran."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _process(self, job: JobView, summary: WorkerRunSummary) -> None:
        record = self.executor.history.get(job.record_id)
        if record is None:
            self.queue.fail(job.id, error_summary=f"Execution record {job.record_id} not found")
            summary.failed = 1
            return
        if record.state is not TaskState.NOT_STARTED:
            logger.warning(
                "Job %s points at record %s in state %s; nothing to run.",
                job.id,
                record.id,
                record.state.value,
            )
            self.queue.complete(job.id)
            summary.skipped = 1
            return

        try:
            task = load_task(job.task_path, job.task_kind)
        except DiscoveryError as error:
            self.executor.abandon(record, error)
            self.queue.fail(job.id, error_summary=str(error))
            summary.failed = 1
            return

        result = self.executor.execute(
            task,
            record=record,
            will_retry=lambda _error: self._may_retry(task, job),
        )
        if result.will_retry:
            _, backoff, _ = retry_policy(task.definition)
            delay = backoff_for_attempt(backoff, job.attempt)
            self.queue.requeue(
                job.id,
                delay_seconds=delay,
                error_summary=str(result.error),
            )
            logger.info(
                "Re-queued task %s for attempt %d in %ds.",
                task.name,
                job.attempt + 1,
                delay,
            )
            summary.retried = 1
            return

        self._release_unique(task)
        if result.outcome is Outcome.FAILED:
            self.queue.fail(job.id, error_summary=str(result.error))
            summary.failed = 1
        elif result.outcome is Outcome.SKIPPED:
            self.queue.complete(job.id)
            summary.skipped = 1
        else:
            self.queue.complete(job.id)
            summary.succeeded = 1

    def _may_retry(self, task: Task, job: JobView) -> bool:
        if not task.has(Capability.RETRYABLE):
            return False
        tries, _, retry_until = retry_policy(task.definition)
        if job.attempt >= tries:
            return False
        return retry_until is None or utc_now() < retry_until

    def _release_unique(self, task: Task) -> None:
        if self.locks is None or not task.has(Capability.UNIQUE_EXECUTION):
            return
        unique_id, _ = unique_policy(task.definition)
        self.locks.force_release(unique_lock_name(unique_id))

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s; stopping after the current job.", signal.Signals(signum).name)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
