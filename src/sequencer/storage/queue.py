"""Job queue for the asynchronous dispatch path."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from sequencer.errors import QueueDispatchError
from sequencer.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from sequencer.storage.sqlmodel_models import QueuedJob
from sequencer.tasks.models import TaskKind


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class JobRequest:
    """What the dispatcher hands to the queue."""

    task_name: str
    task_path: Path
    task_kind: TaskKind
    record_id: int
    queue: str


@dataclass(slots=True)
class JobView:
    """Queue row as seen by the worker and the CLI."""

    id: int
    task_name: str
    task_path: Path
    task_kind: TaskKind
    record_id: int
    queue: str
    status: JobStatus
    attempt: int
    run_after: datetime
    worker_id: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


class JobQueue(Protocol):
    def enqueue(self, job: JobRequest, delay_seconds: float = 0) -> int: ...


class ConsumableJobQueue(JobQueue, Protocol):
    def claim_next(
        self,
        *,
        worker_id: str,
        queues: tuple[str, ...] = (),
    ) -> JobView | None: ...

    def complete(self, job_id: int) -> bool: ...

    def fail(self, job_id: int, *, error_summary: str) -> bool: ...

    def requeue(self, job_id: int, *, delay_seconds: float, error_summary: str) -> bool: ...

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue: str | None = None,
    ) -> list[JobView]: ...


class InMemoryJobQueue:
    """List-backed queue with the same claim semantics as ``SqlJobQueue``."""

    def __init__(self) -> None:
        self._jobs: dict[int, JobView] = {}
        self._mutex = threading.Lock()
        self._next_id = 1

    def enqueue(self, job: JobRequest, delay_seconds: float = 0) -> int:
        now = utc_now()
        with self._mutex:
            view = JobView(
                id=self._next_id,
                task_name=job.task_name,
                task_path=job.task_path,
                task_kind=job.task_kind,
                record_id=job.record_id,
                queue=job.queue,
                status=JobStatus.QUEUED,
                attempt=0,
                run_after=now + timedelta(seconds=max(0.0, delay_seconds)),
                worker_id=None,
                error_summary=None,
                created_at=now,
                updated_at=now,
            )
            self._jobs[view.id] = view
            self._next_id += 1
            return view.id

    def claim_next(self, *, worker_id: str, queues: tuple[str, ...] = ()) -> JobView | None:
        now = utc_now()
        with self._mutex:
            ready = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.QUEUED
                and job.run_after <= now
                and (not queues or job.queue in queues)
            ]
            if not ready:
                return None
            job = min(ready, key=lambda item: (item.run_after, item.id))
            job.status = JobStatus.RUNNING
            job.attempt += 1
            job.worker_id = worker_id
            job.updated_at = now
            return replace(job)

    def complete(self, job_id: int) -> bool:
        return self._finish(job_id, JobStatus.DONE, None)

    def fail(self, job_id: int, *, error_summary: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error_summary)

    def requeue(self, job_id: int, *, delay_seconds: float, error_summary: str) -> bool:
        now = utc_now()
        with self._mutex:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return False
            job.status = JobStatus.QUEUED
            job.run_after = now + timedelta(seconds=max(0.0, delay_seconds))
            job.worker_id = None
            job.error_summary = error_summary
            job.updated_at = now
            return True

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue: str | None = None,
    ) -> list[JobView]:
        with self._mutex:
            jobs = [replace(job) for job in self._jobs.values()]
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        if queue is not None:
            jobs = [job for job in jobs if job.queue == queue]
        return sorted(jobs, key=lambda job: job.id)

    def _finish(self, job_id: int, status: JobStatus, error_summary: str | None) -> bool:
        with self._mutex:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return False
            job.status = status
            job.error_summary = error_summary
            job.updated_at = utc_now()
            return True


class SqlJobQueue:
    """Queue persisted in ``queued_jobs``; claims are atomic compare-and-set updates."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def enqueue(self, job: JobRequest, delay_seconds: float = 0) -> int:
        now = utc_now()
        run_after = now + timedelta(seconds=max(0.0, delay_seconds))
        with Session(self.engine) as session:
            row = QueuedJob(
                task_name=job.task_name,
                task_path=str(job.task_path),
                task_kind=job.task_kind.value,
                record_id=job.record_id,
                queue=job.queue,
                status=JobStatus.QUEUED.value,
                attempt=0,
                run_after=to_db_datetime(run_after),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise QueueDispatchError(f"Queue did not assign an id to job {job.task_name!r}")
            return row.id

    def claim_next(self, *, worker_id: str, queues: tuple[str, ...] = ()) -> JobView | None:
        """Atomically claim one job that is due."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(QueuedJob).where(
                    QueuedJob.status == JobStatus.QUEUED.value,
                    col(QueuedJob.run_after) <= to_db_datetime(now),
                )
                if queues:
                    statement = statement.where(col(QueuedJob.queue).in_(list(queues)))
                candidate = session.exec(
                    statement.order_by(
                        col(QueuedJob.run_after).asc(),
                        col(QueuedJob.id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedJob)
                    .where(
                        col(QueuedJob.id) == candidate.id,
                        col(QueuedJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(candidate)
                return _to_view(candidate)

    def complete(self, job_id: int) -> bool:
        return self._transition(job_id, status=JobStatus.DONE, error_summary=None)

    def fail(self, job_id: int, *, error_summary: str) -> bool:
        return self._transition(job_id, status=JobStatus.FAILED, error_summary=error_summary)

    def requeue(self, job_id: int, *, delay_seconds: float, error_summary: str) -> bool:
        run_after = utc_now() + timedelta(seconds=max(0.0, delay_seconds))
        return self._transition(
            job_id,
            status=JobStatus.QUEUED,
            error_summary=error_summary,
            run_after=run_after,
        )

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue: str | None = None,
    ) -> list[JobView]:
        statement = select(QueuedJob).order_by(col(QueuedJob.id).asc())
        if status is not None:
            statement = statement.where(QueuedJob.status == status.value)
        if queue is not None:
            statement = statement.where(QueuedJob.queue == queue)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_view(row) for row in rows]

    def _transition(
        self,
        job_id: int,
        *,
        status: JobStatus,
        error_summary: str | None,
        run_after: datetime | None = None,
    ) -> bool:
        now = utc_now()
        values: dict[str, object] = {
            "status": status.value,
            "error_summary": error_summary,
            "updated_at": to_db_datetime(now),
        }
        if run_after is not None:
            values["run_after"] = to_db_datetime(run_after)
            values["worker_id"] = None
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedJob)
                .where(
                    col(QueuedJob.id) == job_id,
                    col(QueuedJob.status) == JobStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_view(row: QueuedJob) -> JobView:
    return JobView(
        id=row.id or 0,
        task_name=row.task_name,
        task_path=Path(row.task_path),
        task_kind=TaskKind(row.task_kind),
        record_id=row.record_id,
        queue=row.queue,
        status=JobStatus(row.status),
        attempt=row.attempt,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
