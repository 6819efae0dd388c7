"""Execution history stores.

The engine depends only on the ``HistoryStore`` protocol; ``SqlHistoryStore`` is
the durable SQLModel/SQLite implementation and ``InMemoryHistoryStore`` backs
tests and dry experiments.
"""

from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlmodel import Session, col, select

from sequencer.storage.alembic_runner import upgrade_head
from sequencer.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from sequencer.storage.sqlmodel_models import TaskError, TaskExecution
from sequencer.tasks.models import ErrorRecord, ExecutionMethod, ExecutionRecord, TaskState

_UPDATABLE_FIELDS = frozenset(
    {
        "state",
        "completed_at",
        "failed_at",
        "skipped_at",
        "skip_reason",
        "rolled_back_at",
    },
)


class HistoryStore(Protocol):
    def create(
        self,
        *,
        name: str,
        type: ExecutionMethod,  # noqa: A002
        state: TaskState = TaskState.NOT_STARTED,
        executed_by: str | None = None,
    ) -> ExecutionRecord: ...

    def update(self, record_id: int, **fields: Any) -> ExecutionRecord: ...

    def get(self, record_id: int) -> ExecutionRecord | None: ...

    def find_by_name(self, name: str) -> ExecutionRecord | None: ...

    def add_error(
        self,
        record_id: int,
        *,
        exception: str,
        message: str,
        trace: str,
        context: dict[str, Any],
    ) -> ErrorRecord: ...

    def list_errors(self, record_id: int) -> list[ErrorRecord]: ...

    def list_records(
        self,
        *,
        state: TaskState | None = None,
        name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]: ...

    def completed_names(self) -> set[str]: ...

    def terminal_names(self) -> set[str]: ...

    def in_flight_names(self) -> set[str]: ...


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported execution record fields: {sorted(unknown)}")


class InMemoryHistoryStore:
    """Thread-safe dict-backed history for tests and unrecorded runs."""

    def __init__(self) -> None:
        self._records: dict[int, ExecutionRecord] = {}
        self._errors: dict[int, list[ErrorRecord]] = {}
        self._lock = threading.Lock()
        self._next_id = 1
        self._next_error_id = 1

    def create(
        self,
        *,
        name: str,
        type: ExecutionMethod,  # noqa: A002
        state: TaskState = TaskState.NOT_STARTED,
        executed_by: str | None = None,
    ) -> ExecutionRecord:
        with self._lock:
            record = ExecutionRecord(
                id=self._next_id,
                name=name,
                type=type,
                state=state,
                executed_at=utc_now(),
                executed_by=executed_by,
            )
            self._records[record.id] = record
            self._next_id += 1
            return replace(record)

    def update(self, record_id: int, **fields: Any) -> ExecutionRecord:
        _check_fields(fields)
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RuntimeError(f"Execution record not found: {record_id}")
            updated = replace(current, **fields)
            self._records[record_id] = updated
            return replace(updated)

    def get(self, record_id: int) -> ExecutionRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return replace(record) if record is not None else None

    def find_by_name(self, name: str) -> ExecutionRecord | None:
        matches = self.list_records(name=name, limit=1)
        return matches[0] if matches else None

    def add_error(
        self,
        record_id: int,
        *,
        exception: str,
        message: str,
        trace: str,
        context: dict[str, Any],
    ) -> ErrorRecord:
        with self._lock:
            error = ErrorRecord(
                id=self._next_error_id,
                execution_id=record_id,
                exception=exception,
                message=message,
                trace=trace,
                context=dict(context),
                created_at=utc_now(),
            )
            self._next_error_id += 1
            self._errors.setdefault(record_id, []).append(error)
            return error

    def list_errors(self, record_id: int) -> list[ErrorRecord]:
        with self._lock:
            return list(self._errors.get(record_id, []))

    def list_records(
        self,
        *,
        state: TaskState | None = None,
        name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        with self._lock:
            rows = [replace(record) for record in self._records.values()]
        if state is not None:
            rows = [row for row in rows if row.state is state]
        if name is not None:
            rows = [row for row in rows if row.name == name]
        if since is not None:
            rows = [row for row in rows if row.executed_at >= since]
        if until is not None:
            rows = [row for row in rows if row.executed_at <= until]
        rows.sort(key=lambda row: (row.executed_at, row.id), reverse=True)
        return rows[:limit] if limit is not None else rows

    def completed_names(self) -> set[str]:
        with self._lock:
            return {r.name for r in self._records.values() if r.completed_at is not None}

    def terminal_names(self) -> set[str]:
        with self._lock:
            return {r.name for r in self._records.values() if r.is_terminal}

    def in_flight_names(self) -> set[str]:
        with self._lock:
            return {
                r.name
                for r in self._records.values()
                if r.type is ExecutionMethod.ASYNC and not r.state.is_terminal
            }


class SqlHistoryStore:
    """History persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create(
        self,
        *,
        name: str,
        type: ExecutionMethod,  # noqa: A002
        state: TaskState = TaskState.NOT_STARTED,
        executed_by: str | None = None,
    ) -> ExecutionRecord:
        with Session(self.engine) as session:
            row = TaskExecution(
                name=name,
                type=type.value,
                state=state.value,
                executed_at=to_db_datetime(utc_now()),
                executed_by=executed_by,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def update(self, record_id: int, **fields: Any) -> ExecutionRecord:
        _check_fields(fields)
        with Session(self.engine) as session:
            row = session.get(TaskExecution, record_id)
            if row is None:
                raise RuntimeError(f"Execution record not found: {record_id}")
            for key, value in fields.items():
                if isinstance(value, TaskState):
                    value = value.value
                elif isinstance(value, datetime):
                    value = to_db_datetime(value)
                setattr(row, key, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def get(self, record_id: int) -> ExecutionRecord | None:
        with Session(self.engine) as session:
            row = session.get(TaskExecution, record_id)
            return _to_record(row) if row is not None else None

    def find_by_name(self, name: str) -> ExecutionRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskExecution)
                .where(TaskExecution.name == name)
                .order_by(col(TaskExecution.executed_at).desc(), col(TaskExecution.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def add_error(
        self,
        record_id: int,
        *,
        exception: str,
        message: str,
        trace: str,
        context: dict[str, Any],
    ) -> ErrorRecord:
        with Session(self.engine) as session:
            row = TaskError(
                execution_id=record_id,
                exception=exception,
                message=message,
                trace=trace,
                context_json=json.dumps(context, ensure_ascii=False, sort_keys=True, default=str),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_error(row)

    def list_errors(self, record_id: int) -> list[ErrorRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskError)
                .where(TaskError.execution_id == record_id)
                .order_by(col(TaskError.id).asc()),
            ).all()
        return [_to_error(row) for row in rows]

    def list_records(
        self,
        *,
        state: TaskState | None = None,
        name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        statement = select(TaskExecution).order_by(
            col(TaskExecution.executed_at).desc(),
            col(TaskExecution.id).desc(),
        )
        if state is not None:
            statement = statement.where(TaskExecution.state == state.value)
        if name is not None:
            statement = statement.where(TaskExecution.name == name)
        if since is not None:
            statement = statement.where(col(TaskExecution.executed_at) >= to_db_datetime(since))
        if until is not None:
            statement = statement.where(col(TaskExecution.executed_at) <= to_db_datetime(until))
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_record(row) for row in rows]

    def completed_names(self) -> set[str]:
        with Session(self.engine) as session:
            names = session.exec(
                select(TaskExecution.name).where(col(TaskExecution.completed_at).is_not(None)),
            ).all()
        return set(names)

    def terminal_names(self) -> set[str]:
        with Session(self.engine) as session:
            names = session.exec(
                select(TaskExecution.name).where(
                    col(TaskExecution.completed_at).is_not(None)
                    | col(TaskExecution.failed_at).is_not(None)
                    | col(TaskExecution.skipped_at).is_not(None),
                ),
            ).all()
        return set(names)

    def in_flight_names(self) -> set[str]:
        with Session(self.engine) as session:
            names = session.exec(
                select(TaskExecution.name).where(
                    TaskExecution.type == ExecutionMethod.ASYNC.value,
                    col(TaskExecution.state).in_(
                        [TaskState.NOT_STARTED.value, TaskState.RUNNING.value],
                    ),
                ),
            ).all()
        return set(names)


def _to_record(row: TaskExecution) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id or 0,
        name=row.name,
        type=ExecutionMethod(row.type),
        state=TaskState(row.state),
        executed_at=to_utc_aware_datetime(row.executed_at),
        completed_at=optional_utc(row.completed_at),
        failed_at=optional_utc(row.failed_at),
        skipped_at=optional_utc(row.skipped_at),
        skip_reason=row.skip_reason,
        rolled_back_at=optional_utc(row.rolled_back_at),
        executed_by=row.executed_by,
    )


def _to_error(row: TaskError) -> ErrorRecord:
    context: dict[str, Any] = {}
    if row.context_json:
        parsed = json.loads(row.context_json)
        if isinstance(parsed, dict):
            context = parsed
    return ErrorRecord(
        id=row.id or 0,
        execution_id=row.execution_id,
        exception=row.exception,
        message=row.message,
        trace=row.trace,
        context=context,
        created_at=to_utc_aware_datetime(row.created_at),
    )
