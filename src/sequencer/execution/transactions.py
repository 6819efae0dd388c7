"""Transaction boundaries wrapped around a task's work function."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from typing import Protocol

from sqlalchemy.engine import Connection, Engine

_current_connection: ContextVar[Connection | None] = ContextVar(
    "sequencer_current_connection",
    default=None,
)


class Transactor(Protocol):
    def transaction(self) -> AbstractContextManager[Connection | None]: ...


def current_connection() -> Connection | None:
    """Connection of the transaction wrapping the running task, if any.

    Task code writes through this connection so its changes commit or roll
    back together with the task.
    """

    return _current_connection.get()


class NullTransactor:
    """No-op boundary for deployments without a transactional target."""

    @contextmanager
    def transaction(self) -> Iterator[Connection | None]:
        yield None


class SqlTransactor:
    """Run the task inside ``engine.begin()``: commit on return, roll back on raise."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Connection | None]:
        with self.engine.begin() as connection:
            token = _current_connection.set(connection)
            try:
                yield connection
            finally:
                _current_connection.reset(token)
