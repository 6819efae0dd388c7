"""Record task invocations instead of running them, for application tests."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

_active: TaskFake | None = None
_active_lock = threading.Lock()


class TaskFake:
    """Collects the names of tasks the engine would have run.

    Usage::

        fake = TaskFake.setup()
        sequencer.process()
        fake.assert_dispatched("2024_01_01_000000_backfill")
        TaskFake.tear_down()
    """

    def __init__(self) -> None:
        self._executed: list[str] = []
        self._mutex = threading.Lock()

    @classmethod
    def setup(cls) -> TaskFake:
        global _active  # noqa: PLW0603
        with _active_lock:
            _active = cls()
            return _active

    @staticmethod
    def tear_down() -> None:
        global _active  # noqa: PLW0603
        with _active_lock:
            _active = None

    @staticmethod
    def is_faking() -> bool:
        return _active is not None

    @staticmethod
    def active() -> TaskFake | None:
        return _active

    def record(self, name: str) -> None:
        with self._mutex:
            self._executed.append(name)

    def executed(self) -> list[str]:
        with self._mutex:
            return list(self._executed)

    def assert_dispatched(
        self,
        name: str,
        callback: Callable[[str], Any] | None = None,
    ) -> None:
        executed = self.executed()
        if name not in executed:
            raise AssertionError(f"Task {name!r} was not dispatched. Dispatched: {executed}")
        if callback is not None and not callback(name):
            raise AssertionError(f"Callback rejected dispatched task {name!r}.")

    def assert_not_dispatched(self, name: str) -> None:
        if name in self.executed():
            raise AssertionError(f"Task {name!r} was dispatched unexpectedly.")

    def assert_dispatched_times(self, name: str, times: int) -> None:
        count = self.executed().count(name)
        if count != times:
            raise AssertionError(
                f"Task {name!r} was dispatched {count} time(s), expected {times}.",
            )

    def assert_nothing_dispatched(self) -> None:
        executed = self.executed()
        if executed:
            raise AssertionError(f"Expected no dispatched tasks, got: {executed}")
