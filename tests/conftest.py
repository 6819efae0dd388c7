"""Shared test fixtures."""

from __future__ import annotations

import os
import textwrap
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from sequencer.errors import SkipTask
from sequencer.execution.fake import TaskFake
from sequencer.tasks.capabilities import probe_capabilities
from sequencer.tasks.models import Task, TaskKind


class TaskFactory:
    """Builds in-memory tasks whose work functions append to a shared journal."""

    def __init__(self) -> None:
        self.journal: list[str] = []

    def definition(  # noqa: C901, PLR0912, PLR0913
        self,
        name: str,
        *,
        fail: str | None = None,
        skip: str | None = None,
        rollback: bool = False,
        rollback_fails: bool = False,
        tags: tuple[str, ...] | None = None,
        depends_on: tuple[str, ...] | None = None,
        should_run: bool | Callable[[], bool] | None = None,
        execute_at: Any = None,
        asynchronous: bool = False,
        allowed_to_fail: bool = False,
        environments: tuple[str, ...] | None = None,
        tries: int | None = None,
        backoff: Any = None,
        unique_id: str | None = None,
        hooks: bool = False,
        work: Callable[[], None] | None = None,
    ) -> SimpleNamespace:
        journal = self.journal
        definition = SimpleNamespace()

        def handle() -> None:
            journal.append(f"run:{name}")
            if work is not None:
                work()
            if skip is not None:
                raise SkipTask(skip)
            if fail is not None:
                raise RuntimeError(fail)

        definition.handle = handle
        if rollback or rollback_fails:

            def undo() -> None:
                journal.append(f"undo:{name}")
                if rollback_fails:
                    raise RuntimeError(f"cannot undo {name}")

            definition.rollback = undo
        if tags is not None:
            definition.tags = lambda: list(tags)
        if depends_on is not None:
            definition.depends_on = lambda: list(depends_on)
        if should_run is not None:
            definition.should_run = should_run if callable(should_run) else lambda: should_run
        if execute_at is not None:
            definition.execute_at = lambda: execute_at
        if asynchronous:
            definition.asynchronous = True
        if allowed_to_fail:
            definition.allowed_to_fail = True
        if environments is not None:
            definition.environments = lambda: list(environments)
        if tries is not None:
            definition.tries = lambda: tries
            if backoff is not None:
                definition.backoff = lambda: backoff
        if unique_id is not None:
            definition.unique_id = lambda: unique_id
        if hooks:
            definition.before = lambda: journal.append(f"before:{name}")
            definition.after = lambda: journal.append(f"after:{name}")
            definition.failed = lambda error: journal.append(f"failed:{name}:{error}")
        return definition

    def operation(self, name: str, **options: Any) -> Task:
        return self._task(name, TaskKind.OPERATION, self.definition(name, **options))

    def migration(self, name: str, **options: Any) -> Task:
        return self._task(name, TaskKind.MIGRATION, self.definition(name, **options))

    def _task(self, name: str, kind: TaskKind, definition: Any) -> Task:
        return Task(
            name=name,
            timestamp=name[:17],
            kind=kind,
            path=Path(f"/virtual/{kind.value}s/{name}.py"),
            definition=definition,
            capabilities=probe_capabilities(definition, kind),
        )


@pytest.fixture()
def tasks() -> TaskFactory:
    return TaskFactory()


@pytest.fixture()
def write_task() -> Callable[[Path, str, str], Path]:
    """Write a task module file and return its path."""

    def _write(directory: Path, filename: str, body: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    return _write


@pytest.fixture(autouse=True)
def _reset_task_fake():
    yield
    TaskFake.tear_down()


@pytest.fixture(autouse=True)
def _clean_sequencer_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("SEQUENCER_"):
            monkeypatch.delenv(name, raising=False)
