"""Scan task directories and select the tasks a run should execute."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from sequencer.errors import DuplicateTaskError, TaskNeverExecutedError, TaskNotFoundError
from sequencer.tasks.loader import load_task, parse_task_filename, validate_timestamp
from sequencer.tasks.models import Task, TaskKind

if TYPE_CHECKING:
    from sequencer.storage.history import HistoryStore

logger = logging.getLogger(__name__)


def scan_directory(path: Path, kind: TaskKind) -> list[Task]:
    """Load every task file directly under ``path``; other files are ignored."""

    if not path.is_dir():
        logger.debug("Task directory %s does not exist; nothing to scan.", path)
        return []
    tasks: list[Task] = []
    for entry in sorted(path.iterdir()):
        if not entry.is_file() or parse_task_filename(entry.name) is None:
            continue
        tasks.append(load_task(entry, kind))
    return tasks


def load_all(
    *,
    migration_paths: Sequence[Path],
    operation_paths: Sequence[Path],
) -> list[Task]:
    """Load and order every task in the configured directories."""

    found: dict[str, Task] = {}
    sources = [(path, TaskKind.MIGRATION) for path in migration_paths]
    sources.extend((path, TaskKind.OPERATION) for path in operation_paths)
    for path, kind in sources:
        for task in scan_directory(path, kind):
            existing = found.get(task.name)
            if existing is not None:
                raise DuplicateTaskError(task.name, str(existing.path), str(task.path))
            found[task.name] = task
    return sorted(found.values(), key=lambda task: task.sort_key)


def find_operation(tasks: Iterable[Task], name: str) -> Task:
    """Pick one operation by task name, file name, or timestamp."""

    operations = [task for task in tasks if task.kind is TaskKind.OPERATION]
    wanted = name.strip().removesuffix(".py")
    for task in operations:
        if task.name == wanted:
            return task
    by_timestamp = [task for task in operations if task.timestamp == wanted]
    if len(by_timestamp) == 1:
        return by_timestamp[0]
    raise TaskNotFoundError(name)


def filter_from(tasks: Iterable[Task], from_timestamp: str) -> list[Task]:
    floor = validate_timestamp(from_timestamp)
    return [task for task in tasks if task.timestamp >= floor]


def filter_tags(tasks: Iterable[Task], tags: Iterable[str]) -> list[Task]:
    """Keep migrations plus operations sharing at least one tag."""

    wanted = {tag.strip() for tag in tags if tag.strip()}
    if not wanted:
        return list(tasks)
    return [
        task
        for task in tasks
        if task.kind is TaskKind.MIGRATION or task.tags & wanted
    ]


def discover(  # noqa: PLR0913
    *,
    migration_paths: Sequence[Path],
    operation_paths: Sequence[Path],
    history: HistoryStore,
    from_timestamp: str | None = None,
    tags: Sequence[str] = (),
    repeat: bool = False,
) -> list[Task]:
    """Return the ordered tasks a run should execute.

    Without ``repeat`` tasks already completed, or dispatched to the queue and
    not yet finished, are dropped. With ``repeat`` every selected task must
    already have a terminal history record; otherwise the whole selection is
    rejected before anything runs.
    """

    tasks = load_all(migration_paths=migration_paths, operation_paths=operation_paths)
    if from_timestamp:
        tasks = filter_from(tasks, from_timestamp)
    if tags:
        tasks = filter_tags(tasks, tags)

    if repeat:
        executed = history.terminal_names()
        for task in tasks:
            if task.name not in executed:
                raise TaskNeverExecutedError(task.name)
        return tasks

    done = history.completed_names() | history.in_flight_names()
    pending = [task for task in tasks if task.name not in done]
    logger.debug("Discovered %d task(s), %d pending.", len(tasks), len(pending))
    return pending
