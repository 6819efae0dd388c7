"""Load task definitions from Python task files."""

from __future__ import annotations

import importlib.util
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from sequencer.errors import InvalidTaskError, MalformedTimestampError
from sequencer.tasks.capabilities import probe_capabilities
from sequencer.tasks.models import Task, TaskKind

TASK_FILE_PATTERN = re.compile(r"^(\d{4}_\d{2}_\d{2}_\d{6})_(\w+)\.py$")
TIMESTAMP_FORMAT = "%Y_%m_%d_%H%M%S"
_EXPORT_NAMES = {
    TaskKind.MIGRATION: ("migration", "task"),
    TaskKind.OPERATION: ("operation", "task"),
}


def parse_task_filename(filename: str) -> tuple[str, str] | None:
    """Return ``(timestamp, slug)`` or ``None`` for files that are not tasks.

    Raises ``MalformedTimestampError`` when the name looks like a task file but
    the timestamp is not a real date.
    """

    match = TASK_FILE_PATTERN.match(filename)
    if match is None:
        return None
    timestamp, slug = match.group(1), match.group(2)
    validate_timestamp(timestamp, filename=filename)
    return timestamp, slug


def validate_timestamp(value: str, *, filename: str | None = None) -> str:
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)  # noqa: DTZ007
    except ValueError as error:
        raise MalformedTimestampError(filename or value) from error
    return value


def load_task(path: Path, kind: TaskKind) -> Task:
    """Import a task file and wrap its exported definition."""

    parsed = parse_task_filename(path.name)
    if parsed is None:
        raise InvalidTaskError(f"Not a task file name: {path.name}")
    timestamp, _ = parsed
    definition = _load_definition(path, kind)
    return Task(
        name=path.stem,
        timestamp=timestamp,
        kind=kind,
        path=path,
        definition=definition,
        capabilities=probe_capabilities(definition, kind),
    )


def _load_definition(path: Path, kind: TaskKind) -> Any:
    module_name = f"sequencer_tasks.{kind.value}.{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise InvalidTaskError(f"Cannot import task file: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as error:
        sys.modules.pop(module_name, None)
        raise InvalidTaskError(f"Failed to import task file {path}: {error}") from error

    for export in _EXPORT_NAMES[kind]:
        candidate = getattr(module, export, None)
        if candidate is None:
            continue
        definition = candidate() if isinstance(candidate, type) else candidate
        work = "up" if kind is TaskKind.MIGRATION else "handle"
        if not callable(getattr(definition, work, None)) and not callable(
            getattr(definition, "handle", None),
        ):
            raise InvalidTaskError(
                f"Task {path.stem!r} must define {work}() (exported as {export!r})",
            )
        return definition
    raise InvalidTaskError(
        f"Task file {path} must export one of: {', '.join(_EXPORT_NAMES[kind])}",
    )
