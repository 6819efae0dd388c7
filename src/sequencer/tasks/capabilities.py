"""Runtime probing of task definition capabilities.

Task definitions are plain objects. Instead of inheriting from a hierarchy of
interfaces they opt into behaviour by exposing methods or marker attributes,
and the engine asks for the resulting capability set.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sequencer.tasks.models import Capability, TaskKind

_METHOD_CAPABILITIES: tuple[tuple[Capability, tuple[str, ...]], ...] = (
    (Capability.CONDITIONAL, ("should_run",)),
    (Capability.TAGGED, ("tags",)),
    (Capability.HAS_DEPENDENCIES, ("depends_on",)),
    (Capability.SCHEDULED, ("execute_at",)),
    (Capability.RETRYABLE, ("tries",)),
    (Capability.TIMEOUTABLE, ("timeout",)),
    (Capability.UNIQUE_EXECUTION, ("unique_id",)),
    (Capability.HAS_LIFECYCLE_HOOKS, ("before", "after", "failed")),
    (Capability.ENVIRONMENT_SPECIFIC, ("environments",)),
    (Capability.SPECIFIES_QUEUE, ("queue",)),
)

_MARKER_CAPABILITIES: tuple[tuple[Capability, str], ...] = (
    (Capability.IDEMPOTENT, "idempotent"),
    (Capability.TRANSACTIONAL, "within_transaction"),
    (Capability.ASYNCHRONOUS, "asynchronous"),
    (Capability.ALLOWED_TO_FAIL, "allowed_to_fail"),
)


def probe_capabilities(definition: Any, kind: TaskKind) -> frozenset[Capability]:
    """Return the capability set a task definition satisfies."""

    found: set[Capability] = set()
    for capability, methods in _METHOD_CAPABILITIES:
        if all(callable(getattr(definition, method, None)) for method in methods):
            found.add(capability)
    for capability, attribute in _MARKER_CAPABILITIES:
        if getattr(definition, attribute, False) is True:
            found.add(capability)

    rollback_method = "down" if kind is TaskKind.MIGRATION else "rollback"
    if callable(getattr(definition, "rollback", None)) or callable(
        getattr(definition, rollback_method, None),
    ):
        found.add(Capability.ROLLBACKABLE)
    return frozenset(found)


def opts_out_of_transaction(definition: Any) -> bool:
    """True when the definition explicitly sets ``within_transaction = False``."""

    return getattr(definition, "within_transaction", None) is False


def retry_policy(definition: Any) -> tuple[int, list[int], datetime | None]:
    """Return ``(tries, backoff_seconds, retry_until)`` for a retryable definition."""

    tries = max(1, int(definition.tries()))
    backoff_fn = getattr(definition, "backoff", None)
    raw_backoff = backoff_fn() if callable(backoff_fn) else 0
    if isinstance(raw_backoff, (list, tuple)):
        backoff = [max(0, int(value)) for value in raw_backoff]
    else:
        backoff = [max(0, int(raw_backoff))]
    until_fn = getattr(definition, "retry_until", None)
    retry_until = until_fn() if callable(until_fn) else None
    if retry_until is not None and retry_until.tzinfo is None:
        retry_until = retry_until.replace(tzinfo=UTC)
    return tries, backoff, retry_until


def backoff_for_attempt(backoff: list[int], attempt: int) -> int:
    """Delay before retry number ``attempt`` (1-based); the last value repeats."""

    if not backoff:
        return 0
    index = min(max(attempt, 1), len(backoff)) - 1
    return backoff[index]


def timeout_policy(definition: Any) -> tuple[float, bool]:
    fail_fn = getattr(definition, "fail_on_timeout", None)
    fail_on_timeout = bool(fail_fn()) if callable(fail_fn) else True
    return float(definition.timeout()), fail_on_timeout


def unique_policy(definition: Any) -> tuple[str, int]:
    unique_for_fn = getattr(definition, "unique_for", None)
    unique_for = int(unique_for_fn()) if callable(unique_for_fn) else 3_600
    return str(definition.unique_id()), unique_for
