"""Exception taxonomy for discovery, execution, and infrastructure failures."""

from __future__ import annotations


class SequencerError(Exception):
    """Base class for every error raised by the engine itself."""


class DiscoveryError(SequencerError):
    """Raised before any task executes."""


class MalformedTimestampError(DiscoveryError):
    def __init__(self, filename: str) -> None:
        super().__init__(
            f"Task file {filename!r} has a malformed timestamp; expected YYYY_MM_DD_HHMMSS.",
        )
        self.filename = filename


class DuplicateTaskError(DiscoveryError):
    def __init__(self, name: str, first_path: str, second_path: str) -> None:
        super().__init__(
            f"Task {name!r} is defined more than once: {first_path} and {second_path}",
        )
        self.name = name


class InvalidTaskError(DiscoveryError):
    """Raised when a task module does not expose a usable task object."""


class UnknownDependencyError(DiscoveryError):
    def __init__(self, task_name: str, dependency: str) -> None:
        super().__init__(f"Task {task_name!r} depends on unknown task {dependency!r}")
        self.task_name = task_name
        self.dependency = dependency


class CircularDependencyError(DiscoveryError):
    def __init__(self, names: list[str]) -> None:
        super().__init__(
            "Circular dependency detected - cannot build execution waves "
            f"(unresolved: {', '.join(sorted(names))})",
        )
        self.names = names


class TaskNeverExecutedError(DiscoveryError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Task {name!r} has never been executed. "
            "Cannot use --repeat for tasks that have not run before.",
        )
        self.name = name


class TaskNotFoundError(DiscoveryError):
    def __init__(self, name: str) -> None:
        super().__init__(f"No operation matches {name!r}")
        self.name = name


class InvalidTransitionError(SequencerError):
    def __init__(self, name: str, current: str, target: str) -> None:
        super().__init__(f"Task {name!r} cannot move from {current} to {target}")


class HistoryWriteError(SequencerError):
    """The history store rejected a state write; the store's error is chained as the cause."""

    def __init__(self, name: str, target: str, error: BaseException) -> None:
        super().__init__(f"Could not record task {name!r} as {target}: {error}")
        self.name = name
        self.target = target
        self.error = error


class TaskFailedError(SequencerError):
    """An unrecovered task failure; the task's own exception is chained as the cause."""

    def __init__(self, name: str, error: BaseException) -> None:
        super().__init__(f"Task {name!r} failed: {error}")
        self.name = name
        self.error = error


class BatchExecutionError(SequencerError):
    def __init__(self, strategy: str, failed: list[str]) -> None:
        super().__init__(
            f"{strategy} batch failed with {len(failed)} failed task(s): {', '.join(failed)}",
        )
        self.failed = failed


class WaveExecutionError(SequencerError):
    def __init__(self, wave_number: int, failed: list[str]) -> None:
        super().__init__(
            f"Wave {wave_number} failed with {len(failed)} failed task(s): {', '.join(failed)}",
        )
        self.wave_number = wave_number
        self.failed = failed


class TaskTimeoutError(SequencerError):
    def __init__(self, name: str, timeout_seconds: float, elapsed_seconds: float) -> None:
        super().__init__(
            f"Task {name!r} exceeded its timeout of {timeout_seconds:g}s "
            f"(ran {elapsed_seconds:.2f}s)",
        )


class LockTimeoutError(SequencerError):
    def __init__(self, name: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Could not acquire lock {name!r} within {timeout_seconds:g}s timeout period",
        )
        self.name = name


class QueueDispatchError(SequencerError):
    """Raised when a job cannot be pushed to the queue."""


class ExecutionGuardError(SequencerError):
    def __init__(self, guard_name: str, reason: str) -> None:
        super().__init__(reason)
        self.guard_name = guard_name


class SkipTask(Exception):  # noqa: N818
    """Raised from a task's work function to end it as skipped instead of failed."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
