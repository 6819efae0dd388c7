"""Run options and reports exchanged between the service, controllers, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field

from sequencer.tasks.models import Outcome, PlannedTask, TaskKind, TaskResult


@dataclass(slots=True)
class ProcessOptions:
    """Per-invocation flags for one ``process`` run."""

    isolate: bool = False
    dry_run: bool = False
    from_timestamp: str | None = None
    repeat: bool = False
    force_sync: bool = False
    force_async: bool = False
    queue: str | None = None
    tags: tuple[str, ...] = ()
    strategy: str | None = None

    def validate(self) -> None:
        if self.force_sync and self.force_async:
            raise ValueError("Cannot use --sync and --async together.")
        if self.queue is not None and not self.queue.strip():
            raise ValueError("--queue must not be empty.")


@dataclass(slots=True)
class RunReport:
    """Everything one ``process`` run did, in execution order."""

    strategy: str
    results: list[TaskResult] = field(default_factory=list)
    planned: list[PlannedTask] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    elapsed_ms: int = 0
    error: BaseException | None = None

    def _count(self, kind: TaskKind) -> int:
        return sum(
            1
            for result in self.results
            if result.task.kind is kind
            and result.outcome in {Outcome.COMPLETED, Outcome.DISPATCHED}
        )

    @property
    def migrations(self) -> int:
        return self._count(TaskKind.MIGRATION)

    @property
    def operations(self) -> int:
        return self._count(TaskKind.OPERATION)

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.results if result.outcome is Outcome.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if result.outcome is Outcome.FAILED)

    @property
    def dispatched(self) -> int:
        return sum(1 for result in self.results if result.outcome is Outcome.DISPATCHED)

    @property
    def ok(self) -> bool:
        return self.error is None
