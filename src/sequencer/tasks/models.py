"""Domain models for tasks, execution records, and outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class TaskKind(str, Enum):
    MIGRATION = "migration"
    OPERATION = "operation"


class Capability(str, Enum):
    """Optional behavioural contracts a task definition may satisfy."""

    ROLLBACKABLE = "rollbackable"
    IDEMPOTENT = "idempotent"
    TRANSACTIONAL = "transactional"
    ASYNCHRONOUS = "asynchronous"
    CONDITIONAL = "conditional"
    TAGGED = "tagged"
    HAS_DEPENDENCIES = "has_dependencies"
    SCHEDULED = "scheduled"
    RETRYABLE = "retryable"
    TIMEOUTABLE = "timeoutable"
    UNIQUE_EXECUTION = "unique_execution"
    HAS_LIFECYCLE_HOOKS = "has_lifecycle_hooks"
    ALLOWED_TO_FAIL = "allowed_to_fail"
    ENVIRONMENT_SPECIFIC = "environment_specific"
    SPECIFIES_QUEUE = "specifies_queue"


class TaskState(str, Enum):
    """Durable execution lifecycle states."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self not in {TaskState.NOT_STARTED, TaskState.RUNNING}


class ExecutionMethod(str, Enum):
    SYNC = "sync"
    ASYNC = "async"
    FAKE = "fake"


class Outcome(str, Enum):
    """Result tag returned by the state machine to strategies."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    DISPATCHED = "dispatched"


@dataclass(frozen=True, slots=True)
class Task:
    """A discovered migration or operation.

    ``definition`` is the object exported by the task module; capabilities are
    probed from it once at load time.
    """

    name: str
    timestamp: str
    kind: TaskKind
    path: Path
    definition: Any = field(compare=False, repr=False)
    capabilities: frozenset[Capability] = frozenset()

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.timestamp, self.path.name)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def tags(self) -> frozenset[str]:
        if not self.has(Capability.TAGGED):
            return frozenset()
        return frozenset(str(tag) for tag in self.definition.tags())

    @property
    def dependencies(self) -> tuple[str, ...]:
        if not self.has(Capability.HAS_DEPENDENCIES):
            return ()
        return tuple(str(name) for name in self.definition.depends_on())

    def run(self) -> None:
        """Invoke the work function: ``up()`` for migrations, ``handle()`` otherwise."""

        if self.kind is TaskKind.MIGRATION and callable(getattr(self.definition, "up", None)):
            self.definition.up()
            return
        self.definition.handle()

    def undo(self) -> None:
        undo = getattr(self.definition, "rollback", None)
        if not callable(undo):
            undo = self.definition.down
        undo()


@dataclass(slots=True)
class ExecutionRecord:
    """Durable history entry for one task attempt."""

    id: int
    name: str
    type: ExecutionMethod
    state: TaskState
    executed_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    skipped_at: datetime | None = None
    skip_reason: str | None = None
    rolled_back_at: datetime | None = None
    executed_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return (
            self.completed_at is not None
            or self.failed_at is not None
            or self.skipped_at is not None
        )


@dataclass(slots=True)
class ErrorRecord:
    """Failure details captured for an execution record."""

    id: int
    execution_id: int
    exception: str
    message: str
    trace: str
    context: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class TaskResult:
    """Tagged outcome of driving one task through the state machine."""

    task: Task
    outcome: Outcome
    record: ExecutionRecord | None
    error: BaseException | None = None
    reason: str | None = None
    elapsed_ms: int = 0
    executed: bool = True
    will_retry: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED


@dataclass(frozen=True, slots=True)
class PlannedTask:
    """Dry-run preview entry."""

    kind: TaskKind
    timestamp: str
    name: str
    wave: int | None = None


class EventKind(str, Enum):
    RUN_STARTED = "run_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_SKIPPED = "task_skipped"
    TASK_FAILED = "task_failed"
    TASK_DISPATCHED = "task_dispatched"
    TASK_ROLLED_BACK = "task_rolled_back"
    RUN_FINISHED = "run_finished"
    NO_PENDING_TASKS = "no_pending_tasks"


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """Progress notification delivered to the optional ``on_event`` callback."""

    kind: EventKind
    name: str | None = None
    task_kind: TaskKind | None = None
    message: str | None = None
    elapsed_ms: int = 0
