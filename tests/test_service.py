from __future__ import annotations

from pathlib import Path

import allure
import pytest

from sequencer.config import Settings
from sequencer.errors import (
    CircularDependencyError,
    ExecutionGuardError,
    LockTimeoutError,
    TaskFailedError,
    TaskNotFoundError,
)
from sequencer.execution.guards import GuardManager, HostnameGuard
from sequencer.orchestrator.models import ProcessOptions
from sequencer.orchestrator.service import Sequencer
from sequencer.storage.history import InMemoryHistoryStore
from sequencer.storage.locks import InMemoryLockProvider
from sequencer.storage.queue import InMemoryJobQueue
from sequencer.tasks.models import EventKind, Outcome, TaskEvent, TaskState

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Process Service"),
]

_LOGGING_OPERATION = """
from pathlib import Path


class Operation:
    def handle(self):
        with Path({log!r}).open("a", encoding="utf-8") as handle:
            handle.write({name!r} + "\\n")
{extra}

operation = Operation()
"""

_FAILING_OPERATION = """
class Operation:
    def handle(self):
        raise RuntimeError("backfill exploded")

operation = Operation()
"""

_MIGRATION = """
from pathlib import Path


class Migration:
    def up(self):
        with Path({log!r}).open("a", encoding="utf-8") as handle:
            handle.write({name!r} + "\\n")

    def down(self):
        pass

migration = Migration()
"""


class Workspace:
    def __init__(self, root: Path, write_task) -> None:
        self.root = root
        self.migrations = root / "migrations"
        self.operations = root / "operations"
        self.log = root / "ran.log"
        self.migrations.mkdir()
        self.operations.mkdir()
        self._write = write_task

    def migration(self, name: str) -> None:
        self._write(
            self.migrations,
            f"{name}.py",
            _MIGRATION.format(log=str(self.log), name=name),
        )

    def operation(self, name: str, extra: str = "") -> None:
        self._write(
            self.operations,
            f"{name}.py",
            _LOGGING_OPERATION.format(log=str(self.log), name=name, extra=extra),
        )

    def failing_operation(self, name: str) -> None:
        self._write(self.operations, f"{name}.py", _FAILING_OPERATION)

    def ran(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text(encoding="utf-8").splitlines()

    def settings(self, **execution) -> Settings:
        settings = Settings(db_path=self.root / "unused.db")
        settings.discovery.migration_paths = (self.migrations,)
        settings.discovery.operation_paths = (self.operations,)
        for key, value in execution.items():
            setattr(settings.execution, key, value)
        return settings


@pytest.fixture()
def workspace(tmp_path: Path, write_task) -> Workspace:
    space = Workspace(tmp_path, write_task)
    space.migration("2024_01_01_000000_create_users")
    space.operation(
        "2024_01_02_000000_seed_users",
        extra="    def tags(self):\n        return ['seed']\n",
    )
    space.operation("2024_01_03_000000_send_welcome")
    return space


def _sequencer(workspace: Workspace, **kwargs) -> Sequencer:
    kwargs.setdefault("history", InMemoryHistoryStore())
    kwargs.setdefault("settings", workspace.settings())
    kwargs.setdefault("locks", InMemoryLockProvider())
    kwargs.setdefault("queue", InMemoryJobQueue())
    return Sequencer(**kwargs)


def test_process_runs_pending_tasks_once(workspace: Workspace) -> None:
    events: list[TaskEvent] = []
    sequencer = _sequencer(workspace, on_event=events.append)

    report = sequencer.process()

    assert workspace.ran() == [
        "2024_01_01_000000_create_users",
        "2024_01_02_000000_seed_users",
        "2024_01_03_000000_send_welcome",
    ]
    assert report.ok
    assert (report.migrations, report.operations, report.failed) == (1, 2, 0)
    assert events[0].kind is EventKind.RUN_STARTED
    assert events[-1].kind is EventKind.RUN_FINISHED

    events.clear()
    second = sequencer.process()

    assert second.results == []
    assert [event.kind for event in events] == [EventKind.NO_PENDING_TASKS]
    assert len(workspace.ran()) == 3


def test_dry_run_plans_without_touching_history(workspace: Workspace) -> None:
    history = InMemoryHistoryStore()
    sequencer = _sequencer(workspace, history=history)

    first = sequencer.process(ProcessOptions(dry_run=True))
    second = sequencer.process(ProcessOptions(dry_run=True))

    assert [planned.name for planned in first.planned] == [
        "2024_01_01_000000_create_users",
        "2024_01_02_000000_seed_users",
        "2024_01_03_000000_send_welcome",
    ]
    assert first.planned == second.planned
    assert history.list_records() == []
    assert workspace.ran() == []


def test_dry_run_shows_waves_for_dependency_wave(workspace: Workspace) -> None:
    workspace.operation(
        "2024_01_04_000000_report",
        extra=(
            "    def depends_on(self):\n"
            "        return ['2024_01_02_000000_seed_users']\n"
        ),
    )
    sequencer = _sequencer(workspace)

    report = sequencer.process(ProcessOptions(dry_run=True, strategy="dependency_wave"))

    assert [(planned.name, planned.wave) for planned in report.planned] == [
        ("2024_01_01_000000_create_users", 1),
        ("2024_01_02_000000_seed_users", 2),
        ("2024_01_03_000000_send_welcome", 2),
        ("2024_01_04_000000_report", 3),
    ]


def test_tags_limit_operations_but_keep_migrations(workspace: Workspace) -> None:
    _sequencer(workspace).process(ProcessOptions(tags=("seed",)))

    assert workspace.ran() == [
        "2024_01_01_000000_create_users",
        "2024_01_02_000000_seed_users",
    ]


def test_from_timestamp_skips_earlier_tasks(workspace: Workspace) -> None:
    _sequencer(workspace).process(ProcessOptions(from_timestamp="2024_01_02_000000"))

    assert workspace.ran() == [
        "2024_01_02_000000_seed_users",
        "2024_01_03_000000_send_welcome",
    ]


def test_repeat_reruns_previously_executed_tasks(workspace: Workspace) -> None:
    history = InMemoryHistoryStore()
    sequencer = _sequencer(workspace, history=history)
    sequencer.process()

    sequencer.process(ProcessOptions(repeat=True))

    assert len(workspace.ran()) == 6
    records = history.list_records(name="2024_01_03_000000_send_welcome")
    assert [record.state for record in records] == [TaskState.COMPLETED, TaskState.COMPLETED]


def test_failure_is_raised_or_reported(workspace: Workspace) -> None:
    workspace.failing_operation("2024_01_02_120000_backfill")
    sequencer = _sequencer(workspace)

    with pytest.raises(TaskFailedError, match="backfill exploded"):
        sequencer.process()

    report = _sequencer(workspace).process(raise_on_failure=False)

    assert not report.ok
    assert report.failed == 1
    assert [result.outcome for result in report.results][-1] is Outcome.FAILED


def test_failed_task_is_retried_on_next_run(workspace: Workspace) -> None:
    workspace.failing_operation("2024_01_02_120000_backfill")
    history = InMemoryHistoryStore()
    sequencer = _sequencer(workspace, history=history)
    sequencer.process(raise_on_failure=False)

    selected = sequencer.discover(ProcessOptions())

    assert "2024_01_02_120000_backfill" in [task.name for task in selected]


def test_isolated_run_times_out_when_lock_is_held(workspace: Workspace) -> None:
    locks = InMemoryLockProvider()
    settings = workspace.settings()
    settings.lock.timeout_seconds = 0
    holder = locks.acquire(settings.lock.name, 0, 60)
    assert holder is not None

    with pytest.raises(LockTimeoutError, match="timeout period"):
        _sequencer(workspace, locks=locks, settings=settings).process(
            ProcessOptions(isolate=True),
        )

    assert workspace.ran() == []
    locks.release(holder)
    _sequencer(workspace, locks=locks, settings=settings).process(ProcessOptions(isolate=True))
    assert len(workspace.ran()) == 3
    assert not locks.is_held(settings.lock.name)


def test_isolated_run_needs_a_lock_provider(workspace: Workspace) -> None:
    sequencer = Sequencer(history=InMemoryHistoryStore(), settings=workspace.settings())

    with pytest.raises(ValueError, match="lock provider"):
        sequencer.process(ProcessOptions(isolate=True))


def test_guard_blocks_the_run_before_any_task(workspace: Workspace) -> None:
    history = InMemoryHistoryStore()
    guards = GuardManager([HostnameGuard(["prod-1"], hostname_fn=lambda: "laptop")])

    with pytest.raises(ExecutionGuardError, match="laptop"):
        _sequencer(workspace, history=history, guards=guards).process()

    assert workspace.ran() == []
    assert history.list_records() == []


def test_sync_and_async_together_are_rejected(workspace: Workspace) -> None:
    with pytest.raises(ValueError, match="--sync and --async"):
        _sequencer(workspace).process(ProcessOptions(force_sync=True, force_async=True))


def test_dispatch_scheduled_queues_only_scheduled_tasks(workspace: Workspace) -> None:
    workspace.operation(
        "2024_01_04_000000_newsletter",
        extra=(
            "    def execute_at(self):\n"
            "        from datetime import datetime, timedelta, timezone\n"
            "        return datetime.now(timezone.utc) + timedelta(hours=2)\n"
        ),
    )
    queue = InMemoryJobQueue()
    sequencer = _sequencer(workspace, queue=queue)

    results = sequencer.dispatch_scheduled()

    assert [result.task.name for result in results] == ["2024_01_04_000000_newsletter"]
    assert results[0].outcome is Outcome.DISPATCHED
    assert [job.task_name for job in queue.list_jobs()] == ["2024_01_04_000000_newsletter"]
    assert workspace.ran() == []


def _depends_on(name: str) -> str:
    return f"    def depends_on(self):\n        return [{name!r}]\n"


@pytest.mark.parametrize("strategy", ["sequential", "dependency_wave"])
def test_dependency_cycle_aborts_the_run_before_any_task(
    workspace: Workspace,
    strategy: str,
) -> None:
    workspace.operation("2024_01_04_000000_left", extra=_depends_on("2024_01_05_000000_right"))
    workspace.operation("2024_01_05_000000_right", extra=_depends_on("2024_01_04_000000_left"))
    history = InMemoryHistoryStore()

    with pytest.raises(CircularDependencyError) as info:
        _sequencer(workspace, history=history).process(ProcessOptions(strategy=strategy))

    assert sorted(info.value.names) == ["2024_01_04_000000_left", "2024_01_05_000000_right"]
    assert workspace.ran() == []
    assert history.list_records() == []


@pytest.mark.parametrize("strategy", ["batch", "transactional_batch", "allowed_to_fail_batch"])
def test_batch_dry_run_lists_migrations_before_operations(
    workspace: Workspace,
    strategy: str,
) -> None:
    workspace.migration("2024_01_02_120000_add_index")

    report = _sequencer(workspace).process(ProcessOptions(dry_run=True, strategy=strategy))

    assert [planned.name for planned in report.planned] == [
        "2024_01_01_000000_create_users",
        "2024_01_02_120000_add_index",
        "2024_01_02_000000_seed_users",
        "2024_01_03_000000_send_welcome",
    ]


def test_execute_runs_one_operation_regardless_of_history(workspace: Workspace) -> None:
    history = InMemoryHistoryStore()
    sequencer = _sequencer(workspace, history=history)
    sequencer.process()

    result = sequencer.execute("2024_01_03_000000_send_welcome")

    assert result.outcome is Outcome.COMPLETED
    assert workspace.ran()[-1] == "2024_01_03_000000_send_welcome"
    records = history.list_records(name="2024_01_03_000000_send_welcome")
    assert [record.state for record in records] == [TaskState.COMPLETED, TaskState.COMPLETED]


@pytest.mark.parametrize(
    "reference",
    ["2024_01_02_000000_seed_users", "2024_01_02_000000_seed_users.py", "2024_01_02_000000"],
)
def test_execute_accepts_name_file_name_or_timestamp(
    workspace: Workspace,
    reference: str,
) -> None:
    result = _sequencer(workspace).execute(reference)

    assert result.task.name == "2024_01_02_000000_seed_users"
    assert workspace.ran() == ["2024_01_02_000000_seed_users"]


def test_execute_unknown_operation_is_an_error(workspace: Workspace) -> None:
    with pytest.raises(TaskNotFoundError, match="2024_09_09_000000_missing"):
        _sequencer(workspace).execute("2024_09_09_000000_missing")

    with pytest.raises(TaskNotFoundError):
        _sequencer(workspace).execute("2024_01_01_000000_create_users")


def test_execute_without_record_leaves_history_untouched(workspace: Workspace) -> None:
    history = InMemoryHistoryStore()

    result = _sequencer(workspace, history=history).execute(
        "2024_01_03_000000_send_welcome",
        record=False,
    )

    assert result.outcome is Outcome.COMPLETED
    assert workspace.ran() == ["2024_01_03_000000_send_welcome"]
    assert history.list_records() == []


def test_execute_async_dispatches_to_the_requested_queue(workspace: Workspace) -> None:
    queue = InMemoryJobQueue()
    history = InMemoryHistoryStore()

    result = _sequencer(workspace, history=history, queue=queue).execute(
        "2024_01_03_000000_send_welcome",
        asynchronous=True,
        queue="maintenance",
    )

    assert result.outcome is Outcome.DISPATCHED
    assert [(job.task_name, job.queue) for job in queue.list_jobs()] == [
        ("2024_01_03_000000_send_welcome", "maintenance"),
    ]
    assert workspace.ran() == []
    assert history.in_flight_names() == {"2024_01_03_000000_send_welcome"}
