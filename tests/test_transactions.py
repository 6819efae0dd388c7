from __future__ import annotations

import time
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from sequencer.config import Settings
from sequencer.execution.state_machine import TaskExecutor
from sequencer.execution.transactions import NullTransactor, SqlTransactor, current_connection
from sequencer.orchestrator.controllers import _stack
from sequencer.orchestrator.dispatch import Dispatcher
from sequencer.orchestrator.models import ProcessOptions
from sequencer.orchestrator.strategies import BatchStrategy, RunContext
from sequencer.storage.common import build_engine
from sequencer.storage.history import SqlHistoryStore
from sequencer.tasks.models import Outcome, TaskState

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Transactions"),
]


@pytest.fixture()
def store(tmp_path: Path):
    history = SqlHistoryStore(tmp_path / "history.db", sqlite_busy_timeout_ms=200)
    history.init_schema()
    yield history
    history.close()


@pytest.fixture()
def target(tmp_path: Path):
    engine = build_engine(db_url=f"sqlite:///{tmp_path / 'app.db'}", busy_timeout_ms=5_000)
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE ledger (entry TEXT NOT NULL)"))
    yield engine
    engine.dispose()


def _insert(entry: str) -> None:
    connection = current_connection()
    assert connection is not None
    connection.execute(text("INSERT INTO ledger (entry) VALUES (:entry)"), {"entry": entry})


def _entries(engine) -> list[str]:
    with engine.connect() as connection:
        return list(connection.execute(text("SELECT entry FROM ledger")).scalars())


def test_task_writes_commit_with_the_task(store: SqlHistoryStore, target, tasks) -> None:
    executor = TaskExecutor(history=store, transactor=SqlTransactor(target))

    result = executor.execute(
        tasks.operation("2024_01_01_000000_ok", work=lambda: _insert("kept")),
    )

    assert result.outcome is Outcome.COMPLETED
    assert _entries(target) == ["kept"]
    assert current_connection() is None


def test_task_writes_roll_back_when_the_task_fails(store: SqlHistoryStore, target, tasks) -> None:
    executor = TaskExecutor(history=store, transactor=SqlTransactor(target))

    result = executor.execute(
        tasks.operation("2024_01_01_000000_bad", work=lambda: _insert("lost"), fail="boom"),
    )

    assert result.outcome is Outcome.FAILED
    assert _entries(target) == []
    record = store.find_by_name("2024_01_01_000000_bad")
    assert record.state is TaskState.FAILED
    assert len(store.list_errors(record.id)) == 1


def test_disabled_auto_transaction_leaves_no_connection(
    store: SqlHistoryStore,
    target,
    tasks,
) -> None:
    seen: list[object] = []
    executor = TaskExecutor(
        history=store,
        transactor=SqlTransactor(target),
        auto_transaction=False,
    )

    executor.execute(
        tasks.operation("2024_01_01_000000_plain", work=lambda: seen.append(current_connection())),
    )

    assert seen == [None]


def test_open_task_transaction_does_not_block_history_writes(
    store: SqlHistoryStore,
    target,
    tasks,
) -> None:
    def slow_write() -> None:
        _insert("slow")
        time.sleep(1.0)

    executor = TaskExecutor(history=store, transactor=SqlTransactor(target))
    context = RunContext(
        executor=executor,
        dispatcher=Dispatcher(executor=executor, queue=None),
        options=ProcessOptions(),
    )
    slow = tasks.operation("2024_01_01_000000_slow", work=slow_write)
    quick = tasks.operation("2024_01_02_000000_quick", work=lambda: time.sleep(0.2))

    BatchStrategy().run([slow, quick], context)

    assert [result.outcome for result in context.results] == [Outcome.COMPLETED] * 2
    assert store.completed_names() == {slow.name, quick.name}
    assert store.list_records(state=TaskState.RUNNING) == []
    assert _entries(target) == ["slow"]


def test_stack_without_target_database_uses_no_transaction(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "history.db")

    with _stack(settings) as stack:
        assert isinstance(stack.transactor, NullTransactor)


def test_stack_binds_transactions_to_the_target_database(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "history.db")
    settings.execution.target_db_url = f"sqlite:///{tmp_path / 'app.db'}"

    with _stack(settings) as stack:
        assert isinstance(stack.transactor, SqlTransactor)
        assert stack.transactor.engine is not stack.history.engine
        assert stack.transactor.engine.url.database == str(tmp_path / "app.db")
