from __future__ import annotations

import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlmodel import Session

from sequencer.errors import LockTimeoutError
from sequencer.orchestrator.locking import with_lock
from sequencer.storage.common import to_db_datetime, utc_now
from sequencer.storage.history import SqlHistoryStore
from sequencer.storage.locks import InMemoryLockProvider, SqlLockProvider
from sequencer.storage.sqlmodel_models import SequencerLock

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Locks"),
]


@pytest.fixture()
def sql_locks(tmp_path: Path):
    history = SqlHistoryStore(tmp_path / "locks.db")
    history.init_schema()
    yield SqlLockProvider(history.engine)
    history.close()


@pytest.fixture(params=["memory", "sql"])
def provider(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryLockProvider()
        return
    history = SqlHistoryStore(tmp_path / "locks.db")
    history.init_schema()
    yield SqlLockProvider(history.engine)
    history.close()


def test_second_acquirer_waits_out_the_timeout(provider) -> None:
    held = provider.acquire("sequencer:process", 0, 60)
    assert held is not None

    started = time.monotonic()
    contender = provider.acquire("sequencer:process", 0.3, 60)

    assert contender is None
    assert time.monotonic() - started >= 0.3
    assert provider.is_held("sequencer:process")


def test_release_lets_the_next_holder_in(provider) -> None:
    held = provider.acquire("sequencer:process", 0, 60)
    provider.release(held)

    assert provider.acquire("sequencer:process", 0, 60) is not None


def test_release_by_a_stale_handle_keeps_the_new_owner(provider) -> None:
    first = provider.acquire("sequencer:process", 0, 1)
    provider.force_release("sequencer:process")
    second = provider.acquire("sequencer:process", 0, 60)

    provider.release(first)

    assert second is not None
    assert provider.is_held("sequencer:process")


def test_lock_names_are_independent(provider) -> None:
    assert provider.acquire("sequencer:unique:a", 0, 60) is not None
    assert provider.acquire("sequencer:unique:b", 0, 60) is not None


def test_waiting_acquirer_gets_the_lock_once_released(provider) -> None:
    held = provider.acquire("sequencer:process", 0, 60)
    threading.Timer(0.2, provider.release, args=(held,)).start()

    assert provider.acquire("sequencer:process", 5, 60) is not None


def test_expired_sql_lock_is_taken_over(sql_locks: SqlLockProvider) -> None:
    past = utc_now() - timedelta(minutes=5)
    with Session(sql_locks.engine) as session:
        session.add(
            SequencerLock(
                name="sequencer:process",
                owner="crashed-host:42:deadbeef",
                acquired_at=to_db_datetime(past - timedelta(minutes=10)),
                expires_at=to_db_datetime(past),
            ),
        )
        session.commit()

    lock = sql_locks.acquire("sequencer:process", 0, 60)

    assert lock is not None
    assert lock.owner != "crashed-host:42:deadbeef"
    assert sql_locks.is_held("sequencer:process")


def test_with_lock_releases_when_the_block_raises() -> None:
    provider = InMemoryLockProvider()

    with pytest.raises(RuntimeError, match="inside"):
        with with_lock(provider, "sequencer:process", timeout=0, ttl=60):
            assert provider.is_held("sequencer:process")
            raise RuntimeError("inside")

    assert not provider.is_held("sequencer:process")


def test_with_lock_raises_on_timeout_without_entering() -> None:
    provider = InMemoryLockProvider()
    provider.acquire("sequencer:process", 0, 60)
    entered: list[bool] = []

    with pytest.raises(LockTimeoutError, match="within 0s timeout period"):
        with with_lock(provider, "sequencer:process", timeout=0, ttl=60):
            entered.append(True)

    assert entered == []
