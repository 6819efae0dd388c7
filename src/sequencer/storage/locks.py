"""Named mutexes with acquire timeout and hold TTL."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from sequencer.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from sequencer.storage.sqlmodel_models import SequencerLock

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1


@dataclass(frozen=True, slots=True)
class Lock:
    """Handle for a held lock; only its owner may release it."""

    name: str
    owner: str
    expires_at: datetime


class LockProvider(Protocol):
    def acquire(self, name: str, timeout: float, ttl: int) -> Lock | None: ...

    def release(self, lock: Lock) -> None: ...

    def force_release(self, name: str) -> None: ...


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def _wait_for(attempt: Callable[[], Lock | None], *, timeout: float) -> Lock | None:
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        lock = attempt()
        if lock is not None:
            return lock
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        time.sleep(min(_POLL_INTERVAL_SECONDS, remaining))


class InMemoryLockProvider:
    """Process-local lock table for tests and single-process use."""

    def __init__(self) -> None:
        self._held: dict[str, Lock] = {}
        self._mutex = threading.Lock()

    def acquire(self, name: str, timeout: float, ttl: int) -> Lock | None:
        owner = default_owner()

        def attempt() -> Lock | None:
            with self._mutex:
                now = utc_now()
                current = self._held.get(name)
                if current is not None and current.expires_at > now:
                    return None
                lock = Lock(name=name, owner=owner, expires_at=now + timedelta(seconds=ttl))
                self._held[name] = lock
                return lock

        return _wait_for(attempt, timeout=timeout)

    def release(self, lock: Lock) -> None:
        with self._mutex:
            current = self._held.get(lock.name)
            if current is not None and current.owner == lock.owner:
                del self._held[lock.name]

    def force_release(self, name: str) -> None:
        """Drop ``name`` regardless of owner, for holders that outlive their process."""

        with self._mutex:
            self._held.pop(name, None)

    def is_held(self, name: str) -> bool:
        with self._mutex:
            current = self._held.get(name)
            return current is not None and current.expires_at > utc_now()


class SqlLockProvider:
    """Lock rows in ``sequencer_locks``; the primary key makes acquisition atomic.

    A row whose ``expires_at`` has passed belongs to a crashed or stuck holder
    and is taken over by the next acquirer.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def acquire(self, name: str, timeout: float, ttl: int) -> Lock | None:
        owner = default_owner()
        return _wait_for(lambda: self._try_acquire(name, owner, ttl), timeout=timeout)

    def _try_acquire(self, name: str, owner: str, ttl: int) -> Lock | None:
        with Session(self.engine) as session:
            now = utc_now()
            expires_at = now + timedelta(seconds=ttl)
            session.add(
                SequencerLock(
                    name=name,
                    owner=owner,
                    acquired_at=to_db_datetime(now),
                    expires_at=to_db_datetime(expires_at),
                ),
            )
            try:
                session.commit()
                return Lock(name=name, owner=owner, expires_at=expires_at)
            except IntegrityError:
                session.rollback()

            held = session.exec(
                select(SequencerLock).where(SequencerLock.name == name),
            ).one_or_none()
            if held is None:
                return None
            if to_utc_aware_datetime(held.expires_at) > utc_now():
                return None

            logger.warning(
                "Taking over expired lock %s (previous owner=%s expired_at=%s).",
                name,
                held.owner,
                to_utc_aware_datetime(held.expires_at).isoformat(),
            )
            result = session.execute(
                sa_delete(SequencerLock).where(
                    SequencerLock.name == name,
                    SequencerLock.owner == held.owner,
                ),
            )
            session.commit()
            if result.rowcount != 1:
                return None
        return self._try_acquire(name, owner, ttl)

    def release(self, lock: Lock) -> None:
        with Session(self.engine) as session:
            session.execute(
                sa_delete(SequencerLock).where(
                    SequencerLock.name == lock.name,
                    SequencerLock.owner == lock.owner,
                ),
            )
            session.commit()

    def force_release(self, name: str) -> None:
        with Session(self.engine) as session:
            session.execute(sa_delete(SequencerLock).where(SequencerLock.name == name))
            session.commit()

    def is_held(self, name: str) -> bool:
        with Session(self.engine) as session:
            held = session.exec(
                select(SequencerLock).where(SequencerLock.name == name),
            ).one_or_none()
        return held is not None and to_utc_aware_datetime(held.expires_at) > utc_now()
