"""Isolation lock around a whole run."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sequencer.errors import LockTimeoutError
from sequencer.storage.locks import Lock, LockProvider

logger = logging.getLogger(__name__)


@contextmanager
def with_lock(
    provider: LockProvider,
    name: str,
    *,
    timeout: float,
    ttl: int,
) -> Iterator[Lock]:
    """Hold ``name`` for the duration of the block.

    Raises ``LockTimeoutError`` without entering the block when the lock is not
    acquired within ``timeout`` seconds. The lock is released on every exit.
    """

    lock = provider.acquire(name, timeout, ttl)
    if lock is None:
        raise LockTimeoutError(name, timeout)
    logger.debug("Acquired lock %s (owner=%s).", name, lock.owner)
    try:
        yield lock
    finally:
        provider.release(lock)
        logger.debug("Released lock %s.", name)
