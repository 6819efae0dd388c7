"""Host allow-list checks run before any task executes."""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

from sequencer.errors import ExecutionGuardError

logger = logging.getLogger(__name__)


class ExecutionGuard(Protocol):
    name: str

    def should_execute(self) -> bool: ...

    def reason(self) -> str: ...


def _local_ips() -> set[str]:
    hostname = socket.gethostname()
    addresses = {"127.0.0.1"}
    try:
        for info in socket.getaddrinfo(hostname, None):
            addresses.add(str(info[4][0]))
    except OSError:
        logger.debug("Could not resolve addresses for host %s.", hostname)
    return addresses


class HostnameGuard:
    """Allow execution only on listed hostnames; an empty list allows every host."""

    name = "hostname"

    def __init__(
        self,
        allowed: Iterable[str],
        *,
        hostname_fn: Callable[[], str] = socket.gethostname,
    ) -> None:
        self.allowed = tuple(allowed)
        self._hostname_fn = hostname_fn

    def should_execute(self) -> bool:
        return not self.allowed or self._hostname_fn() in self.allowed

    def reason(self) -> str:
        return (
            f"Execution blocked: hostname {self._hostname_fn()!r} is not in the allowed list "
            f"({', '.join(self.allowed)})."
        )


class IpAddressGuard:
    """Allow execution only on hosts owning one of the listed IP addresses."""

    name = "ip_address"

    def __init__(
        self,
        allowed: Iterable[str],
        *,
        addresses_fn: Callable[[], set[str]] = _local_ips,
    ) -> None:
        self.allowed = tuple(allowed)
        self._addresses_fn = addresses_fn

    def should_execute(self) -> bool:
        return not self.allowed or bool(self._addresses_fn() & set(self.allowed))

    def reason(self) -> str:
        return (
            "Execution blocked: none of this host's addresses "
            f"({', '.join(sorted(self._addresses_fn()))}) is in the allowed list "
            f"({', '.join(self.allowed)})."
        )


class GuardManager:
    def __init__(self, guards: Sequence[ExecutionGuard] = ()) -> None:
        self.guards = list(guards)

    def check(self) -> None:
        """Raise ``ExecutionGuardError`` for the first guard that blocks execution."""

        for guard in self.guards:
            if not guard.should_execute():
                reason = guard.reason()
                logger.warning("Execution guard %s blocked the run: %s", guard.name, reason)
                raise ExecutionGuardError(guard.name, reason)
