from __future__ import annotations

import allure
import pytest

from sequencer.errors import ExecutionGuardError
from sequencer.execution.guards import GuardManager, HostnameGuard, IpAddressGuard

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Execution Guards"),
]


def test_empty_allow_lists_permit_every_host() -> None:
    GuardManager([HostnameGuard([]), IpAddressGuard([])]).check()


def test_hostname_guard_matches_exact_names() -> None:
    assert HostnameGuard(["worker-1"], hostname_fn=lambda: "worker-1").should_execute()
    assert not HostnameGuard(["worker-1"], hostname_fn=lambda: "worker-10").should_execute()


def test_ip_guard_needs_one_shared_address() -> None:
    guard = IpAddressGuard(["10.0.0.5"], addresses_fn=lambda: {"127.0.0.1", "10.0.0.5"})
    blocked = IpAddressGuard(["10.0.0.6"], addresses_fn=lambda: {"127.0.0.1", "10.0.0.5"})

    assert guard.should_execute()
    assert not blocked.should_execute()
    assert "10.0.0.5" in blocked.reason()


def test_manager_reports_the_first_blocking_guard() -> None:
    manager = GuardManager(
        [
            HostnameGuard(["laptop"], hostname_fn=lambda: "laptop"),
            IpAddressGuard(["10.9.9.9"], addresses_fn=lambda: {"192.168.1.20"}),
            HostnameGuard(["other"], hostname_fn=lambda: "laptop"),
        ],
    )

    with pytest.raises(ExecutionGuardError) as info:
        manager.check()

    assert info.value.guard_name == "ip_address"
