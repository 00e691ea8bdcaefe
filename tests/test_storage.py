"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import pytest

from svcmigrate.modules.storage import DependencyMonitor, check_dependency
from svcmigrate.utils.registry import DependencyDescriptor

from conftest import FakeMountChecker, instant_policy


@pytest.fixture
def checker():
    return FakeMountChecker()


@pytest.fixture
def monitor(registry, process, status_store, checker):
    return DependencyMonitor(registry.get_dependency("storage"), checker, registry, process, status_store,
                             reachability=instant_policy(3), max_failures=3, max_recovery_attempts=3)


def test_healthy_check_keeps_counters_at_zero(monitor, status_store):
    state = monitor.run_once()
    assert state.healthy
    assert state.consecutive_failures == 0
    assert status_store.read()["dependencies"]["storage"]["healthy"] is True


def test_three_failures_trigger_one_successful_recovery(monitor, checker, process):
    process.active = {"dagger-alpha.service", "beta.service", "gamma.service"}
    checker.healthy = False

    monitor.run_once()
    monitor.run_once()
    assert monitor.state.consecutive_failures == 2
    assert checker.mount_calls == 0

    state = monitor.run_once()

    assert checker.mount_calls == 1
    assert checker.unmount_calls == 1
    assert state.consecutive_failures == 0
    assert state.recovery_attempts == 0
    assert state.healthy
    assert process.actions("restart") == ["dagger-alpha.service", "beta.service"]


def test_recovery_attempts_never_exceed_budget(monitor, checker, process, status_store):
    checker.healthy = False
    checker.mount_ok = False

    for _ in range(10):
        monitor.run_once()

    assert checker.mount_calls == 3
    assert monitor.state.recovery_attempts == 3
    assert monitor.state.recovery_exhausted
    assert monitor.state.consecutive_failures == 10
    assert process.actions("restart") == []
    assert status_store.read()["dependencies"]["storage"]["recovery_exhausted"] is True

    checker.healthy = True
    state = monitor.run_once()
    assert (state.consecutive_failures, state.recovery_attempts, state.recovery_exhausted) == (0, 0, False)


def test_unreachable_host_is_not_remounted(monitor, checker):
    checker.healthy = False
    checker.reachable = False
    for _ in range(3):
        monitor.run_once()
    assert checker.mount_calls == 0
    assert monitor.state.recovery_attempts == 1
    assert len(monitor.reachability.sleep.delays) == 2


def test_dependents_not_running_are_not_restarted(monitor, checker, process):
    process.active = {"beta.service"}
    assert monitor.restart_dependent_services() == ["beta"]
    assert process.actions("restart") == ["beta.service"]


def test_restart_dependents_can_be_disabled(registry, process, status_store, checker):
    monitor = DependencyMonitor(registry.get_dependency("storage"), checker, registry, process, status_store,
                                reachability=instant_policy(1), max_failures=1, restart_dependents=False)
    process.active = {"alpha.service"}
    checker.healthy = False
    monitor.run_once()
    assert monitor.state.consecutive_failures == 0
    assert process.actions("restart") == []


def test_only_mount_dependencies_are_monitored(registry, process, status_store, checker):
    path_dep = DependencyDescriptor(name="scratch", kind="path", path="/tmp")
    with pytest.raises(ValueError):
        DependencyMonitor(path_dep, checker, registry, process, status_store, reachability=instant_policy(1))


def test_check_dependency_path_and_command(tmp_path):
    ok, _ = check_dependency(DependencyDescriptor(name="scratch", kind="path", path=str(tmp_path)))
    assert ok
    ok, message = check_dependency(DependencyDescriptor(name="gone", kind="path", path=str(tmp_path / "gone")))
    assert not ok and "missing" in message
    ok, message = check_dependency(DependencyDescriptor(name="nothing", kind="command",
                                                        command="/nonexistent/binary --flag"))
    assert not ok and "could not be executed" in message
