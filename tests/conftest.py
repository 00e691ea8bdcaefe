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

"""
Shared fixtures: in-memory collaborators and a small registry on tmp_path.

    alpha  critical, depends on the 'storage' mount
    beta   normal,   depends on the 'storage' mount
    gamma  normal,   no dependencies
"""

import pytest

from svcmigrate.config import Settings
from svcmigrate.utils.prober import ProbeResult
from svcmigrate.utils.process import ProcessControlError
from svcmigrate.utils.registry import (
    CRITICAL,
    DependencyDescriptor,
    ServiceDescriptor,
    ServiceRegistry,
)
from svcmigrate.utils.retry import RetryPolicy
from svcmigrate.utils.state_manager import BackupCoordinator
from svcmigrate.modules.migration import MigrationController, MigrationStateStore
from svcmigrate.modules.status import StatusDocumentStore
from svcmigrate.modules.storage import DependencyHealth


class FakeProcessControl:
    """Units are strings; 'active' is the set of running units."""

    def __init__(self, active=()):
        self.active = set(active)
        self.enabled = set()
        self.calls = []
        self.failures = set()

    def fail(self, action, unit):
        self.failures.add((action, unit))

    def _call(self, action, unit):
        self.calls.append((action, unit))
        if (action, unit) in self.failures:
            raise ProcessControlError(f"{action} {unit} failed")

    def is_active(self, unit):
        return unit in self.active

    def start(self, unit):
        self._call("start", unit)
        self.active.add(unit)

    def stop(self, unit, grace_period=0):
        self._call("stop", unit)
        self.active.discard(unit)

    def restart(self, unit):
        self._call("restart", unit)
        self.active.add(unit)

    def enable(self, unit):
        self._call("enable", unit)
        self.enabled.add(unit)

    def disable(self, unit):
        self._call("disable", unit)
        self.enabled.discard(unit)

    def actions(self, action):
        return [unit for name, unit in self.calls if name == action]


class FakeProber:
    """
    Answers from 'script' first (one value per probe), then from 'by_url',
    then 'default'.
    """

    def __init__(self, default=True, latency=0.01, body="ok"):
        self.default = default
        self.script = []
        self.by_url = {}
        self.latency = latency
        self.body = body
        self.calls = []

    def check(self, url, timeout=None):
        self.calls.append(url)
        if self.script:
            healthy = self.script.pop(0)
        else:
            healthy = self.by_url.get(url, self.default)
        return ProbeResult(
            url=url,
            healthy=healthy,
            status_code=200 if healthy else 503,
            latency=self.latency,
            error=None if healthy else "HTTP 503",
            body=self.body if healthy else "",
        )

    def probe(self, url, timeout=None):
        return self.check(url, timeout).healthy


class FakeMountChecker:
    """Mount probes driven by flags instead of the filesystem."""

    def __init__(self, mount_point="/mnt/storage", host="nas.local"):
        self.mount_point = mount_point
        self.host = host
        self.healthy = True
        self.reachable = True
        self.mount_ok = True
        self.mounted = True
        self.mount_calls = 0
        self.unmount_calls = 0

    def check(self):
        if self.healthy:
            return DependencyHealth(mounted=True, reachable=True, writable=True)
        return DependencyHealth(mounted=self.mounted, reachable=self.reachable, writable=False,
                                problems=[f"cannot write to {self.mount_point}"])

    def is_mounted(self):
        return self.mounted

    def is_reachable(self):
        return self.reachable

    def force_unmount(self):
        self.unmount_calls += 1
        self.mounted = False
        return True

    def mount(self):
        self.mount_calls += 1
        self.mounted = self.mount_ok
        return self.mount_ok

    def can_write(self, filename=None):
        return self.mount_ok


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def instant_policy(max_attempts, interval=10.0, timeout=5.0, **kwargs):
    """A RetryPolicy whose sleeps return immediately."""
    return RetryPolicy(max_attempts=max_attempts, interval=interval, timeout=timeout,
                       sleep=SleepRecorder(), **kwargs)


def write_tree(root, files):
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


def read_tree(root):
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*")) if path.is_file()
    }


@pytest.fixture
def data_root(tmp_path):
    root = tmp_path / "data"
    write_tree(root / "alpha", {"config.xml": b"<alpha/>", "db/alpha.db": b"\x00\x01alpha"})
    write_tree(root / "beta", {"settings.json": b'{"beta": true}', "logs/beta.log": b"started\n"})
    write_tree(root / "gamma", {"gamma.ini": b"[gamma]\n"})
    return root


@pytest.fixture
def registry(data_root):
    return ServiceRegistry(
        services=[
            ServiceDescriptor(name="alpha", port=8001, health_path="/health",
                              data_path=str(data_root / "alpha"),
                              depends_on={"storage"}, criticality=CRITICAL),
            ServiceDescriptor(name="beta", port=8002, health_path="/ping",
                              data_path=str(data_root / "beta"), depends_on={"storage"}),
            ServiceDescriptor(name="gamma", port=8003, health_path="/",
                              data_path=str(data_root / "gamma")),
        ],
        dependencies=[
            DependencyDescriptor(name="storage", kind="mount", mount_point="/mnt/storage", host="nas.local"),
        ],
    )


@pytest.fixture
def process():
    return FakeProcessControl()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def backups(tmp_path):
    return BackupCoordinator(str(tmp_path / "backups"))


@pytest.fixture
def migration_store(tmp_path):
    return MigrationStateStore(str(tmp_path / "state" / "migration-state.json"))


@pytest.fixture
def status_store(tmp_path):
    return StatusDocumentStore(str(tmp_path / "state" / "service-registry.json"))


@pytest.fixture
def controller(registry, process, prober, backups, migration_store):
    return MigrationController(registry, process, prober, backups, migration_store,
                               readiness=instant_policy(30), grace_period=0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=str(tmp_path / "state"),
        secrets_dir=str(tmp_path / "secrets"),
        grace_period=0,
        readiness=instant_policy(30),
        probe=instant_policy(1, interval=0),
        reachability=instant_policy(3),
    )
