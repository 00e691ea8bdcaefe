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
Storage Dependency Monitor

Supervises one external network mount that services depend on:

- Health check: mount point mounted, remote host reachable, test file
  written and removed within a timeout. All three must pass.
- After max_failures consecutive failed checks, attempt recovery (force
  unmount, wait for the host, remount, re-verify write access) as long as
  fewer than max_recovery_attempts recoveries have failed.
- A successful recovery resets both counters and restarts every service
  that depends on the mount, one at a time.
- Once the recovery budget is spent the monitor stops acting and keeps
  reporting the mount as unhealthy until a check passes again.

DependencyState is owned by its monitor loop; nothing else writes it. It is
flushed into the 'dependencies' section of the status document.
"""

import os
import shlex
import subprocess
import threading
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...utils.index import log_message, utc_now
from ...utils.process import ProcessControlError
from ...utils.registry import DependencyDescriptor, ServiceRegistry
from ...utils.retry import RetryPolicy
from ..status.index import StatusDocumentStore

HEALTH_CHECK_FILENAME = ".svcmigrate-health-check"
RECOVERY_TEST_FILENAME = ".svcmigrate-recovery-test"


@dataclass
class DependencyHealth:
    """Result of one health check of a mount."""
    mounted: bool
    reachable: bool
    writable: bool
    problems: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.mounted and self.reachable and self.writable


@dataclass
class DependencyState:
    """Counters and last observation for one monitored dependency."""
    name: str
    mounted: bool = False
    reachable: bool = False
    writable: bool = False
    healthy: bool = False
    consecutive_failures: int = 0
    recovery_attempts: int = 0
    last_checked_at: Optional[str] = None
    last_recovery_at: Optional[str] = None
    recovery_exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MountChecker:
    """Filesystem and network probes for a network mount, each under a timeout."""

    def __init__(self, mount_point: str, host: str, timeout: float = 5.0, write_timeout: float = 10.0):
        self.mount_point = mount_point
        self.host = host
        self.timeout = timeout
        self.write_timeout = write_timeout

    def _run(self, cmd: List[str], timeout: float) -> bool:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            log_message(f"{' '.join(cmd)} timed out after {timeout}s", "DEBUG")
            return False
        except OSError as e:
            log_message(f"{' '.join(cmd)} could not be executed: {e}", "WARNING")
            return False
        if result.returncode != 0:
            log_message(f"{' '.join(cmd)} failed: {result.stderr.strip()}", "DEBUG")
        return result.returncode == 0

    def is_mounted(self) -> bool:
        return os.path.isdir(self.mount_point) and os.path.ismount(self.mount_point)

    def is_reachable(self) -> bool:
        wait = str(max(1, int(self.timeout)))
        return self._run(["ping", "-c", "1", "-W", wait, self.host], self.timeout + 1)

    def can_write(self, filename: str = HEALTH_CHECK_FILENAME) -> bool:
        """Touch and remove a test file; a hung NFS write counts as failure."""
        path = os.path.join(self.mount_point, filename)
        if not self._run(["touch", path], self.write_timeout):
            return False
        return self._run(["rm", "-f", path], self.write_timeout)

    def check(self) -> DependencyHealth:
        problems = []
        mounted = self.is_mounted()
        if not mounted:
            problems.append(f"{self.mount_point} is not mounted")
        reachable = self.is_reachable()
        if not reachable:
            problems.append(f"server {self.host} is not reachable")
        writable = mounted and self.can_write()
        if mounted and not writable:
            problems.append(f"cannot write to {self.mount_point}")
        return DependencyHealth(mounted=mounted, reachable=reachable, writable=writable, problems=problems)

    def force_unmount(self) -> bool:
        log_message(f"Unmounting stale mount {self.mount_point}...")
        return (self._run(["umount", "-f", self.mount_point], self.write_timeout)
                or self._run(["umount", "-l", self.mount_point], self.write_timeout))

    def mount(self) -> bool:
        return self._run(["mount", self.mount_point], self.write_timeout * 3)


class DependencyMonitor:
    """Health loop and bounded recovery for one mount dependency."""

    def __init__(self, dependency: DependencyDescriptor, checker: MountChecker,
                 registry: ServiceRegistry, process, store: Optional[StatusDocumentStore],
                 reachability: RetryPolicy, max_failures: int = 3, max_recovery_attempts: int = 3,
                 restart_dependents: bool = True, interval: float = 30.0):
        if dependency.kind != "mount":
            raise ValueError(f"Dependency '{dependency.name}' is not a mount")
        self.dependency = dependency
        self.checker = checker
        self.registry = registry
        self.process = process
        self.store = store
        self.reachability = reachability
        self.max_failures = max_failures
        self.max_recovery_attempts = max_recovery_attempts
        self.restart_dependents = restart_dependents
        self.interval = interval
        self.state = DependencyState(name=dependency.name)
        self._stop_event: Optional[threading.Event] = None

    @property
    def name(self) -> str:
        return self.dependency.name

    def _observe(self, health: DependencyHealth) -> None:
        self.state.mounted = health.mounted
        self.state.reachable = health.reachable
        self.state.writable = health.writable
        self.state.healthy = health.healthy
        self.state.last_checked_at = utc_now()

    def _flush(self) -> None:
        if self.store is not None:
            self.store.update_entry("dependencies", self.name, self.state.to_dict())

    def run_once(self) -> DependencyState:
        """One health check, plus a recovery attempt when the thresholds say so."""
        health = self.checker.check()
        self._observe(health)

        if health.healthy:
            if self.state.consecutive_failures or self.state.recovery_attempts:
                log_message(f"{self.name} health check passed, resetting failure counters")
            else:
                log_message(f"{self.name} health check passed", "DEBUG")
            self.state.consecutive_failures = 0
            self.state.recovery_attempts = 0
            self.state.recovery_exhausted = False
            self._flush()
            return self.state

        self.state.consecutive_failures += 1
        for problem in health.problems:
            log_message(f"ERROR: {self.name}: {problem}", "ERROR")
        log_message(f"{self.name} health check failed "
                    f"(failure {self.state.consecutive_failures}/{self.max_failures})", "WARNING")

        if (self.state.consecutive_failures >= self.max_failures
                and self.state.recovery_attempts < self.max_recovery_attempts):
            log_message(f"Attempting {self.name} recovery "
                        f"(attempt {self.state.recovery_attempts + 1}/{self.max_recovery_attempts})")
            self.state.last_recovery_at = utc_now()
            if self.recover():
                self.state.consecutive_failures = 0
                self.state.recovery_attempts = 0
                self._observe(DependencyHealth(mounted=True, reachable=True, writable=True))
                self._flush()
                if self.restart_dependents:
                    self.restart_dependent_services()
                return self.state
            self.state.recovery_attempts += 1
            log_message(f"{self.name} recovery failed", "ERROR")

        if self.state.recovery_attempts >= self.max_recovery_attempts:
            if not self.state.recovery_exhausted:
                log_message(f"Maximum recovery attempts reached for {self.name}, monitoring continues "
                            f"but no more recovery will be attempted", "ERROR")
            self.state.recovery_exhausted = True
        self._flush()
        return self.state

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def recover(self) -> bool:
        """Force unmount if needed, wait for the host, remount and re-verify writes."""
        log_message(f"Attempting {self.name} recovery...")
        if self.checker.is_mounted():
            self.checker.force_unmount()

        reachable, _ = self.reachability.run(self.checker.is_reachable,
                                             label=f"network connectivity to {self.checker.host}",
                                             should_stop=self._stopping)
        if not reachable:
            log_message(f"{self.checker.host} still unreachable, not remounting", "ERROR")
            return False
        log_message(f"Network connectivity to {self.checker.host} restored")

        if not self.checker.mount():
            log_message(f"Failed to mount {self.checker.mount_point}", "ERROR")
            return False
        if not self.checker.can_write(RECOVERY_TEST_FILENAME):
            log_message(f"{self.checker.mount_point} mounted but not accessible", "ERROR")
            return False
        log_message(f"{self.checker.mount_point} recovered and accessible")
        return True

    def restart_dependent_services(self) -> List[str]:
        """Restart the running form of every dependent service, sequentially."""
        restarted = []
        log_message(f"Restarting services that depend on {self.name}...")
        for svc in self.registry.dependents_of(self.name):
            if self.process.is_active(svc.managed_unit):
                unit = svc.managed_unit
            elif self.process.is_active(svc.legacy_unit):
                unit = svc.legacy_unit
            else:
                log_message(f"{svc.name} is not running, not restarting")
                continue
            log_message(f"Restarting {unit} due to {self.name} recovery...")
            try:
                self.process.restart(unit)
                restarted.append(svc.name)
            except ProcessControlError as e:
                log_message(f"Failed to restart {unit}: {e}", "ERROR")
        return restarted

    def run_forever(self, stop_event: threading.Event,
                    on_error: Optional[Callable[[Exception], None]] = None) -> None:
        self._stop_event = stop_event
        log_message(f"Starting {self.name} monitoring of {self.checker.mount_point} "
                    f"(interval {self.interval}s)")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                log_message(f"{self.name} monitor iteration failed: {e}", "ERROR")
                if on_error:
                    on_error(e)
            stop_event.wait(self.interval)
        log_message(f"{self.name} monitor stopped")


def check_dependency(dependency: DependencyDescriptor, timeout: float = 30.0) -> Tuple[bool, str]:
    """
    Side-effect-free health predicate for any dependency kind.

    Used by the validation harness; it never touches a monitor's counters.

    Returns:
        (passed, message)
    """
    if dependency.kind == "mount":
        checker = MountChecker(dependency.mount_point, dependency.host,
                               timeout=min(timeout, 5.0), write_timeout=min(timeout, 10.0))
        health = checker.check()
        if health.healthy:
            return True, dependency.description or f"{dependency.mount_point} mounted and writable"
        return False, "; ".join(health.problems)

    if dependency.kind == "path":
        path = dependency.path
        if os.path.isdir(path) and os.access(path, os.W_OK):
            return True, dependency.description or f"{path} is writable"
        return False, f"{path} is missing or not writable"

    cmd = shlex.split(dependency.command)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return False, f"'{dependency.command}' timed out after {timeout}s"
    except OSError as e:
        return False, f"'{dependency.command}' could not be executed: {e}"
    if result.returncode == 0:
        return True, dependency.description or f"'{dependency.command}' succeeded"
    return False, f"'{dependency.command}' exited {result.returncode}"
