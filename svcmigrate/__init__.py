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
svcmigrate - service migration and health-supervision controller.

Wires the registry, collaborators and components together from one
configuration document, and supervises the long-running monitors.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Settings, load_registry_and_settings
from .utils.index import log_message
from .utils.process import SystemctlProcessControl
from .utils.prober import HealthProber
from .utils.registry import ServiceRegistry
from .utils.state_manager import BackupCoordinator, ResticArchive
from .modules.migration import MigrationController, MigrationStateStore
from .modules.conflicts import ConflictDetector
from .modules.storage import DependencyMonitor, MountChecker
from .modules.status import StatusDocumentStore, StatusRegistryWriter
from .modules.validation import ValidationHarness

__all__ = [
    'log_message',
    'Runtime',
    'build_runtime',
    'load_runtime',
    'run_monitors_async',
]

__version__ = "1.0.0"


@dataclass
class Runtime:
    """Every component of a running controller, built from one configuration."""
    registry: ServiceRegistry
    settings: Settings
    process: Any
    prober: HealthProber
    backups: BackupCoordinator
    migration_store: MigrationStateStore
    controller: MigrationController
    status_store: StatusDocumentStore
    conflict_detector: ConflictDetector
    status_writer: StatusRegistryWriter
    validation: ValidationHarness
    dependency_monitors: List[DependencyMonitor] = field(default_factory=list)

    def monitors(self) -> Dict[str, Any]:
        """Long-running loops enabled by configuration, keyed by a display name."""
        loops: Dict[str, Any] = {}
        if self.settings.conflicts.enabled:
            loops["conflict-detector"] = self.conflict_detector
        if self.settings.storage.enabled:
            for monitor in self.dependency_monitors:
                loops[f"storage-monitor:{monitor.name}"] = monitor
        if self.settings.validation.enabled:
            loops["validation"] = self.validation
        if self.settings.status.enabled:
            loops["status-writer"] = self.status_writer
        return loops


def build_runtime(registry: ServiceRegistry, settings: Settings,
                  process: Any = None, prober: Optional[HealthProber] = None) -> Runtime:
    """Construct all components, injecting collaborators where given."""
    process = process or SystemctlProcessControl(timeout=settings.command_timeout)
    prober = prober or HealthProber(timeout=settings.probe.timeout)

    archive = None
    if settings.archive.repository:
        archive = ResticArchive(
            repository=settings.archive.repository,
            password_file=str(settings.secret_path(settings.archive.password_file)),
            timeout=settings.archive.timeout,
        )
    backups = BackupCoordinator(str(settings.backup_dir), archive=archive)
    migration_store = MigrationStateStore(str(settings.migration_state_file))
    controller = MigrationController(
        registry, process, prober, backups, migration_store,
        readiness=settings.readiness, grace_period=settings.grace_period,
    )
    status_store = StatusDocumentStore(str(settings.status_file))

    conflict_detector = ConflictDetector(
        registry, process, status_store, controller=controller,
        auto_rollback=settings.conflicts.auto_rollback, interval=settings.conflicts.interval,
    )
    status_writer = StatusRegistryWriter(registry, process, status_store, prober, settings.probe,
                                         interval=settings.status.interval)
    metrics_file = settings.validation_metrics_file
    validation = ValidationHarness(
        registry, process, prober, str(settings.reports_dir),
        suites=settings.validation.suites,
        performance_threshold=settings.validation.performance_threshold,
        history_limit=settings.validation.history_limit,
        alert_on_failure=settings.validation.alert_on_failure,
        test_timeout=settings.validation.test_timeout,
        interval=settings.validation.interval,
        metrics_file=str(metrics_file) if metrics_file else None,
    )

    dependency_monitors = []
    for dep in registry.dependencies:
        if dep.kind != "mount":
            continue
        checker = MountChecker(dep.mount_point, dep.host, timeout=settings.reachability.timeout,
                               write_timeout=settings.storage.write_timeout)
        dependency_monitors.append(DependencyMonitor(
            dep, checker, registry, process, status_store,
            reachability=settings.reachability,
            max_failures=settings.storage.max_failures,
            max_recovery_attempts=settings.storage.max_recovery_attempts,
            restart_dependents=settings.storage.restart_dependents,
            interval=settings.storage.interval,
        ))

    return Runtime(
        registry=registry,
        settings=settings,
        process=process,
        prober=prober,
        backups=backups,
        migration_store=migration_store,
        controller=controller,
        status_store=status_store,
        conflict_detector=conflict_detector,
        status_writer=status_writer,
        validation=validation,
        dependency_monitors=dependency_monitors,
    )


def load_runtime(config_path: Optional[str] = None) -> Runtime:
    """Load the configuration document and build a Runtime from it."""
    registry, settings = load_registry_and_settings(config_path)
    return build_runtime(registry, settings)


async def run_monitors_async(monitors: Dict[str, Any], stop_event: threading.Event) -> Dict[str, Optional[BaseException]]:
    """
    Run every monitor's run_forever loop on its own worker thread until stop_event is set.

    Args:
        monitors: Mapping of display name to an object with run_forever(stop_event)
        stop_event: Shared cancellation channel; loops finish their current iteration and exit

    Returns:
        dict: Monitor name -> exception that ended it, or None for a clean stop
    """
    results: Dict[str, Optional[BaseException]] = {}
    if not monitors:
        log_message("No monitors enabled", "WARNING")
        return results

    names = list(monitors)
    with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="svcmigrate") as executor:
        loop = asyncio.get_running_loop()
        futures = []
        for name in names:
            log_message(f"Starting monitor: {name}")
            futures.append(loop.run_in_executor(executor, monitors[name].run_forever, stop_event))

        outcomes = await asyncio.gather(*futures, return_exceptions=True)

    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, BaseException):
            log_message(f"Monitor {name} exited with error: {outcome}", "ERROR")
            results[name] = outcome
        else:
            results[name] = None
    return results
