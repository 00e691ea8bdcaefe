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
Migration Controller

Moves one service at a time between its legacy unit and its managed unit:

    Legacy -> BackingUp -> Switching -> AwaitingReady -> Managed
                                                      `-> Failed
    any    -> RollingBack -> RolledBack | Failed (rollback_failed)

Every state change is appended to the migration state document before the
next side effect starts, so a crash mid-migration is visible on restart.
A record found in a transient state is never resumed; it needs an operator.
"""

import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ...utils.index import (
    SvcMigrateError,
    atomic_write_json,
    check_schema_version,
    load_json_document,
    log_message,
    utc_now,
    SUPPORTED_SCHEMA_VERSION,
)
from ...utils.process import ProcessControlError, DEFAULT_GRACE_PERIOD
from ...utils.prober import HealthProber
from ...utils.registry import ServiceDescriptor, ServiceRegistry
from ...utils.retry import RetryPolicy
from ...utils.state_manager import BackupCoordinator, BackupError


class MigrationState(str, Enum):
    LEGACY = "Legacy"
    BACKING_UP = "BackingUp"
    SWITCHING = "Switching"
    AWAITING_READY = "AwaitingReady"
    MANAGED = "Managed"
    ROLLING_BACK = "RollingBack"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def transient(self) -> bool:
        return self in TRANSIENT_STATES


TRANSIENT_STATES = frozenset({
    MigrationState.BACKING_UP,
    MigrationState.SWITCHING,
    MigrationState.AWAITING_READY,
    MigrationState.ROLLING_BACK,
})

# Failure markers stored alongside a Failed record
BACKUP_FAILED = "backup_failed"
PROCESS_FAILED = "process_failed"
READINESS_TIMEOUT = "readiness_timeout"
ROLLBACK_FAILED = "rollback_failed"


class MigrationError(SvcMigrateError):
    """Base class for migration controller errors raised to the caller."""
    pass


class ManualResolutionRequired(MigrationError):
    """The service's record is stuck in a transient state or already in flight."""

    def __init__(self, service: str, state: MigrationState, reason: str = ""):
        self.service = service
        self.state = state
        super().__init__(
            reason or f"{service} is stuck in {state.value}; resolve manually (e.g. rollback) before migrating"
        )


@dataclass
class MigrationRecord:
    """One entry in a service's migration history."""
    service: str
    state: MigrationState
    timestamp: str
    attempt: int
    message: str = ""
    failure: Optional[str] = None
    snapshot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MigrationRecord':
        data = dict(data)
        data["state"] = MigrationState(data["state"])
        return cls(**data)

    @property
    def terminal(self) -> bool:
        return self.state in (MigrationState.MANAGED, MigrationState.ROLLED_BACK, MigrationState.FAILED)


class MigrationStateStore:
    """
    Durable, append-only migration history.

    Document layout:
        {"schema_version": "1.0.0", "timestamp": "...",
         "services": {"sonarr": {"current": {...}, "history": [{...}, ...]}}}
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        document = load_json_document(self.path, {"services": {}})
        check_schema_version(document.get("schema_version"), str(self.path))
        document.setdefault("services", {})
        return document

    def current(self, service: str) -> Optional[MigrationRecord]:
        entry = self._load()["services"].get(service)
        if not entry or not entry.get("current"):
            return None
        return MigrationRecord.from_dict(entry["current"])

    def history(self, service: str) -> List[MigrationRecord]:
        entry = self._load()["services"].get(service, {})
        return [MigrationRecord.from_dict(r) for r in entry.get("history", [])]

    def all_current(self) -> Dict[str, MigrationRecord]:
        return {
            name: MigrationRecord.from_dict(entry["current"])
            for name, entry in self._load()["services"].items()
            if entry.get("current")
        }

    def append(self, record: MigrationRecord) -> MigrationRecord:
        """Append record to the service's history and make it current."""
        with self._lock:
            document = self._load()
            entry = document["services"].setdefault(record.service, {"current": None, "history": []})
            entry["history"].append(record.to_dict())
            entry["current"] = record.to_dict()
            document["schema_version"] = SUPPORTED_SCHEMA_VERSION
            document["timestamp"] = record.timestamp
            atomic_write_json(self.path, document)
        return record


class MigrationController:
    """Per-service legacy-to-managed state machine with operator rollback."""

    def __init__(self, registry: ServiceRegistry, process, prober: HealthProber,
                 backups: BackupCoordinator, store: MigrationStateStore,
                 readiness: RetryPolicy, grace_period: float = DEFAULT_GRACE_PERIOD):
        self.registry = registry
        self.process = process
        self.prober = prober
        self.backups = backups
        self.store = store
        self.readiness = readiness
        self.grace_period = grace_period
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()

    # --- Helpers ---

    @contextmanager
    def _claim(self, service: str):
        """Refuse a second transition for a service already moving in this process."""
        with self._in_flight_lock:
            if service in self._in_flight:
                current = self.store.current(service)
                state = current.state if current else MigrationState.LEGACY
                raise ManualResolutionRequired(service, state, f"A transition for {service} is already in progress")
            self._in_flight.add(service)
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(service)

    def in_transition(self, service: str) -> bool:
        """True while a migration/rollback for service runs here or its record is transient."""
        with self._in_flight_lock:
            if service in self._in_flight:
                return True
        current = self.store.current(service)
        return current is not None and current.state.transient

    def _record(self, svc: ServiceDescriptor, state: MigrationState, attempt: int,
                message: str = "", failure: Optional[str] = None,
                snapshot_id: Optional[str] = None) -> MigrationRecord:
        record = MigrationRecord(
            service=svc.name,
            state=state,
            timestamp=utc_now(),
            attempt=attempt,
            message=message,
            failure=failure,
            snapshot_id=snapshot_id,
        )
        self.store.append(record)
        log_message(f"{svc.name}: {state.value}" + (f" - {message}" if message else ""),
                    "ERROR" if state == MigrationState.FAILED else "INFO")
        return record

    def _fail(self, svc: ServiceDescriptor, attempt: int, failure: str, message: str,
              snapshot_id: Optional[str] = None) -> MigrationRecord:
        return self._record(svc, MigrationState.FAILED, attempt, message, failure, snapshot_id)

    def _await_ready(self, svc: ServiceDescriptor, legacy: bool) -> bool:
        """Poll the health endpoint of the requested form with the readiness policy."""
        url = svc.health_url(legacy=legacy)
        unit = svc.legacy_unit if legacy else svc.managed_unit
        if url is None:
            # No HTTP endpoint: the unit being active is the only readiness signal
            log_message(f"{svc.name} has no health endpoint, checking {unit} is active")
            ready, attempts = self.readiness.run(lambda: self.process.is_active(unit),
                                                 label=f"{unit} to become active")
        else:
            log_message(f"Waiting for {svc.name} to be ready at {url}...")
            ready, attempts = self.readiness.run(
                lambda: self.prober.probe(url, timeout=self.readiness.timeout),
                label=f"{svc.name} to respond",
            )
        if ready:
            log_message(f"{svc.name} ready after {attempts} probe(s)")
        return ready

    # --- Operations ---

    def migrate(self, name: str) -> MigrationRecord:
        """
        Move a service to its managed form.

        Returns:
            MigrationRecord: The terminal record (Managed or Failed)

        Raises:
            UnknownServiceError: name is not registered
            ManualResolutionRequired: the record is stuck in a transient state
        """
        svc = self.registry.get(name)
        current = self.store.current(name)

        if current is not None and current.state == MigrationState.MANAGED:
            log_message(f"Service {name} already migrated to managed form")
            return current
        if current is not None and current.state.transient:
            raise ManualResolutionRequired(name, current.state)

        attempt = current.attempt + 1 if current else 1
        with self._claim(name):
            log_message(f"Starting migration for service: {name} (attempt {attempt})")
            legacy_active = self.process.is_active(svc.legacy_unit)
            managed_active = self.process.is_active(svc.managed_unit)

            if current is None and not (managed_active and not legacy_active):
                self._record(svc, MigrationState.LEGACY, attempt, "Initial state reported by host")

            snapshot_id = None
            if legacy_active or not managed_active:
                self._record(svc, MigrationState.BACKING_UP, attempt,
                             "Stopping legacy unit" if legacy_active else "Legacy unit not running")
                if legacy_active:
                    try:
                        log_message(f"Stopping legacy {svc.legacy_unit}")
                        self.process.stop(svc.legacy_unit, self.grace_period)
                    except ProcessControlError as e:
                        return self._fail(svc, attempt, PROCESS_FAILED, f"Failed to stop legacy unit: {e}")

                if os.path.isdir(svc.data_path):
                    try:
                        snapshot = self.backups.snapshot(svc, tags=["pre-migration"])
                        snapshot_id = snapshot.snapshot_id
                    except BackupError as e:
                        # Legacy was stopped above; start it again before failing
                        if legacy_active:
                            self._restart_legacy_after_backup_failure(svc)
                        return self._fail(svc, attempt, BACKUP_FAILED, f"Backup failed: {e}")
                else:
                    log_message(f"No data at {svc.data_path} for {name}, nothing to back up", "WARNING")

            self._record(svc, MigrationState.SWITCHING, attempt,
                         f"Starting {svc.managed_unit}", snapshot_id=snapshot_id)
            try:
                self.process.enable(svc.managed_unit)
                self.process.start(svc.managed_unit)
            except ProcessControlError as e:
                return self._fail(svc, attempt, PROCESS_FAILED, f"Failed to start managed unit: {e}", snapshot_id)

            self._record(svc, MigrationState.AWAITING_READY, attempt,
                         f"Polling up to {self.readiness.max_attempts} times", snapshot_id=snapshot_id)
            if not self._await_ready(svc, legacy=False):
                log_message(f"❌ Service {name} migration failed - service not responding", "ERROR")
                return self._fail(svc, attempt, READINESS_TIMEOUT,
                                  f"No healthy response after {self.readiness.max_attempts} probes; "
                                  f"legacy unit left stopped, run rollback to restore", snapshot_id)

            try:
                self.process.disable(svc.legacy_unit)
            except ProcessControlError as e:
                return self._fail(svc, attempt, PROCESS_FAILED, f"Managed unit ready but legacy unit could not be disabled: {e}",
                                  snapshot_id)

            log_message(f"✅ Service {name} migration completed successfully")
            return self._record(svc, MigrationState.MANAGED, attempt, "Managed unit healthy", snapshot_id=snapshot_id)

    def _restart_legacy_after_backup_failure(self, svc: ServiceDescriptor) -> None:
        try:
            self.process.start(svc.legacy_unit)
            log_message(f"Restarted legacy {svc.legacy_unit} after backup failure", "WARNING")
        except ProcessControlError as e:
            log_message(f"Could not restart legacy {svc.legacy_unit}: {e}", "ERROR")

    def rollback(self, name: str) -> MigrationRecord:
        """
        Return a service to its legacy form, restoring its latest snapshot.

        Returns:
            MigrationRecord: RolledBack, or Failed with the rollback_failed marker
        """
        svc = self.registry.get(name)
        current = self.store.current(name)
        attempt = current.attempt if current else 1

        with self._claim(name):
            log_message(f"Starting rollback for service: {name}")
            self._record(svc, MigrationState.ROLLING_BACK, attempt, f"Stopping {svc.managed_unit}")

            try:
                if self.process.is_active(svc.managed_unit):
                    log_message(f"Stopping managed {svc.managed_unit}")
                    self.process.stop(svc.managed_unit, self.grace_period)
                self.process.disable(svc.managed_unit)
            except ProcessControlError as e:
                return self._fail(svc, attempt, ROLLBACK_FAILED, f"Failed to stop managed unit: {e}")

            snapshot = self.backups.latest_snapshot(name)
            snapshot_id = None
            if snapshot is not None:
                try:
                    self.backups.restore(snapshot)
                    snapshot_id = snapshot.snapshot_id
                except BackupError as e:
                    return self._fail(svc, attempt, ROLLBACK_FAILED, f"Restore failed: {e}", snapshot.snapshot_id)
            else:
                log_message(f"Warning: No backup found for {name}, keeping current data", "WARNING")

            try:
                log_message(f"Re-enabling legacy {svc.legacy_unit}")
                self.process.enable(svc.legacy_unit)
                self.process.start(svc.legacy_unit)
            except ProcessControlError as e:
                return self._fail(svc, attempt, ROLLBACK_FAILED, f"Failed to start legacy unit: {e}", snapshot_id)

            if not self._await_ready(svc, legacy=True):
                log_message(f"❌ Service {name} rollback failed - service not responding", "ERROR")
                return self._fail(svc, attempt, ROLLBACK_FAILED,
                                  f"Legacy unit not healthy after {self.readiness.max_attempts} probes; "
                                  f"operator intervention required", snapshot_id)

            log_message(f"✅ Service {name} rollback completed successfully")
            return self._record(svc, MigrationState.ROLLED_BACK, attempt, "Legacy unit healthy", snapshot_id=snapshot_id)

    def migrate_all(self) -> Dict[str, Any]:
        """
        Migrate every service sequentially, dependencies first.

        Services never transition concurrently; a failure does not stop the run.

        Returns:
            dict: service name -> MigrationRecord, or the error raised for that service
        """
        results: Dict[str, Any] = {}
        for svc in self.registry:
            log_message(f"Migrating {svc.name}...")
            try:
                results[svc.name] = self.migrate(svc.name)
            except MigrationError as e:
                log_message(f"❌ {svc.name} migration skipped: {e}", "ERROR")
                results[svc.name] = e
        return results

    def needs_rollback(self, svc: ServiceDescriptor) -> bool:
        current = self.store.current(svc.name)
        if current is not None and current.state not in (MigrationState.LEGACY, MigrationState.ROLLED_BACK):
            return True
        return self.process.is_active(svc.managed_unit)

    def rollback_all(self) -> Dict[str, Any]:
        """Roll back every service that is not already on its legacy form, in reverse order."""
        results: Dict[str, Any] = {}
        for svc in reversed(list(self.registry)):
            if not self.needs_rollback(svc):
                log_message(f"{svc.name} is on its legacy form, nothing to roll back")
                continue
            log_message(f"Rolling back {svc.name}...")
            try:
                results[svc.name] = self.rollback(svc.name)
            except MigrationError as e:
                log_message(f"❌ {svc.name} rollback skipped: {e}", "ERROR")
                results[svc.name] = e
        return results

    def overview(self, svc: ServiceDescriptor, probe_timeout: float = 5.0) -> Dict[str, Any]:
        """Live view of one service: both unit states, endpoint health and the stored record."""
        legacy = self.process.is_active(svc.legacy_unit)
        managed = self.process.is_active(svc.managed_unit)
        url = svc.health_url(legacy=legacy and not managed)
        network = self.prober.probe(url, timeout=probe_timeout) if url else None

        if legacy and managed:
            overall = "CONFLICT"
        elif managed:
            overall = "MANAGED-OK" if network is not False else "MANAGED-FAIL"
        elif legacy:
            overall = "LEGACY-OK" if network is not False else "LEGACY-FAIL"
        else:
            overall = "DOWN"

        current = self.store.current(svc.name)
        return {
            "service": svc.name,
            "port": svc.port,
            "legacy": "active" if legacy else "inactive",
            "managed": "active" if managed else "inactive",
            "network": network,
            "overall": overall,
            "record": current.to_dict() if current else None,
        }

    def status(self, probe_timeout: float = 5.0) -> Dict[str, Dict[str, Any]]:
        """Overview of every service, in registry order."""
        return {svc.name: self.overview(svc, probe_timeout) for svc in self.registry}


def is_failure(result: Any) -> bool:
    """True for anything a CLI should turn into a non-zero exit code."""
    if isinstance(result, Exception):
        return True
    return isinstance(result, MigrationRecord) and result.state == MigrationState.FAILED
