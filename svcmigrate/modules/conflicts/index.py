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
Conflict Detector

Watches for services whose legacy and managed units are active at the same
time and publishes them as hazards in the status document. With the opt-in
auto_rollback policy it rolls a newly conflicting service back to its legacy
form; that is the only action the controller takes without an operator.

During a migration window both units can briefly look active. Such hazards
are still published (flagged in_transition) but never trigger a rollback.
"""

import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from ...utils.index import log_message, utc_now
from ...utils.registry import ServiceRegistry
from ..migration.index import MigrationController, MigrationError
from ..status.index import StatusDocumentStore


@dataclass
class Hazard:
    """Both forms of one service reported active."""
    service: str
    detected_at: str
    legacy_unit: str
    managed_unit: str
    in_transition: bool = False
    auto_rollback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConflictDetector:
    """Fixed-interval scan for simultaneously active legacy/managed units."""

    def __init__(self, registry: ServiceRegistry, process, store: StatusDocumentStore,
                 controller: Optional[MigrationController] = None,
                 auto_rollback: bool = False, interval: float = 60.0):
        if auto_rollback and controller is None:
            raise ValueError("auto_rollback requires a migration controller")
        self.registry = registry
        self.process = process
        self.store = store
        self.controller = controller
        self.auto_rollback = auto_rollback
        self.interval = interval
        self._active: Dict[str, Hazard] = {}

    def _in_transition(self, name: str) -> bool:
        return self.controller is not None and self.controller.in_transition(name)

    def run_once(self) -> Dict[str, Hazard]:
        """Scan every service once and rewrite the hazards section."""
        hazards: Dict[str, Hazard] = {}
        for svc in self.registry:
            if not (self.process.is_active(svc.legacy_unit) and self.process.is_active(svc.managed_unit)):
                continue
            previous = self._active.get(svc.name)
            hazard = previous or Hazard(
                service=svc.name,
                detected_at=utc_now(),
                legacy_unit=svc.legacy_unit,
                managed_unit=svc.managed_unit,
            )
            hazard.in_transition = self._in_transition(svc.name)
            hazards[svc.name] = hazard
            log_message(f"CONFLICT: Both {svc.legacy_unit} and {svc.managed_unit} are running"
                        + (" (migration in progress)" if hazard.in_transition else ""), "WARNING")

        cleared = set(self._active) - set(hazards)
        for name in sorted(cleared):
            log_message(f"Conflict cleared for {name}")
        self._active = hazards

        if hazards:
            log_message(f"Service conflicts detected: {', '.join(sorted(hazards))}", "WARNING")
        self.store.update_section("hazards", {name: h.to_dict() for name, h in hazards.items()})

        if self.auto_rollback:
            self._auto_rollback(hazards)
        return hazards

    def _auto_rollback(self, hazards: Dict[str, Hazard]) -> None:
        for name, hazard in sorted(hazards.items()):
            # One rollback per hazard occurrence, never during a migration window
            if hazard.auto_rollback is not None or hazard.in_transition:
                continue
            log_message(f"Auto-rollback enabled, rolling back {name} to its legacy form", "WARNING")
            try:
                record = self.controller.rollback(name)
                hazard.auto_rollback = record.state.value
            except MigrationError as e:
                hazard.auto_rollback = "skipped"
                log_message(f"Auto-rollback of {name} skipped: {e}", "ERROR")
            self.store.update_entry("hazards", name, hazard.to_dict())

    def run_forever(self, stop_event: threading.Event,
                    on_error: Optional[Callable[[Exception], None]] = None) -> None:
        log_message(f"Conflict detector started (interval {self.interval}s, "
                    f"auto-rollback {'on' if self.auto_rollback else 'off'})")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                log_message(f"Conflict detection pass failed: {e}", "ERROR")
                if on_error:
                    on_error(e)
            stop_event.wait(self.interval)
        log_message("Conflict detector stopped")
