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
Status Registry

The shared live-status document other tools read:

    {
        "timestamp": "...",
        "services": {"sonarr": {"endpoint": "127.0.0.1:8989", "status": "healthy", "last_check": "..."}},
        "hazards": {"radarr": {"detected_at": "...", ...}},
        "dependencies": {"storage": {"mounted": true, ...}}
    }

Each monitor owns one section. Every update rewrites the whole document
through a temp-file rename so readers never observe a partial document.
"""

import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ...utils.index import atomic_write_json, load_json_document, log_message, utc_now
from ...utils.prober import HealthProber
from ...utils.registry import ServiceRegistry
from ...utils.retry import RetryPolicy

SECTIONS = ("services", "hazards", "dependencies")


class StatusDocumentStore:
    """Section-wise writer for the status document."""

    def __init__(self, path: str):
        self.path = Path(path)
        # Serializes read-modify-write cycles between monitors in this process
        self._lock = threading.Lock()

    def read(self) -> Dict[str, Any]:
        document = load_json_document(self.path, {})
        document.setdefault("timestamp", None)
        for section in SECTIONS:
            document.setdefault(section, {})
        return document

    def update_section(self, section: str, value: Dict[str, Any]) -> Dict[str, Any]:
        """Replace one section and rewrite the document atomically."""
        if section not in SECTIONS:
            raise ValueError(f"Unknown status section '{section}'")
        with self._lock:
            document = self.read()
            document[section] = value
            document["timestamp"] = utc_now()
            atomic_write_json(self.path, document)
        return document

    def update_entry(self, section: str, key: str, value: Optional[Dict[str, Any]]) -> None:
        """Set (or remove, when value is None) a single key inside a section."""
        if section not in SECTIONS:
            raise ValueError(f"Unknown status section '{section}'")
        with self._lock:
            document = self.read()
            if value is None:
                document[section].pop(key, None)
            else:
                document[section][key] = value
            document["timestamp"] = utc_now()
            atomic_write_json(self.path, document)


class StatusRegistryWriter:
    """
    Periodically probes every enabled service and publishes the result.

    A service whose managed unit is not running is probed on its legacy
    health path, the same endpoint the migration controller watches.
    """

    def __init__(self, registry: ServiceRegistry, process: Any, store: StatusDocumentStore,
                 prober: HealthProber, probe_policy: RetryPolicy, interval: float = 60.0):
        self.registry = registry
        self.process = process
        self.store = store
        self.prober = prober
        self.probe_policy = probe_policy
        self.interval = interval

    def run_once(self) -> Dict[str, Dict[str, Any]]:
        services = {}
        for svc in self.registry:
            if not svc.enabled:
                continue
            url = svc.health_url(legacy=not self.process.is_active(svc.managed_unit))
            if url is None:
                status = "unknown"
            else:
                healthy, _ = self.probe_policy.run(
                    lambda: self.prober.probe(url, timeout=self.probe_policy.timeout),
                    label=f"{svc.name} status probe",
                )
                status = "healthy" if healthy else "unhealthy"
            marker = "✓" if status == "healthy" else "✗"
            log_message(f"{marker} {svc.name} ({svc.endpoint}) is {status}", "DEBUG")
            services[svc.name] = {
                "endpoint": svc.endpoint,
                "status": status,
                "last_check": utc_now(),
            }
        self.store.update_section("services", services)
        return services

    def run_forever(self, stop_event: threading.Event,
                    on_error: Optional[Callable[[Exception], None]] = None) -> None:
        log_message(f"Status registry writer started (interval {self.interval}s)")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                log_message(f"Status registry update failed: {e}", "ERROR")
                if on_error:
                    on_error(e)
            stop_event.wait(self.interval)
        log_message("Status registry writer stopped")
