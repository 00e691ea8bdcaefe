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

import json
import threading

import pytest

from svcmigrate.utils.registry import ServiceDescriptor, ServiceRegistry
from svcmigrate.modules.status import StatusDocumentStore, StatusRegistryWriter

from conftest import instant_policy


def test_sections_are_updated_independently(status_store):
    status_store.update_section("services", {"alpha": {"status": "healthy"}})
    status_store.update_entry("dependencies", "storage", {"healthy": False})
    status_store.update_entry("hazards", "beta", {"service": "beta"})
    status_store.update_entry("hazards", "beta", None)

    document = status_store.read()
    assert document["services"] == {"alpha": {"status": "healthy"}}
    assert document["dependencies"] == {"storage": {"healthy": False}}
    assert document["hazards"] == {}
    assert document["timestamp"]


def test_unknown_section_is_rejected(status_store):
    with pytest.raises(ValueError):
        status_store.update_section("metrics", {})


def test_writer_records_health_of_enabled_services(tmp_path, process, prober):
    registry = ServiceRegistry([
        ServiceDescriptor(name="web", port=8080, health_path="/health", data_path="/srv/web"),
        ServiceDescriptor(name="api", port=9090, health_path="/ready", data_path="/srv/api"),
        ServiceDescriptor(name="worker", port=0, health_path=None, data_path="/srv/worker"),
        ServiceDescriptor(name="old", port=1, health_path="/", data_path="/srv/old", enabled=False),
    ])
    prober.by_url["http://127.0.0.1:9090/ready"] = False
    store = StatusDocumentStore(str(tmp_path / "service-registry.json"))
    writer = StatusRegistryWriter(registry, process, store, prober, instant_policy(2, interval=0))

    writer.run_once()

    services = json.loads((tmp_path / "service-registry.json").read_text())["services"]
    assert services["web"]["status"] == "healthy"
    assert services["web"]["endpoint"] == "127.0.0.1:8080"
    assert services["api"]["status"] == "unhealthy"
    assert services["worker"]["status"] == "unknown"
    assert "old" not in services
    assert prober.calls.count("http://127.0.0.1:9090/ready") == 2


def test_writer_checks_legacy_endpoint_until_managed_unit_runs(tmp_path, process, prober):
    registry = ServiceRegistry([
        ServiceDescriptor(name="web", port=8080, health_path="/api/health",
                          legacy_health_path="/ping", data_path="/srv/web"),
    ])
    prober.default = False
    prober.by_url["http://127.0.0.1:8080/ping"] = True
    process.active = {"web.service"}
    store = StatusDocumentStore(str(tmp_path / "service-registry.json"))
    writer = StatusRegistryWriter(registry, process, store, prober, instant_policy(1, interval=0))

    assert writer.run_once()["web"]["status"] == "healthy"
    assert prober.calls == ["http://127.0.0.1:8080/ping"]

    process.active = {"dagger-web.service"}
    assert writer.run_once()["web"]["status"] == "unhealthy"
    assert prober.calls[-1] == "http://127.0.0.1:8080/api/health"


def test_concurrent_writers_never_expose_partial_documents(status_store):
    big = {f"svc{i}": {"endpoint": f"127.0.0.1:{8000 + i}", "status": "healthy"} for i in range(200)}
    errors = []
    done = threading.Event()

    def writer(section):
        for _ in range(20):
            status_store.update_section(section, big)
        done.set()

    def reader():
        while not done.is_set():
            try:
                if status_store.path.exists():
                    document = json.loads(status_store.path.read_text())
                    for section in ("services", "hazards"):
                        if document.get(section):
                            assert len(document[section]) == len(big)
            except Exception as e:
                errors.append(e)

    threads = [threading.Thread(target=writer, args=("services",)),
               threading.Thread(target=writer, args=("hazards",)),
               threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    document = status_store.read()
    assert len(document["services"]) == len(big) and len(document["hazards"]) == len(big)


def test_run_forever_stops_on_event(tmp_path, registry, process, prober):
    store = StatusDocumentStore(str(tmp_path / "status.json"))
    writer = StatusRegistryWriter(registry, process, store, prober, instant_policy(1, interval=0), interval=0.01)
    stop = threading.Event()
    stop.set()
    writer.run_forever(stop)
    assert not (tmp_path / "status.json").exists()
