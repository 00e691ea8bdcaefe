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

import pytest

from svcmigrate.config import (
    CONFIG_ENV_VAR,
    ConfigError,
    load_config,
    load_registry_and_settings,
    parse_settings,
    resolve_config_path,
)


def write_config(tmp_path, document):
    path = tmp_path / "index.json"
    path.write_text(json.dumps(document))
    return str(path)


def test_defaults():
    settings = parse_settings({})
    assert settings.readiness.max_attempts == 30
    assert settings.readiness.interval == 10
    assert settings.probe.timeout == 5
    assert settings.conflicts.auto_rollback is False
    assert settings.storage.max_failures == 3
    assert settings.storage.max_recovery_attempts == 3
    assert settings.validation.history_limit == 10
    assert settings.validation.performance_threshold == 2.0
    assert str(settings.status_file).endswith("service-registry.json")


def test_policies_and_sections_override_defaults():
    settings = parse_settings({"config": {
        "state_dir": "/tmp/state",
        "policies": {"readiness": {"max_attempts": 5, "interval": 2}},
        "conflicts": {"auto_rollback": True},
        "validation": {"suites": ["basic", "performance"]},
    }})
    assert (settings.readiness.max_attempts, settings.readiness.interval) == (5, 2)
    assert settings.readiness.timeout == 5
    assert settings.conflicts.auto_rollback is True
    assert settings.validation.suites == ["basic", "performance"]
    assert str(settings.migration_state_file) == "/tmp/state/migration-state.json"


@pytest.mark.parametrize("section", [
    {"conflicts": {"autorollback": True}},
    {"validation": {"suites": ["smoke"]}},
    {"storage": {"max_failures": 0}},
    {"status": {"interval": 0}},
    {"policies": {"probe": {"max_attempts": 0}}},
])
def test_invalid_settings_are_config_errors(section):
    with pytest.raises(ConfigError):
        parse_settings({"config": section})


def test_validation_metrics_file_location():
    assert str(parse_settings({"config": {"state_dir": "/srv/state"}}).validation_metrics_file) == \
        "/srv/state/metrics/validation.prom"
    custom = parse_settings({"config": {"validation": {"metrics_file": "/var/lib/node_exporter/svc.prom"}}})
    assert str(custom.validation_metrics_file) == "/var/lib/node_exporter/svc.prom"
    assert parse_settings({"config": {"validation": {"export_metrics": False}}}).validation_metrics_file is None


def test_secret_paths_resolve_inside_secrets_dir():
    settings = parse_settings({"config": {"secrets_dir": "/run/secrets"}})
    assert str(settings.secret_path("restic-password")) == "/run/secrets/restic-password"
    assert str(settings.secret_path("/etc/other")) == "/etc/other"


def test_missing_and_corrupt_files(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "missing.json"))
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ConfigError):
        load_config(str(broken))


def test_newer_schema_is_rejected(tmp_path):
    path = write_config(tmp_path, {"metadata": {"schema_version": "9.0.0"}})
    with pytest.raises(ConfigError, match="newer"):
        load_config(path)


def test_env_var_selects_config(monkeypatch):
    monkeypatch.setenv(CONFIG_ENV_VAR, "/srv/svcmigrate.json")
    assert resolve_config_path() == "/srv/svcmigrate.json"
    assert resolve_config_path("/explicit.json") == "/explicit.json"


def test_load_registry_and_settings(tmp_path):
    path = write_config(tmp_path, {
        "metadata": {"schema_version": "1.0.0", "enabled": True},
        "config": {"state_dir": str(tmp_path / "state")},
        "services": {"sonarr": {"port": 8989, "health_path": "/ping", "data_path": "/srv/sonarr"}},
    })
    registry, settings = load_registry_and_settings(path)
    assert registry.names() == ["sonarr"]
    assert settings.state_dir == str(tmp_path / "state")
