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
Controller configuration.

The controller reads one JSON document shaped like a module index.json:

    {
        "metadata": {"schema_version": "1.0.0", "enabled": true},
        "config": {
            "state_dir": "/var/lib/svcmigrate",
            "policies": {"readiness": {"max_attempts": 30, "interval": 10, "timeout": 5}},
            "conflicts": {"enabled": true, "interval": 60, "auto_rollback": false},
            ...
        },
        "services": {"sonarr": {"port": 8989, "health_path": "/ping", "data_path": "..."}},
        "dependencies": {"storage": {"kind": "mount", "mount_point": "/mnt/docker-data", "host": "10.4.0.50"}},
        "integration": [{"name": "unpackerr_sonarr", "service": "sonarr", "requires": "unpackerr"}]
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils.index import SvcMigrateError, check_schema_version, log_message
from .utils.registry import ServiceRegistry
from .utils.retry import RetryPolicy

DEFAULT_CONFIG_PATH = "/etc/svcmigrate/index.json"
CONFIG_ENV_VAR = "SVCMIGRATE_CONFIG"

DEFAULT_READINESS_POLICY = RetryPolicy(max_attempts=30, interval=10, timeout=5)
DEFAULT_PROBE_POLICY = RetryPolicy(max_attempts=1, interval=0, timeout=5)
DEFAULT_REACHABILITY_POLICY = RetryPolicy(max_attempts=5, interval=10, timeout=5, backoff=1.5, max_interval=60)


class ConfigError(SvcMigrateError):
    """The configuration document is missing, unreadable or invalid. Fatal to startup."""
    pass


@dataclass
class ConflictSettings:
    enabled: bool = True
    interval: float = 60.0
    auto_rollback: bool = False


@dataclass
class StorageSettings:
    enabled: bool = True
    interval: float = 30.0
    max_failures: int = 3
    max_recovery_attempts: int = 3
    restart_dependents: bool = True
    write_timeout: float = 10.0


@dataclass
class ValidationSettings:
    enabled: bool = True
    interval: float = 300.0
    suites: List[str] = field(default_factory=lambda: ["basic", "integration"])
    performance_threshold: float = 2.0
    history_limit: int = 10
    alert_on_failure: bool = True
    test_timeout: float = 30.0
    export_metrics: bool = True
    metrics_file: str = ""


@dataclass
class StatusSettings:
    enabled: bool = True
    interval: float = 60.0


@dataclass
class ArchiveSettings:
    repository: Optional[str] = None
    password_file: str = "restic-password"
    timeout: float = 600.0


@dataclass
class Settings:
    """Everything the controller needs besides the service catalog."""
    state_dir: str = "/var/lib/svcmigrate"
    secrets_dir: str = "/run/svcmigrate/secrets"
    grace_period: float = 10.0
    command_timeout: float = 30.0
    readiness: RetryPolicy = DEFAULT_READINESS_POLICY
    probe: RetryPolicy = DEFAULT_PROBE_POLICY
    reachability: RetryPolicy = DEFAULT_REACHABILITY_POLICY
    conflicts: ConflictSettings = field(default_factory=ConflictSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    status: StatusSettings = field(default_factory=StatusSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)

    @property
    def migration_state_file(self) -> Path:
        return Path(self.state_dir) / "migration-state.json"

    @property
    def status_file(self) -> Path:
        return Path(self.state_dir) / "service-registry.json"

    @property
    def backup_dir(self) -> Path:
        return Path(self.state_dir) / "backups"

    @property
    def reports_dir(self) -> Path:
        return Path(self.state_dir) / "reports"

    @property
    def validation_metrics_file(self) -> Optional[Path]:
        """Prometheus textfile for validation results; None when export is off."""
        if not self.validation.export_metrics:
            return None
        if self.validation.metrics_file:
            return Path(self.validation.metrics_file)
        return Path(self.state_dir) / "metrics" / "validation.prom"

    def secret_path(self, name: str) -> Path:
        """Path of a materialized secret; relative names resolve inside secrets_dir."""
        path = Path(name)
        return path if path.is_absolute() else Path(self.secrets_dir) / path


def _section(cls, data: Optional[Dict[str, Any]], name: str):
    """Instantiate a settings dataclass from a config section, rejecting unknown keys."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"'config.{name}' must be an object")
    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Unknown keys in 'config.{name}': {', '.join(sorted(unknown))}")
    return cls(**data)


def parse_settings(config: Dict[str, Any]) -> Settings:
    """Build Settings from the 'config' section of the document."""
    section = config.get("config", {}) or {}
    policies = section.get("policies", {}) or {}
    try:
        settings = Settings(
            state_dir=section.get("state_dir", Settings.state_dir),
            secrets_dir=section.get("secrets_dir", Settings.secrets_dir),
            grace_period=float(section.get("grace_period", Settings.grace_period)),
            command_timeout=float(section.get("command_timeout", Settings.command_timeout)),
            readiness=RetryPolicy.from_dict(policies.get("readiness"), DEFAULT_READINESS_POLICY),
            probe=RetryPolicy.from_dict(policies.get("probe"), DEFAULT_PROBE_POLICY),
            reachability=RetryPolicy.from_dict(policies.get("reachability"), DEFAULT_REACHABILITY_POLICY),
            conflicts=_section(ConflictSettings, section.get("conflicts"), "conflicts"),
            storage=_section(StorageSettings, section.get("storage"), "storage"),
            validation=_section(ValidationSettings, section.get("validation"), "validation"),
            status=_section(StatusSettings, section.get("status"), "status"),
            archive=_section(ArchiveSettings, section.get("archive"), "archive"),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")

    unknown_suites = set(settings.validation.suites) - {"basic", "integration", "performance"}
    if unknown_suites:
        raise ConfigError(f"Unknown validation suites: {', '.join(sorted(unknown_suites))}")
    if settings.storage.max_failures < 1 or settings.storage.max_recovery_attempts < 1:
        raise ConfigError("storage.max_failures and storage.max_recovery_attempts must be greater than 0")
    for name in ("conflicts", "storage", "validation", "status"):
        if getattr(settings, name).interval <= 0:
            raise ConfigError(f"{name}.interval must be greater than 0")
    return settings


def resolve_config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and version-check the configuration document.

    Raises:
        ConfigError: If the file is missing, unparseable or too new
    """
    path = resolve_config_path(path)
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with open(path, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load configuration {path}: {e}")
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration {path} must be a JSON object")

    try:
        check_schema_version(config.get("metadata", {}).get("schema_version"), path)
    except SvcMigrateError as e:
        raise ConfigError(str(e))

    log_message(f"Loaded configuration from {path}", "DEBUG")
    return config


def load_registry_and_settings(path: Optional[str] = None):
    """Load the document and return (ServiceRegistry, Settings)."""
    config = load_config(path)
    return ServiceRegistry.from_config(config), parse_settings(config)
