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
Utilities for the service migration controller.

This module provides the shared building blocks used by every controller module.
"""

from .index import (
    log_message,
    setup_logging,
    utc_now,
    atomic_write_json,
    load_json_document,
    check_schema_version,
    SvcMigrateError,
    SchemaVersionError,
    SUPPORTED_SCHEMA_VERSION,
)
from .retry import RetryPolicy
from .registry import (
    ServiceRegistry,
    ServiceDescriptor,
    DependencyDescriptor,
    IntegrationCheck,
    RegistryError,
    UnknownServiceError,
    CRITICAL,
    NORMAL,
)
from .prober import HealthProber, ProbeResult, ProbeError
from .process import SystemctlProcessControl, ProcessControlError
from .state_manager import BackupCoordinator, BackupSnapshot, BackupError, ResticArchive

__all__ = [
    'log_message',
    'setup_logging',
    'utc_now',
    'atomic_write_json',
    'load_json_document',
    'check_schema_version',
    'SvcMigrateError',
    'SchemaVersionError',
    'SUPPORTED_SCHEMA_VERSION',
    'RetryPolicy',
    'ServiceRegistry',
    'ServiceDescriptor',
    'DependencyDescriptor',
    'IntegrationCheck',
    'RegistryError',
    'UnknownServiceError',
    'CRITICAL',
    'NORMAL',
    'HealthProber',
    'ProbeResult',
    'ProbeError',
    'SystemctlProcessControl',
    'ProcessControlError',
    'BackupCoordinator',
    'BackupSnapshot',
    'BackupError',
    'ResticArchive',
]
