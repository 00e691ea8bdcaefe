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
Migration Module - Legacy to Managed Service Transitions

Components:
- MigrationController: stop-legacy, backup, start-managed, poll-ready, commit; operator rollback
- MigrationStateStore: durable append-only record history keyed by service
- MigrationRecord / MigrationState: the persisted state machine
"""

from .index import (
    MigrationController,
    MigrationStateStore,
    MigrationRecord,
    MigrationState,
    MigrationError,
    ManualResolutionRequired,
    TRANSIENT_STATES,
    BACKUP_FAILED,
    PROCESS_FAILED,
    READINESS_TIMEOUT,
    ROLLBACK_FAILED,
    is_failure,
)

__all__ = [
    'MigrationController',
    'MigrationStateStore',
    'MigrationRecord',
    'MigrationState',
    'MigrationError',
    'ManualResolutionRequired',
    'TRANSIENT_STATES',
    'BACKUP_FAILED',
    'PROCESS_FAILED',
    'READINESS_TIMEOUT',
    'ROLLBACK_FAILED',
    'is_failure',
]
