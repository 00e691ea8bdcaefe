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
Process-control collaborator

Thin wrapper over systemctl. Every call carries an explicit timeout and any
non-zero exit or timeout raises ProcessControlError; the controller treats
that as an immediate step failure.
"""

import subprocess
from typing import List, Optional

from .index import log_message, SvcMigrateError

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_GRACE_PERIOD = 10.0


class ProcessControlError(SvcMigrateError):
    """A start/stop/enable/disable request failed or timed out."""
    pass


class SystemctlProcessControl:
    """Start, stop and query systemd units."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT, systemctl: str = "systemctl"):
        self.timeout = timeout
        self.systemctl = systemctl

    def _run(self, args: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.systemctl] + args
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout or self.timeout)
        except subprocess.TimeoutExpired:
            raise ProcessControlError(f"{' '.join(cmd)} timed out after {timeout or self.timeout}s")
        except OSError as e:
            raise ProcessControlError(f"{' '.join(cmd)} could not be executed: {e}")

    def _checked(self, action: str, unit: str, timeout: Optional[float] = None) -> None:
        result = self._run([action, unit], timeout)
        if result.returncode != 0:
            raise ProcessControlError(
                f"systemctl {action} {unit} failed ({result.returncode}): {result.stderr.strip()}"
            )
        log_message(f"systemctl {action} {unit}", "DEBUG")

    def is_active(self, unit: str) -> bool:
        """True only when systemd reports the unit active; errors count as inactive."""
        try:
            result = self._run(["is-active", "--quiet", unit])
        except ProcessControlError as e:
            log_message(f"Could not query {unit}: {e}", "WARNING")
            return False
        return result.returncode == 0

    def start(self, unit: str) -> None:
        self._checked("start", unit)

    def stop(self, unit: str, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """Stop unit, allowing grace_period seconds beyond the command timeout for shutdown."""
        self._checked("stop", unit, timeout=self.timeout + grace_period)

    def restart(self, unit: str) -> None:
        self._checked("restart", unit)

    def enable(self, unit: str) -> None:
        self._checked("enable", unit)

    def disable(self, unit: str) -> None:
        self._checked("disable", unit)
