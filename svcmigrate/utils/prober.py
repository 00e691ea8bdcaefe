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
Health Prober

Stateless bounded-timeout HTTP probe against a service's health endpoint.
A timeout, a connection error or a 4xx/5xx answer are all "unhealthy";
nothing is ever healthy by default.
"""

import time
from dataclasses import dataclass
from typing import Optional

import requests

from .index import log_message, SvcMigrateError

DEFAULT_PROBE_TIMEOUT = 5.0


class ProbeError(SvcMigrateError):
    """A probe could not be performed. Transient, absorbed by retry policies."""
    pass


@dataclass
class ProbeResult:
    """Outcome of a single probe."""
    url: str
    healthy: bool
    status_code: Optional[int] = None
    latency: Optional[float] = None
    error: Optional[str] = None
    body: str = ""


class HealthProber:
    """Performs single HTTP GET probes with an explicit timeout."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def check(self, url: str, timeout: Optional[float] = None) -> ProbeResult:
        """
        Probe url once.

        Args:
            url: Full health URL
            timeout: Per-attempt timeout in seconds (defaults to the prober's)

        Returns:
            ProbeResult with latency measured around the request
        """
        if not url:
            raise ProbeError("No health URL to probe")
        timeout = timeout or self.timeout
        started = time.monotonic()
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=True)
        except requests.Timeout:
            log_message(f"Probe timed out after {timeout}s: {url}", "DEBUG")
            return ProbeResult(url=url, healthy=False, latency=time.monotonic() - started,
                               error=f"timeout after {timeout}s")
        except requests.RequestException as e:
            log_message(f"Probe failed: {url}: {e}", "DEBUG")
            return ProbeResult(url=url, healthy=False, latency=time.monotonic() - started, error=str(e))

        latency = time.monotonic() - started
        healthy = response.status_code < 400
        return ProbeResult(
            url=url,
            healthy=healthy,
            status_code=response.status_code,
            latency=latency,
            error=None if healthy else f"HTTP {response.status_code}",
            body=response.text if healthy else "",
        )

    def probe(self, url: str, timeout: Optional[float] = None) -> bool:
        """True when the endpoint answered with a success status in time."""
        return self.check(url, timeout).healthy
