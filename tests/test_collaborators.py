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

import subprocess

import pytest
import requests

from svcmigrate.utils import process as process_module
from svcmigrate.utils.process import ProcessControlError, SystemctlProcessControl
from svcmigrate.utils.prober import HealthProber, ProbeError


class Completed:
    def __init__(self, returncode=0, stderr=""):
        self.returncode = returncode
        self.stdout = ""
        self.stderr = stderr


def test_systemctl_commands(monkeypatch):
    commands = []

    def fake_run(cmd, **kwargs):
        commands.append((cmd, kwargs["timeout"]))
        return Completed(returncode=3 if cmd[1] == "is-active" else 0)

    monkeypatch.setattr(process_module.subprocess, "run", fake_run)
    control = SystemctlProcessControl(timeout=30)

    assert control.is_active("sonarr.service") is False
    control.stop("sonarr.service", grace_period=15)
    control.enable("dagger-sonarr.service")

    assert commands == [
        (["systemctl", "is-active", "--quiet", "sonarr.service"], 30),
        (["systemctl", "stop", "sonarr.service"], 45),
        (["systemctl", "enable", "dagger-sonarr.service"], 30),
    ]


def test_systemctl_failures_raise(monkeypatch):
    monkeypatch.setattr(process_module.subprocess, "run",
                        lambda cmd, **kwargs: Completed(returncode=1, stderr="Unit not found."))
    with pytest.raises(ProcessControlError, match="Unit not found"):
        SystemctlProcessControl().start("ghost.service")


def test_systemctl_timeout_is_a_failure_not_success(monkeypatch):
    def hang(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(process_module.subprocess, "run", hang)
    control = SystemctlProcessControl(timeout=1)
    with pytest.raises(ProcessControlError, match="timed out"):
        control.start("slow.service")
    assert control.is_active("slow.service") is False


class FakeResponse:
    def __init__(self, status_code, text="ok"):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.requests.append((url, timeout))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_probe_success_and_http_error():
    session = FakeSession(FakeResponse(204, ""))
    prober = HealthProber(timeout=5, session=session)
    assert prober.probe("http://127.0.0.1:8989/ping")
    assert session.requests == [("http://127.0.0.1:8989/ping", 5)]

    result = HealthProber(session=FakeSession(FakeResponse(503))).check("http://x/health", timeout=2)
    assert not result.healthy
    assert result.status_code == 503
    assert result.error == "HTTP 503"


def test_probe_timeout_and_connection_errors_are_unhealthy():
    timeout = HealthProber(session=FakeSession(requests.Timeout("slow"))).check("http://x/", timeout=1)
    assert not timeout.healthy
    assert timeout.error == "timeout after 1s"
    refused = HealthProber(session=FakeSession(requests.ConnectionError("refused"))).check("http://x/")
    assert not refused.healthy


def test_probe_without_url():
    with pytest.raises(ProbeError):
        HealthProber(session=FakeSession(FakeResponse(200))).check("")
