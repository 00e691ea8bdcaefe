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
Validation Harness

Scheduled batch run that scores dependency, service, integration and
(optionally) performance checks into one structured report.

No test aborts the run: each one is timed and recorded on its own, and an
exception inside a test is recorded as a failure. The only signal that
propagates is the exit code, non-zero when a critical service failed.

Report layout under reports_dir:
    current/<test_id>.json   - the last history_limit run reports (at least one)
    history/<test_id>.json   - the last history_limit reports
    latest.json              - symlink to the most recent report

When metrics_file is set, each persisted report is also summarized as a
Prometheus textfile for node_exporter's textfile collector.
"""

import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from ...utils.index import atomic_write_json, load_json_document, log_message, utc_now
from ...utils.prober import HealthProber
from ...utils.registry import ServiceRegistry, IntegrationCheck
from ..storage.index import check_dependency

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"

CATEGORIES = ("dependencies", "services", "integration", "performance")


@dataclass
class ValidationReport:
    """Results of one validation run."""
    test_id: str
    started_at: str
    suites: List[str]
    ended_at: Optional[str] = None
    results: Dict[str, Dict[str, Dict[str, Any]]] = field(
        default_factory=lambda: {category: {} for category in CATEGORIES})
    summary: Dict[str, int] = field(
        default_factory=lambda: {"total": 0, "passed": 0, "failed": 0, "skipped": 0})
    critical_failures: List[str] = field(default_factory=list)

    def record(self, category: str, name: str, status: str, message: str, duration_ms: int) -> None:
        self.results[category][name] = {
            "status": status,
            "message": message,
            "duration_ms": duration_ms,
            "timestamp": utc_now(),
        }
        self.summary["total"] += 1
        key = {PASS: "passed", FAIL: "failed", SKIP: "skipped"}[status]
        self.summary[key] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "suites": list(self.suites),
            "results": self.results,
            "summary": dict(self.summary),
            "critical_failures": list(self.critical_failures),
        }


class ValidationHarness:
    """Runs the configured suites and persists the report."""

    def __init__(self, registry: ServiceRegistry, process, prober: HealthProber, reports_dir: str,
                 suites: Optional[List[str]] = None, performance_threshold: float = 2.0,
                 history_limit: int = 10, alert_on_failure: bool = True, test_timeout: float = 30.0,
                 interval: float = 300.0,
                 metrics_file: Optional[str] = None,
                 dependency_check: Callable[..., Tuple[bool, str]] = check_dependency):
        self.registry = registry
        self.process = process
        self.prober = prober
        self.reports_dir = Path(reports_dir)
        self.suites = list(suites or ["basic", "integration"])
        self.performance_threshold = performance_threshold
        self.history_limit = history_limit
        self.alert_on_failure = alert_on_failure
        self.test_timeout = test_timeout
        self.interval = interval
        self.metrics_file = Path(metrics_file) if metrics_file else None
        self.dependency_check = dependency_check

    # --- Running ---

    def _timed(self, report: ValidationReport, category: str, name: str,
               test: Callable[[], Tuple[str, str]]) -> str:
        started = time.monotonic()
        try:
            status, message = test()
        except Exception as e:
            status, message = FAIL, f"Test raised {type(e).__name__}: {e}"
        duration_ms = int((time.monotonic() - started) * 1000)
        report.record(category, name, status, message, duration_ms)
        marker = {PASS: "✓ PASS", FAIL: "✗ FAIL", SKIP: "- SKIP"}[status]
        log_message(f"Testing {category}/{name}... {marker} ({duration_ms} ms) {message}",
                    "WARNING" if status == FAIL else "INFO")
        return status

    def _run_dependency_tests(self, report: ValidationReport) -> None:
        log_message("=== Dependency Tests ===")
        for dep in self.registry.dependencies:
            def test(dep=dep):
                passed, message = self.dependency_check(dep, self.test_timeout)
                return (PASS if passed else FAIL), message
            self._timed(report, "dependencies", dep.name, test)

    def _service_test(self, svc) -> Tuple[str, str]:
        if not self.process.is_active(svc.managed_unit) and not self.process.is_active(svc.legacy_unit):
            return FAIL, "Service not running"
        url = svc.health_url(legacy=not self.process.is_active(svc.managed_unit))
        if url is not None:
            result = self.prober.check(url, timeout=self.test_timeout)
            if not result.healthy:
                return FAIL, f"Health endpoint unreachable ({result.error})"
        return PASS, "Service healthy"

    def _run_service_tests(self, report: ValidationReport) -> None:
        log_message("=== Service Health Tests ===")
        for svc in self.registry:
            if not svc.enabled:
                self._timed(report, "services", svc.name, lambda: (SKIP, "Service disabled"))
                continue
            status = self._timed(report, "services", svc.name, lambda svc=svc: self._service_test(svc))
            if status == FAIL and svc.critical:
                report.critical_failures.append(svc.name)

    def _integration_test(self, check: IntegrationCheck) -> Tuple[str, str]:
        target = self.registry.get(check.service)
        prerequisite = self.registry.get(check.requires)
        if not prerequisite.enabled:
            return SKIP, f"Prerequisite {prerequisite.name} disabled"
        if not target.enabled:
            return SKIP, f"{target.name} disabled"
        path = check.path if check.path.startswith("/") else "/" + check.path
        url = f"http://{target.host}:{target.port}{path}"
        result = self.prober.check(url, timeout=self.test_timeout)
        if not result.healthy:
            return FAIL, f"{url} unreachable ({result.error})"
        if check.expect and check.expect not in result.body:
            return FAIL, f"{url} answered without '{check.expect}'"
        return PASS, f"{target.name} reachable with {prerequisite.name} enabled"

    def _run_integration_tests(self, report: ValidationReport) -> None:
        log_message("=== Integration Tests ===")
        for check in self.registry.integration_checks:
            self._timed(report, "integration", check.name, lambda check=check: self._integration_test(check))

    def _performance_test(self, svc) -> Tuple[str, str]:
        legacy = not self.process.is_active(svc.managed_unit)
        url = svc.health_url(legacy=legacy) or f"http://{svc.host}:{svc.port}/"
        result = self.prober.check(url, timeout=self.test_timeout)
        if not result.healthy:
            return FAIL, f"No response: {result.error}"
        if result.latency >= self.performance_threshold:
            return FAIL, f"Slow response: {result.latency:.3f} s"
        return PASS, f"Response time: {result.latency:.3f} s"

    def _run_performance_tests(self, report: ValidationReport) -> None:
        log_message("=== Performance Tests ===")
        for svc in self.registry:
            if not svc.enabled:
                continue
            self._timed(report, "performance", f"{svc.name}_response", lambda svc=svc: self._performance_test(svc))

    def run(self, persist: bool = True) -> ValidationReport:
        """Execute every configured suite and (optionally) persist the report."""
        now = datetime.now()
        report = ValidationReport(
            test_id=f"validation-{now.strftime('%Y%m%d-%H%M%S-%f')}",
            started_at=utc_now(),
            suites=self.suites,
        )
        log_message("=== Validation Started ===")
        log_message(f"Test ID: {report.test_id}")

        if "basic" in self.suites:
            self._run_dependency_tests(report)
            self._run_service_tests(report)
        if "integration" in self.suites:
            self._run_integration_tests(report)
        if "performance" in self.suites:
            self._run_performance_tests(report)

        report.ended_at = utc_now()
        summary = report.summary
        log_message("=== Test Summary ===")
        log_message(f"Total: {summary['total']}  Passed: {summary['passed']}  "
                    f"Failed: {summary['failed']}  Skipped: {summary['skipped']}")

        if report.critical_failures and self.alert_on_failure:
            log_message(f"ALERT: {len(report.critical_failures)} critical service(s) failed validation: "
                        f"{', '.join(report.critical_failures)}", "ERROR")

        if persist:
            self.persist(report)
        return report

    def exit_code(self, report: ValidationReport) -> int:
        if report.critical_failures and self.alert_on_failure:
            return 1
        return 0

    # --- Persistence ---

    def persist(self, report: ValidationReport) -> Path:
        """Write the run file, copy it into history, repoint latest, prune and export metrics."""
        current_dir = self.reports_dir / "current"
        history_dir = self.reports_dir / "history"
        history_dir.mkdir(parents=True, exist_ok=True)

        report_path = current_dir / f"{report.test_id}.json"
        atomic_write_json(report_path, report.to_dict())
        shutil.copy2(report_path, history_dir / report_path.name)
        self._point_latest(report_path)
        self._prune(history_dir, max(self.history_limit, 0))
        # latest.json points into current/, so the newest run file always stays
        self._prune(current_dir, max(self.history_limit, 1))
        log_message(f"Report written to {report_path}")
        if self.metrics_file is not None:
            self.export_metrics(report)
        return report_path

    def _prune(self, directory: Path, keep: int) -> None:
        # test ids embed a sortable timestamp, so name order is age order
        reports = sorted(directory.glob("validation-*.json"))
        for old in reports[:len(reports) - keep]:
            old.unlink()
            log_message(f"Pruned old report {old.name}", "DEBUG")

    def _point_latest(self, report_path: Path) -> None:
        """Replace the latest.json symlink atomically."""
        latest = self.reports_dir / "latest.json"
        tmp_link = self.reports_dir / f".latest.json.{os.getpid()}.tmp"
        if tmp_link.is_symlink() or tmp_link.exists():
            tmp_link.unlink()
        os.symlink(os.path.relpath(report_path, self.reports_dir), tmp_link)
        os.replace(tmp_link, latest)

    def export_metrics(self, report: ValidationReport) -> None:
        """Write the report summary as a Prometheus textfile."""
        summary = report.summary
        registry = CollectorRegistry()
        for key in ("total", "passed", "failed", "skipped"):
            Gauge(f"svcmigrate_validation_tests_{key}", f"Validation tests {key} in the last run",
                  registry=registry).set(summary[key])
        rate = summary["passed"] / summary["total"] if summary["total"] else 0.0
        Gauge("svcmigrate_validation_success_rate", "Share of validation tests that passed in the last run",
              registry=registry).set(rate)
        Gauge("svcmigrate_validation_critical_failures", "Critical services that failed the last run",
              registry=registry).set(len(report.critical_failures))
        Gauge("svcmigrate_validation_last_run_timestamp_seconds", "Unix time the last validation run finished",
              registry=registry).set(time.time())

        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            write_to_textfile(str(self.metrics_file), registry)
        except OSError as e:
            log_message(f"Failed to write validation metrics to {self.metrics_file}: {e}", "WARNING")
            return
        log_message(f"Validation metrics written to {self.metrics_file}", "DEBUG")

    def load_latest(self) -> Optional[Dict[str, Any]]:
        latest = self.reports_dir / "latest.json"
        if not latest.exists():
            return None
        return load_json_document(latest)

    # --- Scheduling ---

    def run_forever(self, stop_event: threading.Event,
                    on_error: Optional[Callable[[Exception], None]] = None) -> None:
        log_message(f"Validation scheduler started (interval {self.interval}s)")
        while not stop_event.is_set():
            try:
                self.run()
            except Exception as e:
                log_message(f"Validation run failed: {e}", "ERROR")
                if on_error:
                    on_error(e)
            stop_event.wait(self.interval)
        log_message("Validation scheduler stopped")


def format_report(report: Dict[str, Any]) -> str:
    """Human-readable rendering of a persisted report."""
    lines = [
        f"Test ID: {report.get('test_id')}",
        f"Started: {report.get('started_at')}",
        f"Ended:   {report.get('ended_at')}",
        "",
    ]
    for category in CATEGORIES:
        results = report.get("results", {}).get(category, {})
        if not results:
            continue
        lines.append(f"[{category}]")
        for name, result in sorted(results.items()):
            lines.append(f"  {result['status']:<5} {name:<28} {result['duration_ms']:>6} ms  {result['message']}")
    summary = report.get("summary", {})
    lines.append("")
    lines.append(f"Total: {summary.get('total', 0)}  Passed: {summary.get('passed', 0)}  "
                 f"Failed: {summary.get('failed', 0)}  Skipped: {summary.get('skipped', 0)}")
    if report.get("critical_failures"):
        lines.append(f"Critical failures: {', '.join(report['critical_failures'])}")
    return "\n".join(lines)
