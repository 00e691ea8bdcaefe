#!/usr/bin/env python3
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
svcmigrate command line.

    svcmigrate status                  Migration state, live unit status, status document
    svcmigrate migrate <service|all>   Move services to their managed form
    svcmigrate migrate status          Same as 'status'
    svcmigrate rollback <service|all>  Return services to their legacy form
    svcmigrate health                  Probe every service once
    svcmigrate backup                  Snapshot every service's data directory
    svcmigrate validate [--latest]     Run the validation suite once, or show the last report
    svcmigrate logs                    Recent journal entries for all managed units
    svcmigrate monitor                 Run all monitors until SIGINT/SIGTERM

Exit codes: 0 success, 1 failed/critical state, 2 configuration error, 130 interrupted.
"""

import argparse
import asyncio
import os
import signal
import subprocess
import sys
import threading
from datetime import datetime
from typing import Any, List, Optional

from . import Runtime, load_runtime, run_monitors_async
from .config import ConfigError, resolve_config_path
from .utils.index import SchemaVersionError, SvcMigrateError, log_message, setup_logging
from .utils.registry import RegistryError, UnknownServiceError
from .utils.state_manager import BackupError
from .modules.migration import MigrationRecord, ManualResolutionRequired, is_failure
from .modules.validation import format_report

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _print_result(name: str, result: Any) -> None:
    if isinstance(result, MigrationRecord):
        line = f"{name}: {result.state.value}"
        if result.failure:
            line += f" ({result.failure})"
        if result.message:
            line += f" - {result.message}"
        print(line)
    else:
        print(f"{name}: ERROR - {result}")


def show_status(runtime: Runtime) -> int:
    """Print the migration records, live unit states and the shared status document."""
    print("=== Migration Status ===")
    print(f"Generated: {datetime.now().isoformat(timespec='seconds')}")
    print("")

    print("=== Service Status ===")
    print(f"{'Service':<14} {'Legacy':<10} {'Managed':<10} {'Network':<8} {'Port':<6} {'Status':<13} Record")
    print(f"{'-------':<14} {'------':<10} {'-------':<10} {'-------':<8} {'----':<6} {'------':<13} ------")
    failed = False
    overview = runtime.controller.status(probe_timeout=runtime.settings.probe.timeout)
    for svc in runtime.registry:
        view = overview[svc.name]
        record = view["record"]
        record_text = "-"
        if record:
            record_text = f"{record['state']} (attempt {record['attempt']}, {record['timestamp']})"
            if record.get("failure"):
                record_text += f" [{record['failure']}]"
                failed = True
        network = "n/a" if view["network"] is None else str(view["network"]).lower()
        print(f"{svc.name:<14} {view['legacy']:<10} {view['managed']:<10} {network:<8} "
              f"{svc.port:<6} {view['overall']:<13} {record_text}")
    print("")

    document = runtime.status_store.read()
    if document.get("timestamp"):
        print("=== Service Discovery ===")
        print(f"Last Check: {document['timestamp']}")
        for name, entry in sorted(document["services"].items()):
            print(f"  {name}: {entry.get('status')} ({entry.get('endpoint')})")
        for name, hazard in sorted(document["hazards"].items()):
            print(f"  HAZARD {name}: both forms active since {hazard.get('detected_at')}")
        for name, state in sorted(document["dependencies"].items()):
            health = "healthy" if state.get("healthy") else "unhealthy"
            print(f"  dependency {name}: {health} (failures {state.get('consecutive_failures')}, "
                  f"recoveries {state.get('recovery_attempts')})")
        print("")
    return EXIT_FAILED if failed else EXIT_OK


def run_migrate(runtime: Runtime, target: str) -> int:
    if target == "status":
        return show_status(runtime)
    if target == "all":
        results = runtime.controller.migrate_all()
    else:
        results = {target: runtime.controller.migrate(target)}
    for name, result in results.items():
        _print_result(name, result)
    failures = [name for name, result in results.items() if is_failure(result)]
    if failures:
        log_message(f"Migration failed for: {', '.join(failures)}", "ERROR")
        return EXIT_FAILED
    log_message("Migration completed successfully")
    return EXIT_OK


def run_rollback(runtime: Runtime, target: str) -> int:
    if target == "all":
        results = runtime.controller.rollback_all()
    else:
        results = {target: runtime.controller.rollback(target)}
    for name, result in results.items():
        _print_result(name, result)
    failures = [name for name, result in results.items() if is_failure(result)]
    if failures:
        log_message(f"Rollback failed for: {', '.join(failures)}", "ERROR")
        return EXIT_FAILED
    log_message("Rollback completed successfully")
    return EXIT_OK


def run_health_checks(runtime: Runtime) -> int:
    """One probe per service, printed like the validation summary."""
    print("=== Health Check Results ===")
    unhealthy = 0
    for svc in runtime.registry:
        view = runtime.controller.overview(svc, probe_timeout=runtime.settings.probe.timeout)
        form = "managed" if view["managed"] == "active" else "legacy"
        if view["overall"] == "CONFLICT":
            print(f"⚠️  {svc.name}: both legacy and managed units are running")
            unhealthy += 1
        elif view["overall"] == "DOWN":
            print(f"❌ {svc.name} is not running")
            unhealthy += 1
        elif view["network"] is False:
            print(f"⚠️  {svc.name} ({form}) is running but not responding")
            unhealthy += 1
        else:
            print(f"✅ {svc.name} ({form}) is healthy")
    return EXIT_FAILED if unhealthy else EXIT_OK


def create_backup(runtime: Runtime) -> int:
    """Snapshot every service data directory with the 'manual' tag."""
    print("=== System Backup ===")
    failures = 0
    for svc in runtime.registry:
        if not os.path.isdir(svc.data_path):
            log_message(f"No data for {svc.name} at {svc.data_path}, skipping")
            continue
        try:
            snapshot = runtime.backups.snapshot(svc, tags=["manual"], label="manual")
            print(f"  {svc.name}: {snapshot.snapshot_id} ({snapshot.size_bytes} bytes)")
        except BackupError as e:
            log_message(f"Backup of {svc.name} failed: {e}", "ERROR")
            failures += 1
    if failures:
        log_message(f"{failures} backup(s) failed", "ERROR")
        return EXIT_FAILED
    log_message("✅ System backup completed")
    return EXIT_OK


def run_validation(runtime: Runtime, latest: bool = False) -> int:
    if latest:
        document = runtime.validation.load_latest()
        if document is None:
            log_message("No validation report found", "ERROR")
            return EXIT_FAILED
        print(format_report(document))
        alerting = runtime.settings.validation.alert_on_failure
        return EXIT_FAILED if alerting and document.get("critical_failures") else EXIT_OK
    report = runtime.validation.run()
    print(format_report(report.to_dict()))
    return runtime.validation.exit_code(report)


def show_logs(runtime: Runtime, since: str, lines: int) -> int:
    units: List[str] = []
    for svc in runtime.registry:
        units += ["-u", svc.legacy_unit, "-u", svc.managed_unit]
    cmd = ["journalctl"] + units + ["--since", since, "--no-pager", "-n", str(lines)]
    try:
        result = subprocess.run(cmd, timeout=runtime.settings.command_timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        log_message(f"Could not read journal: {e}", "ERROR")
        return EXIT_FAILED
    return EXIT_OK if result.returncode == 0 else EXIT_FAILED


def run_monitors(runtime: Runtime) -> int:
    """Run every enabled monitor until SIGINT or SIGTERM."""
    stop_event = threading.Event()

    def request_stop(signum, _frame):
        log_message(f"Received signal {signum}, stopping monitors after their current iteration")
        stop_event.set()

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)

    results = asyncio.run(run_monitors_async(runtime.monitors(), stop_event))
    crashed = [name for name, error in results.items() if error is not None]
    return EXIT_FAILED if crashed else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="svcmigrate",
                                     description="Service migration and health-supervision controller")
    parser.add_argument("--config", default=None,
                        help="Configuration file (default: $SVCMIGRATE_CONFIG or /etc/svcmigrate/index.json)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", aliases=["st"], help="Show migration and service status")
    migrate = sub.add_parser("migrate", aliases=["mig"], help="Migrate a service to its managed form")
    migrate.add_argument("target", help="Service name, 'all', or 'status'")
    rollback = sub.add_parser("rollback", aliases=["roll"], help="Roll a service back to its legacy form")
    rollback.add_argument("target", help="Service name or 'all'")
    sub.add_parser("health", aliases=["check"], help="Probe every service once")
    sub.add_parser("backup", aliases=["bak"], help="Snapshot every service data directory")
    validate = sub.add_parser("validate", aliases=["val"], help="Run the validation suite once")
    validate.add_argument("--latest", action="store_true", help="Show the most recent report instead of running")
    logs = sub.add_parser("logs", help="Show recent unit logs")
    logs.add_argument("--since", default="1 hour ago")
    logs.add_argument("-n", "--lines", type=int, default=50)
    sub.add_parser("monitor", help="Run all monitors until stopped")
    return parser


COMMAND_ALIASES = {"st": "status", "mig": "migrate", "roll": "rollback",
                   "check": "health", "bak": "backup", "val": "validate"}


def dispatch(runtime: Runtime, args: argparse.Namespace) -> int:
    command = COMMAND_ALIASES.get(args.command, args.command) or "status"
    if command == "status":
        return show_status(runtime)
    if command == "migrate":
        return run_migrate(runtime, args.target)
    if command == "rollback":
        return run_rollback(runtime, args.target)
    if command == "health":
        return run_health_checks(runtime)
    if command == "backup":
        return create_backup(runtime)
    if command == "validate":
        return run_validation(runtime, args.latest)
    if command == "logs":
        return show_logs(runtime, args.since, args.lines)
    if command == "monitor":
        return run_monitors(runtime)
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None, runtime: Optional[Runtime] = None) -> int:
    """
    Main entry point for the controller CLI.

    Args:
        argv: Arguments (defaults to sys.argv[1:])
        runtime: Pre-built runtime, used instead of loading the configuration

    Returns:
        int: Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        if runtime is None:
            log_message(f"Using configuration {resolve_config_path(args.config)}", "DEBUG")
            runtime = load_runtime(args.config)
        return dispatch(runtime, args)
    except (ConfigError, RegistryError, SchemaVersionError) as e:
        log_message(f"Configuration error: {e}", "ERROR")
        return EXIT_CONFIG
    except UnknownServiceError as e:
        log_message(str(e), "ERROR")
        return EXIT_FAILED
    except ManualResolutionRequired as e:
        log_message(f"Manual resolution required: {e}", "ERROR")
        return EXIT_FAILED
    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        return EXIT_INTERRUPTED
    except SvcMigrateError as e:
        log_message(f"Unhandled controller error: {e}", "ERROR")
        return EXIT_FAILED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
