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
Backup Coordinator

Point-in-time snapshots of a service's data directory, taken immediately
before a risky transition, and full-replace restore of the most recent one.

Key Features:
- One immutable snapshot directory per backup, named by service and time
- SHA-256 tree checksum recorded at snapshot time and verified on restore
- File ownership and mode captured and restored
- Optional off-host copy through an archive collaborator (restic)
- Snapshots are never deleted here; pruning belongs to the archive side

Usage:
    from svcmigrate.utils.state_manager import BackupCoordinator

    coordinator = BackupCoordinator("/var/lib/svcmigrate/backups")
    snapshot = coordinator.snapshot(descriptor)
    coordinator.restore(coordinator.latest_snapshot(descriptor.name))
"""

import grp
import hashlib
import json
import os
import pwd
import shutil
import stat
import subprocess
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .index import (
    SvcMigrateError,
    atomic_write_json,
    check_schema_version,
    load_json_document,
    log_message,
    SUPPORTED_SCHEMA_VERSION,
)
from .registry import ServiceDescriptor

INDEX_FILENAME = "snapshots.json"


class BackupError(SvcMigrateError):
    """Snapshot or restore failed. Operational: aborts the current transition."""
    pass


@dataclass
class FilePermissionInfo:
    """Information about file permissions and ownership, relative to the data path."""
    path: str
    mode: int
    uid: int
    gid: int
    owner: str
    group: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FilePermissionInfo':
        return cls(**data)


@dataclass
class BackupSnapshot:
    """An immutable copy of one service's data directory."""
    snapshot_id: str
    service: str
    source_path: str
    snapshot_path: str
    created_at: str
    size_bytes: int
    checksum: str
    tags: List[str] = field(default_factory=list)
    archive_id: Optional[str] = None
    file_permissions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupSnapshot':
        return cls(**data)


class ResticArchive:
    """
    Archive collaborator backed by the restic CLI.

    The repository password is read by restic itself from a file the secrets
    service materializes; the controller never touches the secret source.
    """

    def __init__(self, repository: str, password_file: str, timeout: float = 600.0,
                 restic: str = "restic"):
        self.repository = repository
        self.password_file = password_file
        self.timeout = timeout
        self.restic = restic

    def _run(self, args: List[str]) -> str:
        if not os.path.exists(self.password_file):
            raise BackupError(f"Archive password file not found: {self.password_file}")
        cmd = [self.restic, "-r", self.repository, "--password-file", self.password_file] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise BackupError(f"restic {args[0]} timed out after {self.timeout}s")
        except OSError as e:
            raise BackupError(f"restic could not be executed: {e}")
        if result.returncode != 0:
            raise BackupError(f"restic {args[0]} failed ({result.returncode}): {result.stderr.strip()}")
        return result.stdout

    def snapshot(self, path: str, tags: List[str]) -> str:
        """Archive path and return the new snapshot id."""
        args = ["backup", path, "--json"]
        for tag in tags:
            args += ["--tag", tag]
        output = self._run(args)
        # restic --json streams status lines; the summary line carries the id
        for line in reversed(output.splitlines()):
            try:
                message = json.loads(line)
            except ValueError:
                continue
            if message.get("message_type") == "summary" and message.get("snapshot_id"):
                return message["snapshot_id"]
        raise BackupError("restic backup finished without reporting a snapshot id")

    def list_snapshots(self, tags: List[str]) -> List[str]:
        output = self._run(["snapshots", "--json", "--tag", ",".join(tags)])
        try:
            return [entry["id"] for entry in json.loads(output or "[]")]
        except (ValueError, KeyError, TypeError) as e:
            raise BackupError(f"Unexpected restic snapshots output: {e}")


class BackupCoordinator:
    """
    Snapshots and restores service data directories.

    Snapshots live under backup_dir as '<service>-pre-migration-<timestamp>'
    directories; snapshots.json indexes them in creation order, so the last
    entry for a service is its most recent snapshot.
    """

    def __init__(self, backup_dir: str = "/var/lib/svcmigrate/backups",
                 archive: Optional[ResticArchive] = None):
        self.backup_root = Path(backup_dir)
        self.index_file = self.backup_root / INDEX_FILENAME
        self.archive = archive

    def _get_file_permissions(self, root: str, file_path: str) -> Optional[FilePermissionInfo]:
        """Get file permissions and ownership information."""
        try:
            stat_info = os.lstat(file_path)
        except OSError as e:
            log_message(f"Failed to get permissions for {file_path}: {e}", "WARNING")
            return None

        try:
            owner = pwd.getpwuid(stat_info.st_uid).pw_name
        except KeyError:
            owner = str(stat_info.st_uid)
        try:
            group = grp.getgrgid(stat_info.st_gid).gr_name
        except KeyError:
            group = str(stat_info.st_gid)

        return FilePermissionInfo(
            path=os.path.relpath(file_path, root),
            mode=stat_info.st_mode,
            uid=stat_info.st_uid,
            gid=stat_info.st_gid,
            owner=owner,
            group=group
        )

    def _capture_permissions(self, root: str) -> List[Dict[str, Any]]:
        """Capture permissions for a directory tree, paths relative to root."""
        permissions = []
        for current, dirs, files in os.walk(root):
            dirs.sort()
            for name in [current] + [os.path.join(current, f) for f in sorted(files)]:
                perm_info = self._get_file_permissions(root, name)
                if perm_info:
                    permissions.append(perm_info.to_dict())
        log_message(f"Captured permissions for {len(permissions)} files/directories", "DEBUG")
        return permissions

    def _restore_permissions(self, root: str, permissions: List[Dict[str, Any]]) -> None:
        """Restore modes, and ownership when running as root."""
        can_chown = hasattr(os, "geteuid") and os.geteuid() == 0
        restored = 0
        for perm_data in permissions:
            perm_info = FilePermissionInfo.from_dict(perm_data)
            target = os.path.normpath(os.path.join(root, perm_info.path))
            if os.path.islink(target) or not os.path.exists(target):
                continue
            try:
                if can_chown:
                    os.chown(target, perm_info.uid, perm_info.gid)
                os.chmod(target, stat.S_IMODE(perm_info.mode))
                restored += 1
            except OSError as e:
                log_message(f"Failed to restore permissions for {target}: {e}", "WARNING")
        log_message(f"Restored permissions for {restored}/{len(permissions)} files/directories", "DEBUG")

    @staticmethod
    def calculate_checksum(path: str) -> str:
        """SHA-256 over relative paths and contents of every file in a tree."""
        if not os.path.exists(path):
            return ""

        sha256_hash = hashlib.sha256()
        for root, dirs, files in os.walk(path):
            # Sort for consistent ordering
            dirs.sort()
            files.sort()
            for directory in dirs:
                sha256_hash.update(("d:" + os.path.relpath(os.path.join(root, directory), path)).encode())
            for name in files:
                full_path = os.path.join(root, name)
                sha256_hash.update(("f:" + os.path.relpath(full_path, path)).encode())
                if os.path.islink(full_path):
                    sha256_hash.update(os.readlink(full_path).encode())
                    continue
                with open(full_path, 'rb') as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        sha256_hash.update(chunk)
        return sha256_hash.hexdigest()

    @staticmethod
    def _tree_size(path: str) -> int:
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError:
                    continue
        return total

    def _load_index(self) -> List[BackupSnapshot]:
        data = load_json_document(self.index_file, {"snapshots": []})
        check_schema_version(data.get("schema_version"), str(self.index_file))
        snapshots = []
        for entry in data.get("snapshots", []):
            try:
                snapshots.append(BackupSnapshot.from_dict(entry))
            except TypeError as e:
                log_message(f"Skipping malformed snapshot entry in {self.index_file}: {e}", "WARNING")
        return snapshots

    def _save_index(self, snapshots: List[BackupSnapshot]) -> None:
        atomic_write_json(self.index_file, {
            "schema_version": SUPPORTED_SCHEMA_VERSION,
            "snapshots": [s.to_dict() for s in snapshots],
        })

    def _new_snapshot_dir(self, service: str, label: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        candidate = self.backup_root / f"{service}-{label}-{stamp}"
        counter = 1
        while candidate.exists():
            candidate = self.backup_root / f"{service}-{label}-{stamp}-{counter}"
            counter += 1
        return candidate

    def snapshot(self, service: ServiceDescriptor, tags: Optional[List[str]] = None,
                 label: str = "pre-migration") -> BackupSnapshot:
        """
        Copy the service's data path into a new snapshot directory.

        Args:
            service: Descriptor whose data_path is copied
            tags: Extra tags; the service name is always included
            label: Middle part of the snapshot directory name

        Returns:
            BackupSnapshot: The recorded snapshot

        Raises:
            BackupError: If the data path is missing or any copy/archive step fails
        """
        source = Path(service.data_path)
        if not source.is_dir():
            raise BackupError(f"Data path for {service.name} is not a directory: {source}")

        tags = [service.name] + [t for t in (tags or []) if t != service.name]
        snapshot_dir = self._new_snapshot_dir(service.name, label)
        data_dir = snapshot_dir / "data"

        try:
            log_message(f"Backing up {service.name} data from {source} to {snapshot_dir}")
            snapshot_dir.mkdir(parents=True)
            shutil.copytree(source, data_dir, symlinks=True)
            file_permissions = self._capture_permissions(str(source))
            checksum = self.calculate_checksum(str(data_dir))
            if checksum != self.calculate_checksum(str(source)):
                raise BackupError(f"Snapshot of {service.name} does not match its source (data changed during copy)")

            archive_id = None
            if self.archive is not None:
                archive_id = self.archive.snapshot(str(source), tags)
                log_message(f"Archived {service.name} as {archive_id}")
        except (OSError, shutil.Error, BackupError) as e:
            # A partial snapshot must never be mistaken for a good one
            shutil.rmtree(snapshot_dir, ignore_errors=True)
            if isinstance(e, BackupError):
                raise
            raise BackupError(f"Failed to snapshot {service.name}: {e}")

        snapshot = BackupSnapshot(
            snapshot_id=snapshot_dir.name,
            service=service.name,
            source_path=str(source),
            snapshot_path=str(data_dir),
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            size_bytes=self._tree_size(str(data_dir)),
            checksum=checksum,
            tags=tags,
            archive_id=archive_id,
            file_permissions=file_permissions,
        )
        snapshots = self._load_index()
        snapshots.append(snapshot)
        self._save_index(snapshots)

        log_message(f"Created snapshot {snapshot.snapshot_id} ({snapshot.size_bytes} bytes)")
        return snapshot

    def list_snapshots(self, service: Optional[str] = None, tags: Optional[List[str]] = None) -> List[BackupSnapshot]:
        """Snapshots in creation order, optionally filtered by service and tags (all must match)."""
        result = []
        for snapshot in self._load_index():
            if service is not None and snapshot.service != service:
                continue
            if tags and not set(tags).issubset(snapshot.tags):
                continue
            result.append(snapshot)
        return result

    def latest_snapshot(self, service: str) -> Optional[BackupSnapshot]:
        """Most recent snapshot for service whose directory still exists."""
        for snapshot in reversed(self.list_snapshots(service)):
            if Path(snapshot.snapshot_path).is_dir():
                return snapshot
            log_message(f"Snapshot directory missing, skipping: {snapshot.snapshot_path}", "WARNING")
        return None

    def verify(self, snapshot: BackupSnapshot) -> bool:
        """True when the snapshot directory still matches its recorded checksum."""
        return self.calculate_checksum(snapshot.snapshot_path) == snapshot.checksum

    def restore(self, snapshot: BackupSnapshot) -> None:
        """
        Replace the snapshot's source path with the snapshot contents.

        The restored tree is staged next to the target and swapped in, so the
        result is a full replace, never a merge with whatever is on disk.

        Raises:
            BackupError: If the snapshot is corrupt or the copy fails
        """
        if not self.verify(snapshot):
            raise BackupError(f"Snapshot {snapshot.snapshot_id} failed checksum verification")

        target = Path(snapshot.source_path)
        stamp = int(time.time())
        staging = target.parent / f".{target.name}.restore-{stamp}"
        aside = target.parent / f".{target.name}.pre-restore-{stamp}"
        try:
            log_message(f"Restoring {snapshot.service} data from {snapshot.snapshot_id}")
            target.parent.mkdir(parents=True, exist_ok=True)
            if staging.exists():
                shutil.rmtree(staging)
            shutil.copytree(snapshot.snapshot_path, staging, symlinks=True)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Failed to restore {snapshot.service} from {snapshot.snapshot_id}: {e}")

        # Live data is only moved aside, never deleted, until the staged copy is in place
        moved_aside = False
        try:
            if target.exists() or target.is_symlink():
                os.rename(target, aside)
                moved_aside = True
            os.rename(staging, target)
        except OSError as e:
            if moved_aside and not (target.exists() or target.is_symlink()):
                try:
                    os.rename(aside, target)
                except OSError as rollback_error:
                    log_message(f"Could not move {aside} back to {target}: {rollback_error}", "ERROR")
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Failed to restore {snapshot.service} from {snapshot.snapshot_id}: {e}")

        if moved_aside:
            try:
                if aside.is_dir() and not aside.is_symlink():
                    shutil.rmtree(aside)
                else:
                    aside.unlink()
            except OSError as e:
                log_message(f"Failed to remove previous data at {aside}: {e}", "WARNING")

        self._restore_permissions(str(target), snapshot.file_permissions)
        log_message(f"Restored {snapshot.service} data to {target}")
