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

import datetime
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from packaging import version

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Highest document schema this controller knows how to read
SUPPORTED_SCHEMA_VERSION = "1.0.0"


class SvcMigrateError(Exception):
    """Base class for every error raised by the controller."""
    pass


class SchemaVersionError(SvcMigrateError):
    """A persisted document was written by a newer controller."""
    pass


def setup_logging(debug: bool = False) -> None:
    """
    Log to stdout only; journald or the shell wrapper owns persistence.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)


def log_message(message: str, level: str = "INFO") -> None:
    """
    Unified logger used throughout the controller and its monitors.

    Args:
        message (str): The message to log.
        level (str): Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR').
    """
    if level == "ERROR":
        logging.error(message)
    elif level == "WARNING":
        logging.warning(message)
    elif level == "DEBUG":
        logging.debug(message)
    else:
        logging.info(message)


def utc_now() -> str:
    """ISO-8601 timestamp used in every persisted document."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def check_schema_version(document_version: Optional[str], source: str,
                         supported: str = SUPPORTED_SCHEMA_VERSION) -> None:
    """
    Reject documents written with a schema newer than this controller supports.

    Args:
        document_version: schema_version found in the document (None is treated as current)
        source: Path or label used in the error message
        supported: Highest supported schema version

    Raises:
        SchemaVersionError: If the document is newer or its version is unparseable
    """
    if not document_version:
        return
    try:
        if version.parse(str(document_version)) > version.parse(supported):
            raise SchemaVersionError(
                f"{source} uses schema {document_version}, newer than supported {supported}"
            )
    except version.InvalidVersion:
        raise SchemaVersionError(f"{source} has an invalid schema_version: {document_version!r}")


def load_json_document(path: Union[str, Path], default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load a JSON document, returning a copy of default if it does not exist.

    Corrupt documents are logged and treated as missing; readers must never
    crash because a writer died before its first successful rename.
    """
    path = Path(path)
    if not path.exists():
        return dict(default or {})
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log_message(f"Failed to load {path}: {e}", "WARNING")
        return dict(default or {})
    if not isinstance(data, dict):
        log_message(f"Ignoring {path}: top-level value is not an object", "WARNING")
        return dict(default or {})
    return data


def atomic_write_json(path: Union[str, Path], data: Dict[str, Any], mode: int = 0o644) -> None:
    """
    Write data as JSON so readers only ever see the old or the new document.

    The temporary file lives in the destination directory so the final
    os.replace() is a same-filesystem rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
