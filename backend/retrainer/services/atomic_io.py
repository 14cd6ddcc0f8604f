"""
Atomic JSON document I/O.

Writes go through a temp file and a backup copy so that a failure at any
point leaves the previous valid document in place.
"""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Verifier = Callable[[Any], Any]


class StorageError(Exception):
    """Base exception for storage errors."""
    pass


class StorageWriteFailure(StorageError):
    """Raised when a document could not be written; the prior state was restored."""
    pass


class StorageReadCorruption(StorageError):
    """Raised when a document exists but cannot be parsed or validated."""
    pass


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


def backup_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".backup")


def require_timestamp(payload: Any) -> Any:
    """Minimal verifier: the payload must be an object with a timestamp."""
    if not isinstance(payload, dict) or not payload.get("timestamp"):
        raise ValueError("Data verification failed: missing timestamp")
    return payload


def write_json_atomic(
    path: Path,
    text: str,
    verify: Optional[Verifier] = None,
) -> None:
    """
    Atomically replace ``path`` with ``text``.

    1. Copy the current file to ``<path>.backup``.
    2. Write ``<path>.tmp``.
    3. Read the temp file back and run ``verify`` on the parsed payload.
    4. Rename the temp file over ``path``.
    5. Remove the backup.

    Args:
        path: Target document path.
        text: Serialized JSON document.
        verify: Called with the parsed temp file; raise to abort.
            Defaults to :func:`require_timestamp`.

    Raises:
        StorageWriteFailure: If any step fails. The temp file is removed
            and the backup, if any, is restored over ``path``.
    """
    verify = verify or require_timestamp
    temp_path = temp_path_for(path)
    backup_path = backup_path_for(path)

    try:
        if path.exists():
            shutil.copyfile(path, backup_path)

        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        with open(temp_path, "r", encoding="utf-8") as f:
            verify(json.load(f))

        os.replace(temp_path, path)

        if backup_path.exists():
            backup_path.unlink()

        logger.debug(f"Atomic write completed: {path}")

    except Exception as e:
        logger.error(f"Atomic write failed: {path} - {e}")

        if temp_path.exists():
            temp_path.unlink()

        if backup_path.exists():
            if path.exists():
                path.unlink()
            os.replace(backup_path, path)
            logger.info(f"Restored from backup: {path}")

        raise StorageWriteFailure(f"Failed to write {path.name}: {e}") from e


def read_json(path: Path, verify: Optional[Verifier] = None) -> Any:
    """
    Read one JSON document and return ``verify(payload)``.

    Raises:
        FileNotFoundError: If the file does not exist.
        StorageReadCorruption: If it cannot be parsed or fails ``verify``.
    """
    verify = verify or require_timestamp
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        return verify(payload)
    except FileNotFoundError:
        raise
    except Exception as e:
        raise StorageReadCorruption(f"Unreadable document {path.name}: {e}") from e
