"""
JSON persistence with crash-safe writes and cross-process locking.

Writes go to a temp file in the target directory and are swapped in with
os.replace, so a crash mid-write leaves the previous record intact.
Read-modify-write cycles hold an exclusive flock on a sidecar lock file.
"""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Iterator

logger = logging.getLogger("spindle")


def write_json_atomic(path: Path, data: Any) -> None:
    """Atomic JSON write: temp file then replace (avoids corruption)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with NamedTemporaryFile("w", dir=path.parent, delete=False, suffix=".tmp", encoding="utf-8") as tmp:
        try:
            json.dump(data, tmp, indent=2)
            tmp.write("\n")
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_name = tmp.name
        except BaseException:
            tmp.close()
            os.unlink(tmp.name)
            raise
    os.replace(temp_name, path)


def read_json(path: Path, default: Any = None) -> Any:
    """
    Read a JSON file.

    Returns default when the file does not exist. Malformed JSON raises
    json.JSONDecodeError; callers decide whether that is recoverable.
    """
    path = Path(path)
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@contextmanager
def locked(path: Path) -> Iterator[None]:
    """
    Hold an exclusive lock guarding path for the duration of the block.

    The lock lives on "<path>.lock" so the data file itself can be replaced
    atomically while the lock is held.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    with open(lock_path, "a") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def utc_now_iso() -> str:
    """Timestamp format used in persisted records."""
    return datetime.now(timezone.utc).isoformat()
