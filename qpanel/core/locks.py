"""File-based locking and JSON file helpers for the panel's flat-file stores."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

logger = logging.getLogger(__name__)


class StoreLock:
    """Inter-process lock guarding one store file.

    The lock file sits beside the guarded file as ``.<name>.lock``. Failing to
    acquire the lock is logged and the caller proceeds unlocked: the stores
    are last-write-wins and a stale lock must not make the panel unusable.
    """

    LOCK_TIMEOUT: int = 10

    def __init__(self, target: Path, timeout: float | None = None):
        self.target = Path(target)
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self._filelock: FileLock | None = None
        self.acquired = False

    @property
    def lock_path(self) -> Path:
        return self.target.parent / f".{self.target.name}.lock"

    def __enter__(self) -> StoreLock:
        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create directory for {self.target}: {e}")
            return self

        if self.lock_path.is_symlink():
            logger.warning(f"SECURITY: {self.lock_path} is a symlink; lock disabled.")
            return self

        try:
            self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
            self._filelock.acquire()
            self.acquired = True
        except FileLockTimeout:
            logger.warning(f"Lock on {self.target} timed out after {self.timeout}s")
        except OSError as e:
            logger.warning(f"Failed to acquire lock on {self.target}: {e}")

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(Exception):
                self._filelock.release()
        return False


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, returning ``default`` when it does not exist."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default


def write_json(path: Path, data: Any) -> None:
    """Write JSON atomically (temp file + rename) with two-space indent."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read a JSONL file; malformed lines are logged and skipped."""
    path = Path(path)
    if not path.exists():
        return []
    records = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping malformed line {lineno} in {path}: {e}")
    return records
