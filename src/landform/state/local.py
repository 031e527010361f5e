"""Local filesystem backend: snapshot files plus fcntl-guarded lock records."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from pydantic import ValidationError

from landform.utils.errors import StateError

from .backend import LockTable, SnapshotStorage
from .models import LockToken


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write to a uniquely named temporary file first, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


class LocalSnapshotStorage(SnapshotStorage):
    """Snapshots as ``<directory>/<state_id>.json``."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, state_id: str) -> Path:
        return self.directory / f"{state_id}.json"

    def get(self, state_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(state_id)
        if not path.exists():
            return None

        try:
            with open(path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}", cause=e)

    def put(self, state_id: str, data: Dict[str, Any]) -> None:
        try:
            atomic_write_json(self._path(state_id), data)
        except OSError as e:
            raise StateError(f"Failed to save state file: {e}", cause=e)

    def describe(self, state_id: str) -> str:
        return str(self._path(state_id))


class LocalLockTable(LockTable):
    """Lock records as ``<directory>/<state_id>.lock.json``.

    Each read-modify-write happens under an exclusive ``flock`` on
    ``<state_id>.lock``, which serializes threads and processes alike.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _record_path(self, state_id: str) -> Path:
        return self.directory / f"{state_id}.lock.json"

    @contextmanager
    def _guard(self, state_id: str) -> Iterator[None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.directory / f"{state_id}.lock"), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _read(self, state_id: str) -> Optional[LockToken]:
        path = self._record_path(state_id)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return LockToken.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateError(f"Corrupted lock record {path}: {e}", cause=e)

    def _write(self, token: LockToken) -> None:
        atomic_write_json(self._record_path(token.state_id), token.model_dump(mode="json"))

    def try_acquire(self, token: LockToken, now: datetime) -> Optional[LockToken]:
        with self._guard(token.state_id):
            current = self._read(token.state_id)
            if current is not None and not current.is_expired(now):
                return current
            self._write(token)
            return None

    def get(self, state_id: str) -> Optional[LockToken]:
        with self._guard(state_id):
            return self._read(state_id)

    def renew(self, token: LockToken, expires_at: datetime, now: datetime) -> bool:
        with self._guard(token.state_id):
            current = self._read(token.state_id)
            if current is None or current.lock_id != token.lock_id or current.is_expired(now):
                return False
            self._write(current.model_copy(update={"expires_at": expires_at}))
            return True

    def release(self, state_id: str, lock_id: str) -> bool:
        with self._guard(state_id):
            current = self._read(state_id)
            if current is None or current.lock_id != lock_id:
                return False
            self._record_path(state_id).unlink()
            return True
