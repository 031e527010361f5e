"""State store: snapshot reads and writes guarded by a lock protocol."""

import re
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from landform.config.models import BackendConfig, EngineConfig
from landform.utils.errors import (
    ErrorContext,
    LandformError,
    LockHeldError,
    LockNotHeldError,
    StateError,
    StateLockError,
)
from landform.utils.logging import get_logger

from .backend import LockTable, SnapshotStorage
from .local import LocalLockTable, LocalSnapshotStorage, atomic_write_json
from .models import LockToken, StateSnapshot

logger = get_logger(__name__)

STATE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class StateStore:
    """Durable record of last-applied resource state.

    Snapshot writes are only accepted from the current, unexpired lock
    holder. The lock is renewed on every write, and by a background
    heartbeat while it is held through ``locked()``.
    """

    def __init__(
        self,
        lock_table: LockTable,
        storage: SnapshotStorage,
        lock_ttl: float = 900.0,
        lock_timeout: float = 0.0,
        poll_interval: float = 0.5,
        recovery_dir: Optional[Path] = None
    ):
        """Initialize the state store.

        Args:
            lock_table: Lock record table
            storage: Snapshot blob storage
            lock_ttl: Seconds after which an unrenewed lock is stale
            lock_timeout: Default seconds to wait for a held lock
            poll_interval: Seconds between acquisition attempts while waiting
            recovery_dir: Where a snapshot is saved when a write is rejected;
                defaults to .landform in the working directory
        """
        self.lock_table = lock_table
        self.storage = storage
        self.lock_ttl = lock_ttl
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.recovery_dir = Path(recovery_dir) if recovery_dir is not None else Path(".landform")
        self.logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        backend: BackendConfig,
        engine: EngineConfig,
        base_dir: Optional[Path] = None
    ) -> "StateStore":
        """Build a store for the configured backend."""
        if backend.type == "s3":
            from .s3 import CLIENT_CONFIG, DynamoDBLockTable, S3SnapshotStorage, create_session

            session = create_session(region=backend.region, profile=backend.profile)
            lock_table = DynamoDBLockTable(
                backend.lock_table,
                key_prefix=backend.key_prefix,
                client=session.client("dynamodb", config=CLIENT_CONFIG),
            )
            storage = S3SnapshotStorage(
                backend.bucket,
                key_prefix=backend.key_prefix,
                client=session.client("s3", config=CLIENT_CONFIG),
                encrypt=backend.encrypt,
            )
        else:
            directory = Path(backend.path)
            if base_dir is not None and not directory.is_absolute():
                directory = Path(base_dir) / directory
            lock_table = LocalLockTable(str(directory))
            storage = LocalSnapshotStorage(str(directory))

        return cls(
            lock_table,
            storage,
            lock_ttl=engine.lock_ttl,
            lock_timeout=engine.lock_timeout,
            recovery_dir=Path(base_dir) / ".landform" if base_dir is not None else None,
        )

    @staticmethod
    def _check_state_id(state_id: str) -> None:
        if not STATE_ID_RE.match(state_id or ""):
            raise StateError(
                f"Invalid state id '{state_id}': use letters, digits, '.', '_' and '-'",
                context=ErrorContext(state_id=state_id)
            )

    def acquire_lock(
        self,
        state_id: str,
        operation: str = "apply",
        wait: Optional[float] = None
    ) -> LockToken:
        """Acquire the exclusive lock for a state id.

        Args:
            state_id: State identity
            operation: Operation recorded in the lock (plan, apply, destroy...)
            wait: Seconds to keep trying while the lock is held; defaults to
                the configured lock timeout, 0 fails immediately

        Returns:
            LockToken proving ownership

        Raises:
            LockHeldError: If the lock is still held after ``wait`` seconds
        """
        self._check_state_id(state_id)
        wait = self.lock_timeout if wait is None else wait
        deadline = time.monotonic() + wait

        while True:
            token = LockToken.new(state_id, self.lock_ttl, operation=operation)
            holder = self.lock_table.try_acquire(token, datetime.utcnow())
            if holder is None:
                self.logger.info(
                    f"Acquired lock {token.lock_id} on state '{state_id}' ({operation})",
                    extra={"state_id": state_id, "lock_id": token.lock_id}
                )
                return token

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockHeldError(state_id, holder)

            self.logger.debug(f"State '{state_id}' locked by {holder.who}; retrying")
            time.sleep(min(self.poll_interval, remaining))

    def get_lock(self, state_id: str) -> Optional[LockToken]:
        """Current lock record (possibly stale), or None."""
        self._check_state_id(state_id)
        return self.lock_table.get(state_id)

    def renew_lock(self, token: LockToken) -> LockToken:
        """Push back the expiry of a held lock.

        Raises:
            LockNotHeldError: If the token is expired or was taken over
        """
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=self.lock_ttl)
        if self.lock_table.renew(token, expires_at, now):
            return token.model_copy(update={"expires_at": expires_at})

        current = self.lock_table.get(token.state_id)
        if current is None:
            reason = "the lock was released"
        elif current.lock_id != token.lock_id:
            reason = f"the lock is now held by {current.who} ({current.lock_id})"
        else:
            reason = "the lock has expired"
        raise LockNotHeldError(token.state_id, token.lock_id, reason)

    def release_lock(self, token: LockToken) -> None:
        """Release a held lock. Releasing a lock that was lost only logs."""
        if self.lock_table.release(token.state_id, token.lock_id):
            self.logger.info(
                f"Released lock {token.lock_id} on state '{token.state_id}'",
                extra={"state_id": token.state_id, "lock_id": token.lock_id}
            )
        else:
            self.logger.warning(
                f"Lock {token.lock_id} on state '{token.state_id}' was no longer held at release"
            )

    def force_unlock(self, state_id: str, lock_id: str) -> None:
        """Remove somebody else's lock, e.g. after a crash.

        Raises:
            StateLockError: If ``lock_id`` is not the current lock
        """
        self._check_state_id(state_id)
        if not self.lock_table.release(state_id, lock_id):
            current = self.lock_table.get(state_id)
            detail = f"current lock is {current.lock_id}" if current else "state is not locked"
            raise StateLockError(
                f"Cannot force-unlock state '{state_id}' with lock ID {lock_id}: {detail}",
                context=ErrorContext(state_id=state_id)
            )
        self.logger.warning(f"Force-unlocked state '{state_id}' (lock {lock_id})")

    @contextmanager
    def locked(
        self,
        state_id: str,
        operation: str = "apply",
        wait: Optional[float] = None
    ) -> Iterator[LockToken]:
        """Hold the lock for the duration of a ``with`` block.

        A heartbeat renews the lock every third of ``lock_ttl`` until the
        block exits, so slow provider calls or a pending confirmation do
        not let it go stale.
        """
        token = self.acquire_lock(state_id, operation=operation, wait=wait)
        heartbeat = LockHeartbeat(self, token).start()
        try:
            yield token
        finally:
            heartbeat.stop()
            self.release_lock(token)

    def read_snapshot(self, state_id: str) -> StateSnapshot:
        """Load the stored snapshot; an empty one if nothing was stored yet.

        Raises:
            StateError: If the stored snapshot is corrupted
        """
        self._check_state_id(state_id)
        data = self.storage.get(state_id)
        if data is None:
            self.logger.debug(f"No snapshot stored for '{state_id}'; starting empty")
            return StateSnapshot(state_id=state_id)

        try:
            snapshot = StateSnapshot.from_dict(data)
        except ValidationError as e:
            raise StateError(
                f"Snapshot {self.storage.describe(state_id)} is invalid: {e}",
                context=ErrorContext(state_id=state_id),
                cause=e
            )

        if snapshot.state_id != state_id:
            raise StateError(
                f"Snapshot {self.storage.describe(state_id)} belongs to state '{snapshot.state_id}'",
                context=ErrorContext(state_id=state_id)
            )
        return snapshot

    def write_snapshot(self, state_id: str, snapshot: StateSnapshot, token: LockToken) -> StateSnapshot:
        """Persist a snapshot atomically while holding the lock.

        The snapshot's ``serial`` is incremented in place before writing.
        If the write is rejected, the snapshot is saved to a recovery file
        (see ``recovery_path``) before the error is raised.

        Raises:
            LockNotHeldError: If ``token`` is not the current, unexpired lock
            StateError: If the snapshot cannot be stored
        """
        self._check_state_id(state_id)
        if token.state_id != state_id or snapshot.state_id != state_id:
            raise LockNotHeldError(state_id, token.lock_id, "token or snapshot is for another state")

        try:
            self.renew_lock(token)
            snapshot.serial += 1
            snapshot.timestamp = datetime.utcnow()
            try:
                self.storage.put(state_id, snapshot.to_dict())
            except LandformError:
                snapshot.serial -= 1
                raise
        except LandformError as e:
            self.save_recovery(state_id, snapshot, e)
            raise

        self.logger.debug(
            f"Wrote snapshot '{state_id}' serial {snapshot.serial}",
            extra={"state_id": state_id}
        )
        return snapshot

    def recovery_path(self, state_id: str) -> Path:
        """Local file holding a snapshot whose write was rejected."""
        return self.recovery_dir / f"errored-{state_id}.json"

    def save_recovery(self, state_id: str, snapshot: StateSnapshot, error: LandformError) -> Path:
        """Save a snapshot that could not be stored and point ``error`` at it."""
        path = self.recovery_path(state_id)
        try:
            atomic_write_json(path, snapshot.to_dict())
        except OSError as e:
            self.logger.error(f"Could not save recovery snapshot to {path}: {e}")
            return path

        self.logger.error(
            f"Snapshot write for '{state_id}' was rejected; working state saved to {path}",
            extra={"state_id": state_id}
        )
        hint = f"Resources changed by this run are recorded in {path}; compare it with the stored state"
        if hint not in error.suggestions:
            error.suggestions.insert(0, hint)
        return path


class LockHeartbeat:
    """Renews a held lock from a background thread until stopped."""

    def __init__(self, store: StateStore, token: LockToken, interval: Optional[float] = None):
        self.store = store
        self.token = token
        self.interval = interval if interval is not None else store.lock_ttl / 3
        self.lost: Optional[LockNotHeldError] = None
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"landform-lock-{token.state_id}", daemon=True
        )

    def start(self) -> "LockHeartbeat":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.store.renew_lock(self.token)
            except LockNotHeldError as e:
                # Lost for good; the next snapshot write reports it.
                self.lost = e
                logger.error(e.message, extra={"state_id": self.token.state_id, "lock_id": self.token.lock_id})
                return
            except LandformError as e:
                logger.warning(f"Lock renewal failed, retrying: {e.message}")
