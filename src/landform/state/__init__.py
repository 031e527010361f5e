"""State management: snapshots, lock records and storage backends."""

from .backend import LockTable, SnapshotStorage
from .local import LocalLockTable, LocalSnapshotStorage
from .models import DeposedObject, LockToken, ResourceState, StateSnapshot
from .store import LockHeartbeat, StateStore

__all__ = [
    "DeposedObject",
    "LockToken",
    "ResourceState",
    "StateSnapshot",
    "LockTable",
    "SnapshotStorage",
    "LocalLockTable",
    "LocalSnapshotStorage",
    "LockHeartbeat",
    "StateStore",
]
