"""Storage interfaces behind the state store."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from .models import LockToken


class LockTable(ABC):
    """Strongly consistent table of lock records keyed by state id.

    Every method must be atomic with respect to concurrent callers, including
    callers in other processes.
    """

    @abstractmethod
    def try_acquire(self, token: LockToken, now: datetime) -> Optional[LockToken]:
        """Insert ``token`` if there is no record or the record has expired.

        Returns:
            None on success, otherwise the record of the current holder
        """

    @abstractmethod
    def get(self, state_id: str) -> Optional[LockToken]:
        """Current lock record, expired or not."""

    @abstractmethod
    def renew(self, token: LockToken, expires_at: datetime, now: datetime) -> bool:
        """Extend the expiry if ``token`` is the current, unexpired holder."""

    @abstractmethod
    def release(self, state_id: str, lock_id: str) -> bool:
        """Delete the record if it carries ``lock_id``; False if it does not."""


class SnapshotStorage(ABC):
    """Blob storage for serialized snapshots."""

    @abstractmethod
    def get(self, state_id: str) -> Optional[Dict[str, Any]]:
        """Stored snapshot data, or None if nothing was written yet."""

    @abstractmethod
    def put(self, state_id: str, data: Dict[str, Any]) -> None:
        """Replace the stored snapshot atomically (all or nothing)."""

    def describe(self, state_id: str) -> str:
        """Human-readable location of a snapshot."""
        return state_id
