"""
Key Custody Store for the record key custody service.

Holds per-record symmetric keys indexed by handle. A key is first stored
under its content handle (``cid:<hash>``) and is later rekeyed, exactly
once, to its permanent record handle (``record:<id>``).

All implementations must be linearizable per handle:
- ``rekey`` is a single atomic step; a concurrent ``get`` sees the key
  under the old handle or the new one, never both and never neither
- ``put`` never silently replaces an existing handle
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

from .cipher import KEY_SIZE
from .errors import HandleConflict, KeyNotFound


CONTENT_PREFIX = "cid:"
RECORD_PREFIX = "record:"


class KeyPhase(str, Enum):
    """Lifecycle phase of a stored key, derived from its handle."""
    ENCRYPTED = "ENCRYPTED"     # held under a content handle
    ASSOCIATED = "ASSOCIATED"   # held under a record handle (terminal)
    UNKNOWN = "UNKNOWN"


def content_handle(content_hash: str) -> str:
    return CONTENT_PREFIX + content_hash


def record_handle(record_id: int) -> str:
    return f"{RECORD_PREFIX}{int(record_id)}"


def phase_of(handle: str) -> KeyPhase:
    if handle.startswith(CONTENT_PREFIX):
        return KeyPhase.ENCRYPTED
    if handle.startswith(RECORD_PREFIX):
        return KeyPhase.ASSOCIATED
    return KeyPhase.UNKNOWN


@dataclass(frozen=True)
class KeyRecord:
    """A stored key. ``material`` is kept out of ``repr`` so it never lands in logs."""
    handle: str
    material: bytes = field(repr=False)
    created_at: float = field(default_factory=time.time)

    @property
    def phase(self) -> KeyPhase:
        return phase_of(self.handle)


def _check_handle(handle: str) -> None:
    if not isinstance(handle, str) or not handle:
        raise ValueError("handle must be a non-empty string")


def _check_material(material: bytes) -> None:
    if not isinstance(material, (bytes, bytearray)) or len(material) != KEY_SIZE:
        raise ValueError(f"key material must be {KEY_SIZE} bytes")


class KeyCustodyStore(ABC):
    """
    Abstract interface for key custody.

    Implementations must be:
    - Internally synchronized (safe under concurrent requests)
    - Non-blocking on network I/O while holding their lock
    """

    @abstractmethod
    def put(self, handle: str, material: bytes) -> KeyRecord:
        """
        Store key material under a new handle.

        Raises:
            HandleConflict: If the handle already holds a key
        """
        pass

    @abstractmethod
    def get_record(self, handle: str) -> KeyRecord:
        """
        Fetch the full record for a handle.

        Raises:
            KeyNotFound: If the handle is absent
        """
        pass

    def get(self, handle: str) -> bytes:
        """Fetch key material for a handle. Raises KeyNotFound."""
        return self.get_record(handle).material

    @abstractmethod
    def rekey(self, old_handle: str, new_handle: str) -> KeyRecord:
        """
        Atomically move a key from ``old_handle`` to ``new_handle``.

        Raises:
            KeyNotFound: If ``old_handle`` is absent
            HandleConflict: If ``new_handle`` is already present
        """
        pass

    @abstractmethod
    def delete(self, handle: str) -> None:
        """Remove a key. Raises KeyNotFound if absent."""
        pass

    @abstractmethod
    def overwrite(self, handle: str, material: bytes) -> KeyRecord:
        """
        Replace the material of an existing handle.

        This is the only path that replaces key material; callers are
        expected to audit it. Raises KeyNotFound if absent.
        """
        pass

    @abstractmethod
    def list_records(
        self,
        phase: Optional[KeyPhase] = None,
        older_than: Optional[float] = None
    ) -> List[KeyRecord]:
        """List records, optionally filtered by phase and creation time (epoch seconds)."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def close(self) -> None:
        return


class InMemoryKeyCustodyStore(KeyCustodyStore):
    """
    In-memory key custody for development/testing.

    WARNING: every key is lost on process restart, which makes every
    blob encrypted under those keys permanently unrecoverable.
    Use SqliteKeyCustodyStore where keys must survive restarts.
    """

    def __init__(self):
        self._records: Dict[str, KeyRecord] = {}
        self._lock = threading.RLock()

    def put(self, handle: str, material: bytes) -> KeyRecord:
        _check_handle(handle)
        _check_material(material)
        with self._lock:
            if handle in self._records:
                raise HandleConflict(handle)
            rec = KeyRecord(handle=handle, material=bytes(material))
            self._records[handle] = rec
            return rec

    def get_record(self, handle: str) -> KeyRecord:
        with self._lock:
            rec = self._records.get(handle)
        if rec is None:
            raise KeyNotFound(handle)
        return rec

    def rekey(self, old_handle: str, new_handle: str) -> KeyRecord:
        _check_handle(old_handle)
        _check_handle(new_handle)
        with self._lock:
            if old_handle not in self._records:
                raise KeyNotFound(old_handle)
            if new_handle in self._records:
                raise HandleConflict(new_handle)
            rec = replace(self._records.pop(old_handle), handle=new_handle)
            self._records[new_handle] = rec
            return rec

    def delete(self, handle: str) -> None:
        with self._lock:
            if self._records.pop(handle, None) is None:
                raise KeyNotFound(handle)

    def overwrite(self, handle: str, material: bytes) -> KeyRecord:
        _check_material(material)
        with self._lock:
            old = self._records.get(handle)
            if old is None:
                raise KeyNotFound(handle)
            rec = KeyRecord(handle=handle, material=bytes(material), created_at=old.created_at)
            self._records[handle] = rec
            return rec

    def list_records(
        self,
        phase: Optional[KeyPhase] = None,
        older_than: Optional[float] = None
    ) -> List[KeyRecord]:
        with self._lock:
            records = list(self._records.values())

        if phase:
            records = [r for r in records if r.phase == phase]
        if older_than is not None:
            records = [r for r in records if r.created_at < older_than]
        return sorted(records, key=lambda r: r.created_at)

    def count(self) -> int:
        with self._lock:
            return len(self._records)
