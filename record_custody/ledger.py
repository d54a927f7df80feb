"""
Ledger client module for the record key custody service.

Read-only access to the authorization ledger: record ownership, user
roles and hospitals, consent grants and emergency-access expiries.
Facts are fetched per query and never cached.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Set, Tuple
from urllib.parse import quote

import requests

from .errors import LedgerError, LedgerUnavailable, RecordNotFound


log = logging.getLogger("record_custody.ledger")


class Role(IntEnum):
    """User roles as recorded on the ledger."""
    NONE = 0
    PATIENT = 1
    DOCTOR = 2
    HOSPITAL_ADMIN = 3
    STAKEHOLDER = 4


@dataclass(frozen=True)
class RecordFacts:
    record_id: int
    owner: str
    hospital_id: int
    content_hash: Optional[str] = None


@dataclass(frozen=True)
class UserFacts:
    identity: str
    registered: bool = False
    role: Role = Role.NONE
    hospital_id: int = 0


def _norm(identity: str) -> str:
    return identity.lower()


def _role(value: Any) -> Role:
    try:
        return Role(int(value))
    except ValueError:
        return Role.NONE


def _segment(identity: str) -> str:
    """Encode an identity as one URL path segment; dot segments would change the route."""
    if identity in ("", ".", ".."):
        raise LedgerError(f"identity {identity!r} cannot be used in a ledger path")
    return quote(identity, safe="")


class LedgerClient(ABC):
    """Abstract read-only interface to the authorization ledger."""

    @abstractmethod
    def get_record(self, record_id: int) -> RecordFacts:
        """
        Fetch a record's owner and hospital.

        Raises:
            RecordNotFound: If no such record exists
            LedgerError: If the ledger cannot answer
        """
        pass

    @abstractmethod
    def get_user(self, identity: str) -> UserFacts:
        """Fetch registration, role and hospital. Unknown users are unregistered."""
        pass

    @abstractmethod
    def is_consent_given(self, record_id: int, identity: str) -> bool:
        pass

    @abstractmethod
    def get_emergency_expiry(self, identity: str, record_id: int) -> int:
        """Epoch seconds at which emergency access ends, or 0 if never granted."""
        pass

    @abstractmethod
    def find_record_by_content_hash(self, content_hash: str) -> Optional[int]:
        """Record id committed for a content hash, or None if none was committed."""
        pass

    def ping(self) -> bool:
        return True


class InMemoryLedger(LedgerClient):
    """
    In-memory ledger for development/testing.

    Provides mutators that stand in for on-ledger transactions.
    Identities are matched case-insensitively.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[int, RecordFacts] = {}
        self._users: Dict[str, UserFacts] = {}
        self._consents: Set[Tuple[int, str]] = set()
        self._emergency: Dict[Tuple[str, int], int] = {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InMemoryLedger":
        """
        Build a ledger from a fixture document::

            {"records": [{"id": 1, "patient": "0x..", "hospitalId": 7, "ipfsHash": ".."}],
             "users": [{"identity": "0x..", "role": 2, "hospitalId": 7}],
             "consents": [{"recordId": 1, "identity": "0x.."}],
             "emergency": [{"identity": "0x..", "recordId": 1, "expiresAt": 1700000000}]}
        """
        ledger = cls()
        for r in data.get("records", []):
            ledger.add_record(int(r["id"]), r["patient"], int(r.get("hospitalId", 0)), r.get("ipfsHash"))
        for u in data.get("users", []):
            ledger.register_user(u["identity"], _role(u.get("role", 0)), int(u.get("hospitalId", 0)))
        for c in data.get("consents", []):
            ledger.give_consent(int(c["recordId"]), c["identity"])
        for e in data.get("emergency", []):
            ledger.grant_emergency(e["identity"], int(e["recordId"]), int(e["expiresAt"]))
        return ledger

    # --- mutators (ledger transactions) ---

    def add_record(self, record_id: int, owner: str, hospital_id: int, content_hash: Optional[str] = None) -> RecordFacts:
        facts = RecordFacts(record_id=record_id, owner=owner, hospital_id=hospital_id, content_hash=content_hash)
        with self._lock:
            self._records[record_id] = facts
        return facts

    def register_user(self, identity: str, role: Role, hospital_id: int = 0) -> UserFacts:
        facts = UserFacts(identity=identity, registered=True, role=Role(role), hospital_id=hospital_id)
        with self._lock:
            self._users[_norm(identity)] = facts
        return facts

    def give_consent(self, record_id: int, identity: str) -> None:
        with self._lock:
            self._consents.add((record_id, _norm(identity)))

    def revoke_consent(self, record_id: int, identity: str) -> None:
        with self._lock:
            self._consents.discard((record_id, _norm(identity)))

    def grant_emergency(self, identity: str, record_id: int, expires_at: int) -> None:
        with self._lock:
            self._emergency[(_norm(identity), record_id)] = expires_at

    # --- LedgerClient ---

    def get_record(self, record_id: int) -> RecordFacts:
        with self._lock:
            facts = self._records.get(record_id)
        if facts is None:
            raise RecordNotFound(record_id)
        return facts

    def get_user(self, identity: str) -> UserFacts:
        with self._lock:
            return self._users.get(_norm(identity), UserFacts(identity=identity))

    def is_consent_given(self, record_id: int, identity: str) -> bool:
        with self._lock:
            return (record_id, _norm(identity)) in self._consents

    def get_emergency_expiry(self, identity: str, record_id: int) -> int:
        with self._lock:
            return self._emergency.get((_norm(identity), record_id), 0)

    def find_record_by_content_hash(self, content_hash: str) -> Optional[int]:
        with self._lock:
            for facts in self._records.values():
                if facts.content_hash == content_hash:
                    return facts.record_id
        return None


class HttpLedgerClient(LedgerClient):
    """
    REST adapter over a ledger gateway.

    Transient failures (connection errors, timeouts, 5xx) are retried a
    bounded number of times; exhaustion raises LedgerUnavailable.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        retries: int = 2,
        backoff_seconds: float = 0.2,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff_seconds = backoff_seconds
        self._session = session or requests.Session()

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        """
        GET a JSON document. Returns None on 404.

        Raises:
            LedgerUnavailable: After retries are exhausted on transient errors
            LedgerError: On any other non-success response
        """
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(self.retries + 1):
            if attempt:
                time.sleep(self.backoff_seconds * attempt)
            try:
                r = self._session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                log.warning("ledger request failed url=%s attempt=%d error=%s", url, attempt + 1, e)
                continue

            if r.status_code == 404:
                return None
            if r.status_code >= 500:
                last_error = LedgerError(f"ledger returned {r.status_code}")
                log.warning("ledger request failed url=%s attempt=%d status=%d", url, attempt + 1, r.status_code)
                continue
            if r.status_code != 200:
                raise LedgerError(f"ledger returned {r.status_code} for {path}")
            try:
                return r.json()
            except ValueError as e:
                raise LedgerError(f"ledger returned invalid JSON for {path}") from e

        raise LedgerUnavailable(f"ledger unreachable after {self.retries + 1} attempts: {last_error}")

    def get_record(self, record_id: int) -> RecordFacts:
        data = self._get(f"/records/{int(record_id)}")
        if not data or int(data.get("id", 0)) == 0:
            raise RecordNotFound(record_id)
        return RecordFacts(
            record_id=int(data["id"]),
            owner=str(data["patient"]),
            hospital_id=int(data.get("hospitalId", 0)),
            content_hash=data.get("ipfsHash") or None,
        )

    def get_user(self, identity: str) -> UserFacts:
        data = self._get(f"/users/{_segment(identity)}")
        if not data:
            return UserFacts(identity=identity)
        return UserFacts(
            identity=identity,
            registered=bool(data.get("registered", False)),
            role=_role(data.get("role", 0)),
            hospital_id=int(data.get("hospitalId", 0)),
        )

    def is_consent_given(self, record_id: int, identity: str) -> bool:
        data = self._get(f"/records/{int(record_id)}/consents/{_segment(identity)}")
        return bool(data and data.get("given", False))

    def get_emergency_expiry(self, identity: str, record_id: int) -> int:
        data = self._get(f"/emergency-access/{_segment(identity)}/{int(record_id)}")
        if not data:
            return 0
        return int(data.get("expiresAt", 0))

    def find_record_by_content_hash(self, content_hash: str) -> Optional[int]:
        data = self._get("/records", params={"ipfsHash": content_hash})
        if not data or int(data.get("id", 0)) == 0:
            return None
        return int(data["id"])

    def ping(self) -> bool:
        try:
            r = self._session.get(f"{self.base_url}/health", timeout=self.timeout)
            return r.status_code == 200
        except requests.RequestException:
            return False
