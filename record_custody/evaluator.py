"""
Authorization Evaluator for the record key custody service.

Decides whether a requester may receive a record's key by checking four
tiers against ledger facts, in strict priority order:

    1. Owner         requester is the record's patient
    2. SameHospital  registered Doctor/HospitalAdmin at the record's hospital
    3. Consent       the patient granted consent to the requester
    4. Emergency     an emergency grant for (requester, record) is unexpired

The first tier that matches wins and later tiers are not queried; the
winning tier is what audit logs report.

Fail-closed: a missing record, or any error raised while querying the
ledger, yields ``{allowed: False, tier: None}``. Errors are never surfaced
to the caller as a distinct outcome.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import RecordNotFound
from .ledger import LedgerClient, RecordFacts, Role
from .util import now_epoch


log = logging.getLogger("record_custody.evaluator")


class Tier(str, Enum):
    """Policy rule that justified an authorization decision."""
    OWNER = "Owner"
    SAME_HOSPITAL = "SameHospital"
    CONSENT = "Consent"
    EMERGENCY = "Emergency"
    NONE = "None"


CLINICAL_ROLES = frozenset({Role.DOCTOR, Role.HOSPITAL_ADMIN})


@dataclass(frozen=True)
class AuthorizationQuery:
    record_id: int
    requester: str


@dataclass(frozen=True)
class AuthorizationResult:
    """
    Outcome of one evaluation.

    ``ledger_error`` is for internal audit only and is excluded from
    equality so results compare on the decision alone.
    """
    allowed: bool
    tier: Tier
    ledger_error: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "tier": self.tier.value}


DENIED = AuthorizationResult(allowed=False, tier=Tier.NONE)


class AuthorizationEvaluator:
    """
    Four-tier record access policy.

    Never mutates the ledger. Two calls with identical arguments may differ
    because ledger facts and the clock move between them.
    """

    def __init__(self, ledger: LedgerClient, clock: Callable[[], int] = now_epoch):
        self.ledger = ledger
        self.clock = clock

    def evaluate(self, query: AuthorizationQuery) -> AuthorizationResult:
        try:
            record = self.ledger.get_record(query.record_id)
        except RecordNotFound:
            return DENIED
        except Exception as e:
            return self._fail_closed(query, e)

        checks = (
            (Tier.OWNER, self._is_owner),
            (Tier.SAME_HOSPITAL, self._is_same_hospital),
            (Tier.CONSENT, self._has_consent),
            (Tier.EMERGENCY, self._has_emergency_access),
        )
        try:
            for tier, check in checks:
                if check(record, query):
                    return AuthorizationResult(allowed=True, tier=tier)
        except Exception as e:
            return self._fail_closed(query, e)

        return DENIED

    def _fail_closed(self, query: AuthorizationQuery, error: Exception) -> AuthorizationResult:
        log.error(
            "ledger query failed; denying record_id=%s requester=%s error=%r",
            query.record_id, query.requester, error
        )
        return AuthorizationResult(allowed=False, tier=Tier.NONE, ledger_error=repr(error))

    # ============================================================
    # Tiers
    # ============================================================

    def _is_owner(self, record: RecordFacts, query: AuthorizationQuery) -> bool:
        return query.requester.lower() == record.owner.lower()

    def _is_same_hospital(self, record: RecordFacts, query: AuthorizationQuery) -> bool:
        user = self.ledger.get_user(query.requester)
        return (
            user.registered
            and user.role in CLINICAL_ROLES
            and user.hospital_id == record.hospital_id
        )

    def _has_consent(self, record: RecordFacts, query: AuthorizationQuery) -> bool:
        return bool(self.ledger.is_consent_given(record.record_id, query.requester))

    def _has_emergency_access(self, record: RecordFacts, query: AuthorizationQuery) -> bool:
        expiry = int(self.ledger.get_emergency_expiry(query.requester, record.record_id) or 0)
        return expiry > self.clock()
