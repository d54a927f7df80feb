"""
Authorization Evaluator tests.

Each class covers one tier or one failure path. The ledger is in-memory
and the clock is pinned so expiry checks are exact.
"""

import unittest

from record_custody.errors import LedgerUnavailable
from record_custody.evaluator import (
    DENIED, AuthorizationEvaluator, AuthorizationQuery, Tier,
)
from record_custody.ledger import InMemoryLedger, Role

NOW = 1_700_000_000
RECORD = 42
PATIENT = "0xA"


def make_ledger():
    ledger = InMemoryLedger()
    ledger.add_record(RECORD, owner=PATIENT, hospital_id=7, content_hash="QmRecord42")
    ledger.register_user(PATIENT, Role.PATIENT, hospital_id=0)
    return ledger


class CountingLedger(InMemoryLedger):
    """Counts tier queries so short-circuiting can be observed."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def get_user(self, identity):
        self.calls.append("get_user")
        return super().get_user(identity)

    def is_consent_given(self, record_id, identity):
        self.calls.append("is_consent_given")
        return super().is_consent_given(record_id, identity)

    def get_emergency_expiry(self, identity, record_id):
        self.calls.append("get_emergency_expiry")
        return super().get_emergency_expiry(identity, record_id)


class FailingLedger(InMemoryLedger):
    """Raises from one chosen query; everything else answers normally."""

    def __init__(self, failing, error=None):
        super().__init__()
        self.failing = failing
        self.error = error or LedgerUnavailable("ledger down")

    def _maybe_fail(self, name):
        if name == self.failing:
            raise self.error

    def get_record(self, record_id):
        self._maybe_fail("get_record")
        return super().get_record(record_id)

    def get_user(self, identity):
        self._maybe_fail("get_user")
        return super().get_user(identity)

    def is_consent_given(self, record_id, identity):
        self._maybe_fail("is_consent_given")
        return super().is_consent_given(record_id, identity)

    def get_emergency_expiry(self, identity, record_id):
        self._maybe_fail("get_emergency_expiry")
        return super().get_emergency_expiry(identity, record_id)


class EvaluatorTestCase(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.evaluator = AuthorizationEvaluator(self.ledger, clock=lambda: NOW)

    def check(self, requester, record_id=RECORD):
        return self.evaluator.evaluate(AuthorizationQuery(record_id=record_id, requester=requester))


class TestOwnerTier(EvaluatorTestCase):

    def test_patient_reads_own_record(self):
        result = self.check(PATIENT)
        self.assertTrue(result.allowed)
        self.assertEqual(result.tier, Tier.OWNER)

    def test_identity_match_is_case_insensitive(self):
        self.assertEqual(self.check("0xa").tier, Tier.OWNER)

    def test_owner_does_not_need_registration(self):
        ledger = InMemoryLedger()
        ledger.add_record(1, owner="0xC", hospital_id=7)
        result = AuthorizationEvaluator(ledger, clock=lambda: NOW).evaluate(
            AuthorizationQuery(record_id=1, requester="0xC"))
        self.assertEqual(result.tier, Tier.OWNER)


class TestSameHospitalTier(EvaluatorTestCase):

    def test_doctor_at_record_hospital(self):
        self.ledger.register_user("0xD", Role.DOCTOR, hospital_id=7)
        result = self.check("0xD")
        self.assertTrue(result.allowed)
        self.assertEqual(result.tier, Tier.SAME_HOSPITAL)

    def test_hospital_admin_at_record_hospital(self):
        self.ledger.register_user("0xE", Role.HOSPITAL_ADMIN, hospital_id=7)
        self.assertEqual(self.check("0xE").tier, Tier.SAME_HOSPITAL)

    def test_doctor_at_other_hospital_denied(self):
        self.ledger.register_user("0xD", Role.DOCTOR, hospital_id=8)
        self.assertEqual(self.check("0xD"), DENIED)

    def test_non_clinical_role_denied(self):
        self.ledger.register_user("0xF", Role.STAKEHOLDER, hospital_id=7)
        self.ledger.register_user("0x1", Role.PATIENT, hospital_id=7)
        self.assertEqual(self.check("0xF"), DENIED)
        self.assertEqual(self.check("0x1"), DENIED)

    def test_unregistered_requester_denied(self):
        self.assertEqual(self.check("0xD"), DENIED)


class TestConsentTier(EvaluatorTestCase):

    def test_consent_grants_access(self):
        self.ledger.give_consent(RECORD, "0xB")
        result = self.check("0xB")
        self.assertTrue(result.allowed)
        self.assertEqual(result.tier, Tier.CONSENT)

    def test_consent_is_per_record(self):
        self.ledger.add_record(43, owner=PATIENT, hospital_id=7)
        self.ledger.give_consent(43, "0xB")
        self.assertEqual(self.check("0xB"), DENIED)

    def test_revoked_consent_denied(self):
        self.ledger.give_consent(RECORD, "0xB")
        self.ledger.revoke_consent(RECORD, "0xB")
        self.assertEqual(self.check("0xB"), DENIED)


class TestEmergencyTier(EvaluatorTestCase):

    def test_unexpired_grant(self):
        self.ledger.grant_emergency("0xB", RECORD, NOW + 3600)
        result = self.check("0xB")
        self.assertTrue(result.allowed)
        self.assertEqual(result.tier, Tier.EMERGENCY)

    def test_expired_grant_denied(self):
        self.ledger.grant_emergency("0xB", RECORD, NOW - 1)
        self.assertEqual(self.check("0xB"), DENIED)

    def test_grant_ending_now_denied(self):
        self.ledger.grant_emergency("0xB", RECORD, NOW)
        self.assertEqual(self.check("0xB"), DENIED)


class TestTierPriority(EvaluatorTestCase):

    def test_owner_wins_over_consent(self):
        self.ledger.give_consent(RECORD, PATIENT)
        self.assertEqual(self.check(PATIENT).tier, Tier.OWNER)

    def test_same_hospital_wins_over_consent_and_emergency(self):
        self.ledger.register_user("0xD", Role.DOCTOR, hospital_id=7)
        self.ledger.give_consent(RECORD, "0xD")
        self.ledger.grant_emergency("0xD", RECORD, NOW + 3600)
        self.assertEqual(self.check("0xD").tier, Tier.SAME_HOSPITAL)

    def test_consent_wins_over_emergency(self):
        self.ledger.give_consent(RECORD, "0xB")
        self.ledger.grant_emergency("0xB", RECORD, NOW + 3600)
        self.assertEqual(self.check("0xB").tier, Tier.CONSENT)

    def test_later_tiers_not_queried_after_match(self):
        ledger = CountingLedger()
        ledger.add_record(RECORD, owner=PATIENT, hospital_id=7)
        ledger.give_consent(RECORD, "0xB")
        evaluator = AuthorizationEvaluator(ledger, clock=lambda: NOW)

        evaluator.evaluate(AuthorizationQuery(RECORD, PATIENT))
        self.assertEqual(ledger.calls, [])

        evaluator.evaluate(AuthorizationQuery(RECORD, "0xB"))
        self.assertEqual(ledger.calls, ["get_user", "is_consent_given"])


class TestFailClosed(EvaluatorTestCase):

    def test_missing_record_denied(self):
        self.assertEqual(self.check(PATIENT, record_id=999), DENIED)

    def test_record_lookup_failure_denied(self):
        ledger = FailingLedger("get_record")
        result = AuthorizationEvaluator(ledger).evaluate(AuthorizationQuery(RECORD, PATIENT))
        self.assertFalse(result.allowed)
        self.assertEqual(result.tier, Tier.NONE)
        self.assertIn("ledger down", result.ledger_error)

    def failing_evaluator(self, failing):
        ledger = FailingLedger(failing, error=RuntimeError("rpc timeout"))
        ledger.add_record(RECORD, owner=PATIENT, hospital_id=7)
        ledger.register_user("0xD", Role.DOCTOR, hospital_id=7)
        ledger.give_consent(RECORD, "0xB")
        ledger.grant_emergency("0xE", RECORD, NOW + 3600)
        return AuthorizationEvaluator(ledger, clock=lambda: NOW)

    def test_user_lookup_failure_denies_every_later_tier(self):
        evaluator = self.failing_evaluator("get_user")
        for requester in ("0xD", "0xB", "0xE"):
            result = evaluator.evaluate(AuthorizationQuery(RECORD, requester))
            self.assertFalse(result.allowed, requester)
            self.assertIsNotNone(result.ledger_error)

    def test_consent_lookup_failure_denies(self):
        evaluator = self.failing_evaluator("is_consent_given")
        self.assertFalse(evaluator.evaluate(AuthorizationQuery(RECORD, "0xB")).allowed)
        self.assertFalse(evaluator.evaluate(AuthorizationQuery(RECORD, "0xE")).allowed)
        # tiers before the failing query still decide
        self.assertEqual(evaluator.evaluate(AuthorizationQuery(RECORD, "0xD")).tier, Tier.SAME_HOSPITAL)

    def test_emergency_lookup_failure_denies(self):
        evaluator = self.failing_evaluator("get_emergency_expiry")
        self.assertFalse(evaluator.evaluate(AuthorizationQuery(RECORD, "0xE")).allowed)
        self.assertEqual(evaluator.evaluate(AuthorizationQuery(RECORD, "0xB")).tier, Tier.CONSENT)

    def test_owner_unaffected_by_tier_failures(self):
        ledger = FailingLedger("get_user")
        ledger.add_record(RECORD, owner=PATIENT, hospital_id=7)
        result = AuthorizationEvaluator(ledger).evaluate(AuthorizationQuery(RECORD, PATIENT))
        self.assertEqual(result.tier, Tier.OWNER)

    def test_denial_hides_ledger_error_from_comparison(self):
        result = AuthorizationEvaluator(FailingLedger("get_record")).evaluate(
            AuthorizationQuery(RECORD, PATIENT))
        self.assertEqual(result, DENIED)
        self.assertEqual(result.to_dict(), {"allowed": False, "tier": "None"})


if __name__ == "__main__":
    unittest.main()
