import time

import pytest

from record_custody.blobstore import InMemoryBlobStore
from record_custody.custody import InMemoryKeyCustodyStore
from record_custody.errors import KeyNotFound, LedgerUnavailable
from record_custody.gateway import CustodyGateway
from record_custody.ledger import InMemoryLedger
from record_custody.reconciliation import sweep_orphans

LATER = time.time() + 7200


class FlakyLedger(InMemoryLedger):
    def find_record_by_content_hash(self, content_hash):
        raise LedgerUnavailable("ledger down")


@pytest.fixture
def gateway(audit):
    return CustodyGateway(InMemoryKeyCustodyStore(), InMemoryBlobStore(), InMemoryLedger(), audit=audit)


def test_committed_orphan_is_associated(gateway):
    receipt = gateway.upload(b"scan")
    gateway.ledger.add_record(3, owner="0xA", hospital_id=7, content_hash=receipt.content_hash)

    report = sweep_orphans(gateway, max_age_seconds=3600, now=LATER)

    assert report.associated == [{"handle": "cid:" + receipt.content_hash, "record_id": 3}]
    assert report.purged == []
    assert gateway.retrieve_key(3, "0xA")


def test_uncommitted_orphan_is_purged(gateway, audit):
    receipt = gateway.upload(b"abandoned")

    report = sweep_orphans(gateway, max_age_seconds=3600, now=LATER)

    assert report.purged == ["cid:" + receipt.content_hash]
    assert gateway.store.count() == 0
    assert audit.types()[-2:] == ["KEY_PURGED", "RECONCILIATION_COMPLETED"]


def test_recent_uploads_are_left_alone(gateway):
    gateway.upload(b"in flight")
    report = sweep_orphans(gateway, max_age_seconds=3600)
    assert report.scanned == 0
    assert gateway.store.count() == 1


def test_associated_keys_are_not_scanned(gateway):
    receipt = gateway.upload(b"done")
    gateway.associate(receipt.content_hash, 1)
    report = sweep_orphans(gateway, max_age_seconds=0, now=LATER)
    assert report.scanned == 0
    assert gateway.store.get("record:1")


def test_ledger_error_keeps_key(audit):
    gateway = CustodyGateway(InMemoryKeyCustodyStore(), InMemoryBlobStore(), FlakyLedger(), audit=audit)
    receipt = gateway.upload(b"scan")

    report = sweep_orphans(gateway, max_age_seconds=3600, now=LATER)

    assert report.kept == [{"handle": "cid:" + receipt.content_hash, "reason": "ledger_error"}]
    assert gateway.store.count() == 1


def test_occupied_record_handle_keeps_key(gateway):
    first = gateway.upload(b"first")
    second = gateway.upload(b"second")
    gateway.associate(first.content_hash, 5)
    gateway.ledger.add_record(5, owner="0xA", hospital_id=7, content_hash=second.content_hash)

    report = sweep_orphans(gateway, max_age_seconds=3600, now=LATER)

    assert report.kept == [{"handle": "cid:" + second.content_hash, "reason": "record_handle_occupied"}]
    assert gateway.store.get("cid:" + second.content_hash)


def test_dry_run_changes_nothing(gateway):
    committed = gateway.upload(b"scan")
    gateway.upload(b"abandoned")
    gateway.ledger.add_record(3, owner="0xA", hospital_id=7, content_hash=committed.content_hash)

    report = sweep_orphans(gateway, max_age_seconds=3600, now=LATER, dry_run=True)

    assert len(report.associated) == 1
    assert len(report.purged) == 1
    assert gateway.store.count() == 2
    with pytest.raises(KeyNotFound):
        gateway.store.get("record:3")
    assert report.to_dict()["scanned"] == 2
