"""
Record Key Custody Service

Holds the symmetric keys that protect encrypted medical records and hands
them out only to requesters the ledger says may read the record.

A record's key lives in exactly one place for its whole life:

    upload     key stored under cid:<content hash>
    associate  key moved to record:<record id> once the ledger committed it
    get-key    released under the first matching tier:
               Owner -> SameHospital -> Consent -> Emergency

Authorization fails closed: if the ledger cannot answer, the key is withheld.

Usage:
    from record_custody import (
        CustodyGateway,
        InMemoryKeyCustodyStore,
        InMemoryBlobStore,
        InMemoryLedger,
        Role,
    )

    ledger = InMemoryLedger()
    gateway = CustodyGateway(InMemoryKeyCustodyStore(), InMemoryBlobStore(), ledger)

    receipt = gateway.upload(b"scan bytes")
    ledger.add_record(1, owner="0xA", hospital_id=7, content_hash=receipt.content_hash)
    gateway.associate(receipt.content_hash, 1)

    key_hex = gateway.retrieve_key(1, "0xA")

Run the HTTP service with ``uvicorn record_custody.main:app``.
"""

__version__ = "0.1.0"

from .blobstore import BlobStore, InMemoryBlobStore, IpfsBlobStore
from .cipher import BlobCipher, CipherScheme, EncryptedBlob, generate_key
from .custody import (
    InMemoryKeyCustodyStore,
    KeyCustodyStore,
    KeyPhase,
    KeyRecord,
    content_handle,
    record_handle,
)
from .db import SqliteKeyCustodyStore
from .errors import (
    BlobNotFound,
    BlobStoreError,
    CryptoFailure,
    CustodyCorruption,
    CustodyError,
    DecryptFailure,
    Forbidden,
    HandleConflict,
    KeyNotFound,
    LedgerError,
    LedgerUnavailable,
    NotFound,
    RecordNotFound,
    ValidationError,
)
from .evaluator import AuthorizationEvaluator, AuthorizationQuery, AuthorizationResult, Tier
from .gateway import CustodyGateway, UploadReceipt
from .ledger import HttpLedgerClient, InMemoryLedger, LedgerClient, RecordFacts, Role, UserFacts
from .reconciliation import ReconciliationReport, sweep_orphans
from .sealing import AwsKmsSealer, FileSecretBoxSealer, KeySealer, SecretBoxSealer

__all__ = [
    "__version__",
    "BlobStore", "InMemoryBlobStore", "IpfsBlobStore",
    "BlobCipher", "CipherScheme", "EncryptedBlob", "generate_key",
    "InMemoryKeyCustodyStore", "KeyCustodyStore", "KeyPhase", "KeyRecord",
    "content_handle", "record_handle",
    "SqliteKeyCustodyStore",
    "BlobNotFound", "BlobStoreError", "CryptoFailure", "CustodyCorruption",
    "CustodyError", "DecryptFailure", "Forbidden", "HandleConflict",
    "KeyNotFound", "LedgerError", "LedgerUnavailable", "NotFound",
    "RecordNotFound", "ValidationError",
    "AuthorizationEvaluator", "AuthorizationQuery", "AuthorizationResult", "Tier",
    "CustodyGateway", "UploadReceipt",
    "HttpLedgerClient", "InMemoryLedger", "LedgerClient", "RecordFacts", "Role", "UserFacts",
    "ReconciliationReport", "sweep_orphans",
    "AwsKmsSealer", "FileSecretBoxSealer", "KeySealer", "SecretBoxSealer",
]
