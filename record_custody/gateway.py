"""
Gateway module for the record key custody service.

Composes the Cipher Unit, Key Custody Store, Authorization Evaluator,
ledger client and blob store into the operations the API exposes.

Per-upload state machine (no transition back)::

    Encrypted(handle=cid:<hash>) --associate--> Associated(handle=record:<id>)

Ledger queries happen only inside authorization, never while a store
operation is in progress, so a slow ledger cannot stall key storage.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .blobstore import BlobStore
from .cipher import BlobCipher
from .custody import KeyCustodyStore, KeyRecord, content_handle, record_handle
from .errors import BlobNotFound, Forbidden, KeyNotFound
from .evaluator import AuthorizationEvaluator, AuthorizationQuery, AuthorizationResult
from .ledger import LedgerClient
from .logging_config import AuditLogger, audit_log
from .security import validate_payload_size
from .util import key_to_hex


DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class UploadReceipt:
    content_hash: str
    size: int
    scheme: str

    def to_dict(self) -> Dict[str, Any]:
        return {"content_handle": self.content_hash, "size": self.size, "scheme": self.scheme}


class CustodyGateway:
    """
    Upload, associate and key-retrieval flows over injected collaborators.

    Every operation either completes or raises; none leaves partial state
    beyond what its docstring names.
    """

    def __init__(
        self,
        store: KeyCustodyStore,
        blob_store: BlobStore,
        ledger: LedgerClient,
        cipher: Optional[BlobCipher] = None,
        evaluator: Optional[AuthorizationEvaluator] = None,
        audit: Optional[AuditLogger] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    ):
        self.store = store
        self.blob_store = blob_store
        self.ledger = ledger
        self.cipher = cipher or BlobCipher()
        self.evaluator = evaluator or AuthorizationEvaluator(ledger)
        self.audit = audit or audit_log
        self.max_upload_bytes = max_upload_bytes

    # ============================================================
    # Upload / Associate
    # ============================================================

    def upload(self, data: bytes) -> UploadReceipt:
        """
        Encrypt a payload, hand the ciphertext to the blob store and keep
        its key under the returned content handle.

        The key is stored last, so a blob-store failure stores nothing.

        Raises:
            ValidationError: Empty or oversized payload
            BlobStoreError: Blob store unreachable
            HandleConflict: The content handle already holds a key
            CryptoFailure: Randomness unavailable
        """
        validate_payload_size(len(data), self.max_upload_bytes)
        blob, key = self.cipher.encrypt(data)
        content_hash = self.blob_store.store(blob.to_bytes())

        handle = content_handle(content_hash)
        self.store.put(handle, key)
        self.audit.key_stored(handle, len(data), self.cipher.scheme.value)
        return UploadReceipt(content_hash=content_hash, size=len(data), scheme=self.cipher.scheme.value)

    def associate(self, content_hash: str, record_id: int) -> KeyRecord:
        """
        Move a key from its content handle to its permanent record handle
        once the ledger has committed the upload.

        Raises:
            KeyNotFound: Nothing was uploaded under ``content_hash``
            HandleConflict: The record already has a key
        """
        old, new = content_handle(content_hash), record_handle(record_id)
        rec = self.store.rekey(old, new)
        self.audit.key_associated(old, new)
        return rec

    # ============================================================
    # Retrieval
    # ============================================================

    def authorize(self, record_id: int, requester: str) -> AuthorizationResult:
        """
        Evaluate access and audit the outcome.

        Raises:
            Forbidden: On any denial, including ledger failures
        """
        result = self.evaluator.evaluate(AuthorizationQuery(record_id=record_id, requester=requester))
        if result.ledger_error:
            self.audit.ledger_error(record_id, requester, result.ledger_error)
        if not result.allowed:
            self.audit.key_withheld(record_id, requester, "NOT_AUTHORIZED")
            raise Forbidden()
        return result

    def _associated_key(self, record_id: int, requester: str) -> bytes:
        try:
            return self.store.get(record_handle(record_id))
        except KeyNotFound:
            self.audit.key_withheld(record_id, requester, "KEY_NOT_ASSOCIATED")
            raise

    def retrieve_key(self, record_id: int, requester: str) -> str:
        """
        Return the record's key, hex-encoded, to an authorized requester.

        Raises:
            Forbidden: Requester is not authorized (or the ledger failed)
            KeyNotFound: The record's key was never associated
        """
        result = self.authorize(record_id, requester)
        material = self._associated_key(record_id, requester)
        self.audit.key_released(record_id, requester, result.tier.value)
        return key_to_hex(material)

    def download(self, record_id: int, requester: str) -> bytes:
        """
        Fetch and decrypt a record's blob for an authorized requester.

        The blob is located through the content hash the ledger holds for
        the record.

        Raises:
            Forbidden, KeyNotFound: As for ``retrieve_key``
            BlobNotFound: The ledger has no content hash or the blob is gone
            LedgerError, BlobStoreError: Collaborator failures
            DecryptFailure: The blob does not decrypt under the stored key
        """
        result = self.authorize(record_id, requester)
        material = self._associated_key(record_id, requester)

        record = self.ledger.get_record(record_id)
        if not record.content_hash:
            raise BlobNotFound(f"record:{record_id}")
        plaintext = self.cipher.decrypt(self.blob_store.fetch(record.content_hash), material)
        self.audit.key_released(record_id, requester, result.tier.value)
        return plaintext

    # ============================================================
    # Administration
    # ============================================================

    def overwrite(self, handle: str, material: bytes) -> KeyRecord:
        """Replace the key under an existing handle. Raises KeyNotFound."""
        rec = self.store.overwrite(handle, material)
        self.audit.key_overwritten(handle)
        return rec

    def purge(self, handle: str, reason: str = "administrative purge") -> None:
        """Delete a key. Blobs encrypted under it become unrecoverable."""
        self.store.delete(handle)
        self.audit.key_purged(handle, reason)

    def health(self) -> Dict[str, Any]:
        ledger_ok = self.ledger.ping()
        blob_ok = self.blob_store.ping()
        return {
            "status": "ok" if ledger_ok and blob_ok else "degraded",
            "keys": self.store.count(),
            "ledger": "ok" if ledger_ok else "unreachable",
            "blob_store": "ok" if blob_ok else "unreachable",
        }
