"""
Error taxonomy for the record key custody service.

Every failure a caller can observe is one of these types. The API layer
maps them onto HTTP status codes; nothing else in the package raises
bare exceptions across a module boundary.
"""

from typing import Optional


class CustodyError(Exception):
    """Base class for all custody service errors."""

    code = "CUSTODY_ERROR"


# ============================================================
# Cipher Unit
# ============================================================

class CryptoFailure(CustodyError):
    """Randomness could not be obtained; the operation is aborted."""

    code = "CRYPTO_FAILURE"


class DecryptFailure(CustodyError):
    """Bad key, malformed blob, invalid padding or failed authentication."""

    code = "DECRYPT_FAILURE"


# ============================================================
# Key Custody Store
# ============================================================

class HandleConflict(CustodyError):
    """The target handle already holds key material."""

    code = "HANDLE_CONFLICT"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"handle already present: {handle}")


class KeyNotFound(CustodyError):
    """No key material is stored under the handle."""

    code = "KEY_NOT_FOUND"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"no key stored for handle: {handle}")


NotFound = KeyNotFound


class CustodyCorruption(CustodyError):
    """Sealed key material could not be opened with the configured sealer."""

    code = "CUSTODY_CORRUPTION"


# ============================================================
# Authorization
# ============================================================

class Forbidden(CustodyError):
    """Authorization denied. Carries no detail about which tier failed."""

    code = "NOT_AUTHORIZED"

    def __init__(self):
        super().__init__("not authorized")


# ============================================================
# External collaborators
# ============================================================

class LedgerError(CustodyError):
    """A ledger query failed."""

    code = "LEDGER_ERROR"


class LedgerUnavailable(LedgerError):
    """The ledger could not be reached after the configured retries."""

    code = "LEDGER_UNAVAILABLE"


class RecordNotFound(LedgerError):
    """The ledger has no record with the requested identifier."""

    code = "RECORD_NOT_FOUND"

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"record not found on ledger: {record_id}")


class BlobStoreError(CustodyError):
    code = "BLOB_STORE_ERROR"


class BlobNotFound(BlobStoreError):
    code = "BLOB_NOT_FOUND"

    def __init__(self, content_hash: str):
        self.content_hash = content_hash
        super().__init__(f"blob not found: {content_hash}")


class BlobStoreUnavailable(BlobStoreError):
    code = "BLOB_STORE_UNAVAILABLE"


# ============================================================
# Input validation
# ============================================================

class ValidationError(CustodyError):
    """Raised when input validation fails."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str, detail: Optional[str] = None):
        self.field = field
        self.message = message
        self.detail = detail
        super().__init__(f"{field}: {message}")
