"""
Security module for the record key custody service.

Provides input validation and log sanitization.
"""

import re
from typing import Any, Dict, Iterable, Optional

from .cipher import KEY_SIZE
from .errors import ValidationError


# ============================================================
# Input Validation
# ============================================================

HEX_PATTERN = re.compile(r'^[a-fA-F0-9]+$')
IDENTITY_PATTERN = re.compile(r'^[A-Za-z0-9_:-]{1,128}$')
CONTENT_HASH_PATTERN = re.compile(r'^[A-Za-z0-9]{1,128}$')
HANDLE_PATTERN = re.compile(r'^(cid:[A-Za-z0-9]{1,128}|record:[0-9]{1,20})$')

# Ledger record ids are uint256; anything above this is not a real record
MAX_RECORD_ID = 2 ** 256 - 1


def validate_identity(value: str, field_name: str = "account") -> str:
    """
    Validate a requester identity (e.g. an account address).

    Returns:
        The stripped identity, case preserved

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip()
    if not IDENTITY_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_content_hash(value: str, field_name: str = "content_handle") -> str:
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip()
    if not CONTENT_HASH_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_handle(value: str) -> str:
    """Validate a namespaced custody handle (``cid:...`` or ``record:N``)."""
    if not isinstance(value, str) or not HANDLE_PATTERN.match(value):
        raise ValidationError("handle", "must be cid:<hash> or record:<id>")
    return value


def validate_record_id(value: Any, field_name: str = "record_id") -> int:
    """
    Validate that a value is a positive record identifier.

    Raises:
        ValidationError: If validation fails
    """
    try:
        int_value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be an integer")

    if int_value <= 0:
        raise ValidationError(field_name, "must be positive")

    if int_value > MAX_RECORD_ID:
        raise ValidationError(field_name, "out of range")

    return int_value


def validate_key_hex(value: str, field_name: str = "key") -> bytes:
    """
    Validate hex-encoded key material and return the raw bytes.

    Raises:
        ValidationError: If not exactly 32 bytes of hex
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip().lower()
    if not HEX_PATTERN.match(value) or len(value) != KEY_SIZE * 2:
        raise ValidationError(field_name, f"must be {KEY_SIZE * 2} hex characters")
    return bytes.fromhex(value)


def validate_payload_size(size: int, max_bytes: int) -> int:
    if size <= 0:
        raise ValidationError("file", "is empty")
    if size > max_bytes:
        raise ValidationError("file", f"must not exceed {max_bytes} bytes")
    return size


# ============================================================
# Log Redaction
# ============================================================

SENSITIVE_FIELDS = frozenset({"key", "material", "master_key_b64", "admin_token", "x-admin-token"})


def _redact(value: Any, sensitive: frozenset) -> Any:
    if isinstance(value, dict):
        return sanitize_for_logging(value, sensitive)
    if isinstance(value, list):
        return [_redact(v, sensitive) for v in value]
    return value


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Copy of ``data`` with sensitive fields (matched case-insensitively,
    at any depth) replaced by ``"[REDACTED]"``.
    """
    sensitive = SENSITIVE_FIELDS if sensitive_fields is None else frozenset(f.lower() for f in sensitive_fields)
    return {
        k: "[REDACTED]" if k.lower() in sensitive else _redact(v, sensitive)
        for k, v in data.items()
    }
