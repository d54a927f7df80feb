"""
Configuration module for the record key custody service.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CUSTODY_ENV", "dev")  # dev|stage|prod

# Key custody store
STORE_BACKEND = os.getenv("CUSTODY_STORE", "memory")  # memory|sqlite
DB_PATH = os.getenv("CUSTODY_DB_PATH", "custody.db")

# Sealing of keys at rest (sqlite store only)
SEALER_TYPE = os.getenv("CUSTODY_SEALER", "file")  # file|aws_kms
MASTER_KEY_PATH = os.getenv("CUSTODY_MASTER_KEY_PATH", "secrets/custody_master_key.json")
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")

# Ledger
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # memory|http
LEDGER_URL = os.getenv("LEDGER_URL", "http://127.0.0.1:8545")
LEDGER_FIXTURE_PATH = os.getenv("LEDGER_FIXTURE_PATH", "")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "5"))
LEDGER_RETRIES = int(os.getenv("LEDGER_RETRIES", "2"))

# Blob store
BLOB_STORE = os.getenv("BLOB_STORE", "memory")  # memory|ipfs
IPFS_API_URL = os.getenv("IPFS_API_URL", "http://127.0.0.1:5001")
IPFS_TIMEOUT_SECONDS = float(os.getenv("IPFS_TIMEOUT_SECONDS", "30"))

# Encryption
CIPHER_SCHEME = os.getenv("CUSTODY_CIPHER_SCHEME", "aes-256-cbc")
MAX_UPLOAD_BYTES = int(os.getenv("CUSTODY_MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

# Rate limits (requests per minute)
UPLOAD_RPM = int(os.getenv("UPLOAD_RPM", "60"))
GET_KEY_RPM = int(os.getenv("GET_KEY_RPM", "120"))

# Orphan reconciliation
ORPHAN_MAX_AGE_SECONDS = int(os.getenv("CUSTODY_ORPHAN_MAX_AGE_SECONDS", str(24 * 3600)))

# Admin endpoints are disabled while unset
ADMIN_TOKEN = os.getenv("CUSTODY_ADMIN_TOKEN", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that the files the configured backends need exist.
    Returns dict of name -> exists.
    """
    paths = {}

    if STORE_BACKEND == "sqlite" and SEALER_TYPE == "file":
        paths["master_key"] = MASTER_KEY_PATH

    if LEDGER_BACKEND == "memory" and LEDGER_FIXTURE_PATH:
        paths["ledger_fixture"] = LEDGER_FIXTURE_PATH

    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CUSTODY_DEBUG", "").lower() in ("1", "true", "yes")
