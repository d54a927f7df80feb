import os
import sys

import pytest
from fastapi.testclient import TestClient

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configuration is read at import time; pin every backend to memory first
os.environ.update({
    "CUSTODY_ENV": "dev",
    "CUSTODY_STORE": "memory",
    "LEDGER_BACKEND": "memory",
    "LEDGER_FIXTURE_PATH": "",
    "BLOB_STORE": "memory",
    "CUSTODY_CIPHER_SCHEME": "aes-256-cbc",
    "CUSTODY_MAX_UPLOAD_BYTES": "4096",
    "CUSTODY_ADMIN_TOKEN": "test-admin-token",
    "LOG_LEVEL": "WARNING",
    "LOG_JSON": "false",
})

from record_custody import main
from record_custody.logging_config import AuditLogger


class RecordingAuditLogger(AuditLogger):
    """Audit logger that keeps every event in memory for assertions."""

    def __init__(self):
        super().__init__()
        self.events = []

    def _log(self, level, event_type, **kwargs):
        self.events.append((event_type, kwargs))

    def types(self):
        return [e for e, _ in self.events]


# Fresh in-memory gateway and rate limit counters for every test
@pytest.fixture(autouse=True)
def _fresh_gateway():
    main._startup()
    main.upload_limiter.reset()
    main.get_key_limiter.reset()
    yield


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def ledger():
    return main.GATEWAY.ledger


@pytest.fixture
def audit():
    return RecordingAuditLogger()
