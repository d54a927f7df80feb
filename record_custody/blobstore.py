"""
Blob store module for the record key custody service.

The blob store receives opaque ciphertext and returns it by content hash.
The content hash is treated as an arbitrary stable identifier.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict

import requests

from .errors import BlobNotFound, BlobStoreUnavailable
from .util import sha256_hex


log = logging.getLogger("record_custody.blobstore")


class BlobStore(ABC):
    """Abstract interface to a content-addressable blob store."""

    @abstractmethod
    def store(self, data: bytes) -> str:
        """Store bytes and return their content hash."""
        pass

    @abstractmethod
    def fetch(self, content_hash: str) -> bytes:
        """Return stored bytes. Raises BlobNotFound."""
        pass

    def ping(self) -> bool:
        return True


class InMemoryBlobStore(BlobStore):
    """In-memory content-addressed store keyed by SHA-256 hex, for development/testing."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, data: bytes) -> str:
        content_hash = sha256_hex(data)
        with self._lock:
            self._blobs[content_hash] = bytes(data)
        return content_hash

    def fetch(self, content_hash: str) -> bytes:
        with self._lock:
            data = self._blobs.get(content_hash)
        if data is None:
            raise BlobNotFound(content_hash)
        return data


class IpfsBlobStore(BlobStore):
    """
    IPFS HTTP API client.

    Docs: https://docs.ipfs.tech/reference/kubo/rpc/
    """

    def __init__(self, api_url: str = "http://127.0.0.1:5001", timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def store(self, data: bytes) -> str:
        try:
            r = self._session.post(
                f"{self.api_url}/api/v0/add",
                params={"pin": "true"},
                files={"file": ("blob", data, "application/octet-stream")},
                timeout=self.timeout,
            )
            r.raise_for_status()
            content_hash = r.json()["Hash"]
        except (requests.RequestException, ValueError, KeyError) as e:
            raise BlobStoreUnavailable(f"IPFS add failed: {e}") from e
        log.info("blob stored content_hash=%s bytes=%d", content_hash, len(data))
        return content_hash

    def fetch(self, content_hash: str) -> bytes:
        try:
            r = self._session.post(
                f"{self.api_url}/api/v0/cat",
                params={"arg": content_hash},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BlobStoreUnavailable(f"IPFS cat failed: {e}") from e
        if r.status_code == 500 and "not found" in r.text.lower():
            raise BlobNotFound(content_hash)
        if r.status_code != 200:
            raise BlobStoreUnavailable(f"IPFS cat returned {r.status_code}")
        return r.content

    def ping(self) -> bool:
        try:
            r = self._session.post(f"{self.api_url}/api/v0/id", timeout=self.timeout)
            return r.status_code == 200
        except requests.RequestException:
            return False
