"""
Key sealing module for the record key custody service.

Provides providers that encrypt record keys at rest before the durable
custody store writes them, with support for a file-based master key
(NaCl SecretBox) and AWS KMS.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Optional

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from .errors import CustodyCorruption
from .util import b64d, b64e


class KeySealer(ABC):
    """Abstract interface for sealing key material at rest."""

    @abstractmethod
    def seal(self, material: bytes) -> bytes:
        """
        Encrypt key material for storage.

        Args:
            material: Raw 32-byte record key

        Returns:
            Opaque sealed bytes
        """
        pass

    @abstractmethod
    def unseal(self, sealed: bytes) -> bytes:
        """
        Recover key material from sealed bytes.

        Raises:
            CustodyCorruption: If the sealed value cannot be opened
        """
        pass

    @abstractmethod
    def get_kid(self) -> str:
        """Get the ID of the master key used for sealing."""
        pass


class SecretBoxSealer(KeySealer):
    """
    XSalsa20-Poly1305 sealing under a 32-byte master key.

    Tampered or foreign sealed values fail authentication on unseal.
    """

    def __init__(self, master_key: bytes, kid: str = "local-master-01"):
        if len(master_key) != SecretBox.KEY_SIZE:
            raise ValueError(f"master key must be {SecretBox.KEY_SIZE} bytes")
        self._box = SecretBox(master_key)
        self._kid = kid

    def seal(self, material: bytes) -> bytes:
        return bytes(self._box.encrypt(material))

    def unseal(self, sealed: bytes) -> bytes:
        try:
            return self._box.decrypt(sealed)
        except CryptoError as e:
            raise CustodyCorruption(f"sealed key rejected by master key {self._kid}") from e

    def get_kid(self) -> str:
        return self._kid


class FileSecretBoxSealer(SecretBoxSealer):
    """
    SecretBox sealer whose master key is loaded from a JSON key file:
    ``{"kid": "...", "master_key_b64": "..."}``.
    """

    def __init__(self, master_key_path: str):
        with open(master_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        super().__init__(b64d(raw["master_key_b64"]), kid=raw["kid"])


def generate_master_key_file(path: str, kid: str = "local-master-01") -> str:
    """Write a fresh master key file and return its kid."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"kid": kid, "master_key_b64": b64e(nacl_random(SecretBox.KEY_SIZE))}, f, indent=2)
    return kid


class AwsKmsSealer(KeySealer):
    """
    AWS KMS sealing provider.

    Requires a SYMMETRIC_DEFAULT KMS key. Record keys are 32 bytes, well
    under the 4 KiB direct Encrypt limit, so no data-key envelope is used.

    Docs: https://docs.aws.amazon.com/kms/latest/APIReference/API_Encrypt.html
    """

    def __init__(self, kms_key_id: str, region: Optional[str] = None, kid: Optional[str] = None):
        self._kms_key_id = kms_key_id
        self._region = region
        self._kid = kid or kms_key_id
        self._client = None
        self._lock = threading.RLock()

    def _get_client(self):
        """Lazy-load boto3 client."""
        with self._lock:
            if self._client is None:
                try:
                    import boto3
                except ImportError as e:
                    raise RuntimeError(
                        "boto3 required for AWS KMS sealing. Install with: pip install record-custody[aws]"
                    ) from e
                self._client = boto3.client("kms", region_name=self._region)
            return self._client

    def seal(self, material: bytes) -> bytes:
        resp = self._get_client().encrypt(KeyId=self._kms_key_id, Plaintext=material)
        return resp["CiphertextBlob"]

    def unseal(self, sealed: bytes) -> bytes:
        from botocore.exceptions import ClientError

        try:
            resp = self._get_client().decrypt(KeyId=self._kms_key_id, CiphertextBlob=sealed)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("InvalidCiphertextException", "IncorrectKeyException"):
                raise CustodyCorruption(f"KMS rejected sealed key: {code}") from e
            raise
        return resp["Plaintext"]

    def get_kid(self) -> str:
        return self._kid


def get_sealer(
    sealer_type: str = "file",
    master_key_path: str = "secrets/custody_master_key.json",
    kms_key_id: Optional[str] = None,
    kms_region: Optional[str] = None
) -> KeySealer:
    """
    Factory function to create the appropriate sealer.

    Args:
        sealer_type: "file" or "aws_kms"
        master_key_path: Path to master key JSON (for file sealer)
        kms_key_id: AWS KMS key ID (for KMS sealer)
        kms_region: AWS region (for KMS sealer)
    """
    if sealer_type == "aws_kms":
        if not kms_key_id:
            raise ValueError("AWS_KMS_KEY_ID required for aws_kms sealer")
        return AwsKmsSealer(kms_key_id=kms_key_id, region=kms_region)

    return FileSecretBoxSealer(master_key_path)
