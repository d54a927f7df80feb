"""
Cipher Unit for the record key custody service.

Encrypts record blobs under a fresh per-upload key and produces a
self-describing ciphertext that carries its own nonce.

Two schemes are supported:

* ``aes-256-cbc`` (default): ``nonce[16] || ciphertext`` with PKCS7
  padding. No integrity protection; a corrupted but well-formed blob can
  decrypt to garbage without error.
* ``aes-256-gcm``: ``b"RCX2" || nonce[12] || ciphertext || tag[16]``.
  Decryption fails closed on any modification.
"""

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoFailure, DecryptFailure


KEY_SIZE = 32
CBC_NONCE_SIZE = 16
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16
AEAD_MAGIC = b"RCX2"


class CipherScheme(str, Enum):
    """Wire formats understood by the Cipher Unit."""
    AES_256_CBC = "aes-256-cbc"
    AES_256_GCM = "aes-256-gcm"


def _random_bytes(n: int) -> bytes:
    try:
        return secrets.token_bytes(n)
    except (OSError, NotImplementedError) as e:
        raise CryptoFailure("entropy source unavailable") from e


def generate_key() -> bytes:
    """Return a fresh random 32-byte symmetric key."""
    return _random_bytes(KEY_SIZE)


@dataclass(frozen=True)
class EncryptedBlob:
    """
    Ciphertext plus the nonce it was produced with.

    Immutable once produced; the serialized form is what the blob store
    receives.
    """
    nonce: bytes
    ciphertext: bytes
    scheme: CipherScheme = CipherScheme.AES_256_CBC

    def to_bytes(self) -> bytes:
        if self.scheme == CipherScheme.AES_256_GCM:
            return AEAD_MAGIC + self.nonce + self.ciphertext
        return self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes, scheme: Optional[CipherScheme] = None) -> "EncryptedBlob":
        """
        Parse a serialized blob.

        Args:
            data: Serialized blob as stored in the blob store
            scheme: Expected scheme; detected from the magic prefix when omitted

        Raises:
            DecryptFailure: If the blob is too short for its scheme
        """
        if scheme is None:
            scheme = CipherScheme.AES_256_GCM if data.startswith(AEAD_MAGIC) else CipherScheme.AES_256_CBC
        scheme = CipherScheme(scheme)

        if scheme == CipherScheme.AES_256_GCM:
            if not data.startswith(AEAD_MAGIC):
                raise DecryptFailure("missing authenticated blob header")
            body = data[len(AEAD_MAGIC):]
            if len(body) < GCM_NONCE_SIZE + GCM_TAG_SIZE:
                raise DecryptFailure("blob too short")
            return cls(body[:GCM_NONCE_SIZE], body[GCM_NONCE_SIZE:], scheme)

        if len(data) < CBC_NONCE_SIZE * 2:
            raise DecryptFailure("blob too short")
        return cls(data[:CBC_NONCE_SIZE], data[CBC_NONCE_SIZE:], scheme)


class BlobCipher:
    """
    Per-upload symmetric encryption.

    A new key and nonce are drawn on every ``encrypt`` call; the key is the
    only secret returned to the caller.
    """

    def __init__(self, scheme: Union[CipherScheme, str] = CipherScheme.AES_256_CBC):
        self.scheme = CipherScheme(scheme)

    def encrypt(self, plaintext: bytes) -> Tuple[EncryptedBlob, bytes]:
        """
        Encrypt plaintext under a fresh key.

        Returns:
            Tuple of (EncryptedBlob, 32-byte key)

        Raises:
            CryptoFailure: If randomness cannot be obtained
        """
        key = generate_key()
        if self.scheme == CipherScheme.AES_256_GCM:
            nonce = _random_bytes(GCM_NONCE_SIZE)
            ct = AESGCM(key).encrypt(nonce, plaintext, None)
            return EncryptedBlob(nonce, ct, self.scheme), key

        nonce = _random_bytes(CBC_NONCE_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(nonce)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()
        return EncryptedBlob(nonce, ct, self.scheme), key

    def decrypt(
        self,
        blob: Union[EncryptedBlob, bytes],
        key: bytes,
        scheme: Optional[CipherScheme] = None
    ) -> bytes:
        """
        Decrypt a blob produced by ``encrypt``.

        Args:
            blob: Parsed blob or its serialized bytes
            key: The 32-byte key returned at encryption time
            scheme: Scheme of serialized input; detected when omitted

        Raises:
            DecryptFailure: Wrong key length, malformed blob, invalid padding,
                or (AEAD only) failed authentication
        """
        if not isinstance(blob, EncryptedBlob):
            blob = EncryptedBlob.from_bytes(bytes(blob), scheme)
        if len(key) != KEY_SIZE:
            raise DecryptFailure(f"key must be {KEY_SIZE} bytes")

        if blob.scheme == CipherScheme.AES_256_GCM:
            try:
                return AESGCM(key).decrypt(blob.nonce, blob.ciphertext, None)
            except InvalidTag as e:
                raise DecryptFailure("authentication failed") from e

        if len(blob.nonce) != CBC_NONCE_SIZE:
            raise DecryptFailure("nonce must be 16 bytes")
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(blob.nonce)).decryptor()
            padded = decryptor.update(blob.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptFailure("invalid ciphertext or padding") from e
