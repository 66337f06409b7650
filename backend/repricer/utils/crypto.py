from __future__ import annotations

"""Credential vault: symmetric encryption for secrets stored at rest.

The helpers :func:`encrypt` and :func:`decrypt` wrap AES-256-CBC with a
random 16-byte IV per call. Ciphertexts are stored as::

    <hex(iv)>:<hex(ciphertext)>

The key comes from ``settings.ENCRYPTION_KEY``:

- a 64 character hex string is used directly as the 32 key bytes;
- any other value is hashed with SHA-256 down to 32 bytes.

Unlike a "best effort" decrypt, failures are never swallowed. Every problem
raises a :class:`CryptoError` subclass with a stable ``code`` so callers can
tell "row needs migration" apart from "row is corrupt" and "wrong key".
"""

import hashlib
import os
import re
from functools import lru_cache
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from repricer.config import settings


MIGRATION_MARKER = "NEEDS_MIGRATION:"
_SEPARATOR = ":"
_IV_SIZE = 16   # AES block size
_KEY_SIZE = 32  # 256-bit AES key
_CIPHERTEXT_RE = re.compile(r"^[0-9a-fA-F]+:[0-9a-fA-F]+$")
_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{%d}$" % (_KEY_SIZE * 2))


class CryptoError(Exception):
    code = "CRYPTO_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EncryptionKeyMissingError(CryptoError):
    code = "ENCRYPTION_KEY_MISSING"


class NeedsMigrationError(CryptoError):
    code = "NEEDS_MIGRATION"


class InvalidEncryptionFormatError(CryptoError):
    code = "INVALID_ENCRYPTION_FORMAT"


class DecryptionFailedError(CryptoError):
    code = "DECRYPTION_FAILED"


@lru_cache(maxsize=None)
def derive_key(secret: str) -> bytes:
    """Turn the configured secret into AES key bytes (memoised per secret)."""
    if _HEX_KEY_RE.match(secret):
        return bytes.fromhex(secret)
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _get_key() -> bytes:
    secret = settings.ENCRYPTION_KEY
    if not secret:
        raise EncryptionKeyMissingError(
            "ENCRYPTION_KEY is not configured. Generate one with: openssl rand -hex 32"
        )
    return derive_key(secret)


def is_encrypted_value(value: Optional[str]) -> bool:
    """True when ``value`` has the ``hex:hex`` shape produced by :func:`encrypt`."""
    return isinstance(value, str) and bool(_CIPHERTEXT_RE.match(value))


def check_ciphertext(value: str) -> None:
    """Validate the stored shape of a ciphertext without decrypting it."""
    if value.startswith(MIGRATION_MARKER):
        raise NeedsMigrationError("Value carries the migration marker and must be re-entered")
    if not _CIPHERTEXT_RE.match(value):
        raise InvalidEncryptionFormatError(
            f"Invalid encryption format. Expected hex:hex, got: {value[:20]}..."
        )


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string. ``None`` is passed through as ``None``."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    key = _get_key()
    iv = os.urandom(_IV_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()

    return iv.hex() + _SEPARATOR + ct.hex()


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Raises NeedsMigrationError / InvalidEncryptionFormatError for values with
    the wrong stored shape and DecryptionFailedError when the bytes cannot be
    decrypted with the current key.
    """

    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidEncryptionFormatError(
            f"Invalid encryption format. Expected str, got {type(value).__name__}"
        )

    check_ciphertext(value)
    key = _get_key()

    iv_hex, ct_hex = value.split(_SEPARATOR, 1)
    try:
        iv = bytes.fromhex(iv_hex)
        ct = bytes.fromhex(ct_hex)
    except ValueError as exc:
        # Odd-length hex passes the regex but is not decodable.
        raise InvalidEncryptionFormatError(f"Ciphertext is not valid hex: {exc}") from exc

    if len(iv) != _IV_SIZE or not ct or len(ct) % _IV_SIZE:
        raise DecryptionFailedError(
            f"Ciphertext has unexpected sizes (iv={len(iv)} bytes, data={len(ct)} bytes)"
        )

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        raw = unpadder.update(padded) + unpadder.finalize()
        return raw.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        # Bad padding or garbage bytes: almost always a wrong ENCRYPTION_KEY.
        raise DecryptionFailedError(f"Failed to decrypt value: {type(exc).__name__}") from exc
