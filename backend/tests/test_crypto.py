import hashlib

import pytest

from repricer.config import settings
from repricer.utils import crypto


@pytest.mark.parametrize(
    "plaintext",
    ["", "a", "PRD-0123456789abcdef0123456789abcdef", "v^1.1#i^1#r^1#p^3", "ünïcödé ✓ 价格", "x" * 1000],
)
def test_encrypt_then_decrypt_returns_original(plaintext):
    ciphertext = crypto.encrypt(plaintext)

    assert crypto.is_encrypted_value(ciphertext)
    assert crypto.decrypt(ciphertext) == plaintext


def test_encrypt_uses_fresh_iv_per_call():
    first = crypto.encrypt("same secret")
    second = crypto.encrypt("same secret")

    assert first != second
    iv_hex, ct_hex = first.split(":")
    assert len(iv_hex) == 32
    assert len(ct_hex) % 32 == 0


def test_none_passes_through():
    assert crypto.encrypt(None) is None
    assert crypto.decrypt(None) is None


def test_hex_secret_is_used_directly_and_other_secrets_are_hashed():
    hex_secret = "ab" * 32
    assert crypto.derive_key(hex_secret) == bytes.fromhex(hex_secret)

    passphrase = "correct horse battery staple"
    assert crypto.derive_key(passphrase) == hashlib.sha256(passphrase.encode()).digest()


def test_migration_marker_is_reported_as_needs_migration():
    with pytest.raises(crypto.NeedsMigrationError) as exc_info:
        crypto.decrypt("NEEDS_MIGRATION:legacy-plaintext-token")

    assert exc_info.value.code == "NEEDS_MIGRATION"


@pytest.mark.parametrize("value", ["plaintext-token", "abc:", ":abc", "zz:yy", "ENC:v1:abcdef"])
def test_malformed_values_raise_invalid_format(value):
    with pytest.raises(crypto.InvalidEncryptionFormatError):
        crypto.decrypt(value)


def test_odd_length_hex_is_invalid_format():
    with pytest.raises(crypto.InvalidEncryptionFormatError):
        crypto.decrypt("abc:def")


def test_wrong_key_raises_decryption_failed(monkeypatch):
    ciphertext = crypto.encrypt("secret value")

    monkeypatch.setattr(settings, "ENCRYPTION_KEY", "cd" * 32)

    with pytest.raises(crypto.DecryptionFailedError) as exc_info:
        crypto.decrypt(ciphertext)
    assert exc_info.value.code == "DECRYPTION_FAILED"


def test_truncated_iv_raises_decryption_failed():
    ciphertext = crypto.encrypt("secret value")
    iv_hex, ct_hex = ciphertext.split(":")

    with pytest.raises(crypto.DecryptionFailedError):
        crypto.decrypt(iv_hex[:16] + ":" + ct_hex)


def test_missing_key_raises_typed_error(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", None)

    with pytest.raises(crypto.EncryptionKeyMissingError):
        crypto.encrypt("anything")
