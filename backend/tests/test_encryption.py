"""
Unit Tests for the Token Vault

Tests encryption/decryption of bank OAuth tokens:
- Round trip and randomised ciphertexts
- Missing or malformed key fails closed
- Tampered ciphertexts and key mismatch

Run with: pytest tests/test_encryption.py -v
"""

import os
import pytest
from unittest.mock import patch

from cryptography.fernet import Fernet

from banking.errors import ConfigurationError
from utils.encryption import (
    encrypt_token,
    decrypt_token,
    generate_encryption_key,
    clear_fernet_cache,
    is_encryption_configured,
    EncryptionError,
    DecryptionError,
    ENCRYPTION_KEY_ENV,
)


class TestTokenVault:
    """Test suite for token encryption with a configured key."""

    def test_encrypt_decrypt_roundtrip(self):
        """Test access token encryption and decryption round-trip."""
        token = "eyJhbGciOiJFUzI1NiIsInR5cCI6IkpXVCJ9.access"

        encrypted = encrypt_token(token)

        assert encrypted != token
        assert decrypt_token(encrypted) == token

    def test_same_token_encrypts_differently(self):
        """Fernet uses a random IV, so ciphertexts are never equal."""
        first = encrypt_token("refresh-token")
        second = encrypt_token("refresh-token")

        assert first != second
        assert decrypt_token(first) == decrypt_token(second) == "refresh-token"

    def test_unicode_token(self):
        assert decrypt_token(encrypt_token("tøken-✓")) == "tøken-✓"

    def test_empty_token_rejected(self):
        with pytest.raises(EncryptionError):
            encrypt_token("")

    def test_empty_ciphertext_rejected(self):
        with pytest.raises(DecryptionError):
            decrypt_token("")

    def test_tampered_ciphertext(self):
        """Test that a modified ciphertext fails authentication."""
        encrypted = encrypt_token("access-token")
        tampered = encrypted[:-4] + ("AAAA" if not encrypted.endswith("AAAA") else "BBBB")

        with pytest.raises(DecryptionError):
            decrypt_token(tampered)

    def test_decrypt_with_other_key(self):
        """Ciphertexts from another key are reported as corrupted, not returned."""
        foreign = Fernet(Fernet.generate_key()).encrypt(b"access-token").decode()

        with pytest.raises(DecryptionError):
            decrypt_token(foreign)

    def test_is_configured(self):
        assert is_encryption_configured() is True


class TestKeyConfiguration:
    """Test fail-closed behaviour when the key is absent or malformed."""

    def test_missing_key(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop(ENCRYPTION_KEY_ENV, None)
            clear_fernet_cache()

            with pytest.raises(ConfigurationError):
                encrypt_token("access-token")
            assert is_encryption_configured() is False

    def test_malformed_key(self):
        with patch.dict(os.environ, {ENCRYPTION_KEY_ENV: "not-a-fernet-key"}):
            clear_fernet_cache()

            with pytest.raises(ConfigurationError):
                encrypt_token("access-token")

    def test_key_rotation_requires_cache_clear(self):
        """The Fernet instance is cached until clear_fernet_cache()."""
        encrypted = encrypt_token("access-token")
        new_key = generate_encryption_key()

        with patch.dict(os.environ, {ENCRYPTION_KEY_ENV: new_key}):
            clear_fernet_cache()
            with pytest.raises(DecryptionError):
                decrypt_token(encrypted)

    def test_generate_encryption_key(self):
        key = generate_encryption_key()

        assert isinstance(key, str)
        assert Fernet(key.encode()) is not None
