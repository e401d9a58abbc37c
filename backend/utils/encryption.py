"""
Token Vault - Encryption for Bank OAuth Tokens

Encrypts Monzo access/refresh tokens before they are persisted and decrypts
them on read. Uses Fernet symmetric encryption (AES-128-CBC with HMAC-SHA256
and a random IV), so encrypting the same token twice yields different
ciphertexts and stored tokens cannot be compared or diffed.

Environment Variables:
    BANK_TOKEN_ENCRYPTION_KEY: urlsafe base64-encoded 32-byte Fernet key
        Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

Usage:
    from utils.encryption import encrypt_token, decrypt_token

    stored = encrypt_token(access_token)
    access_token = decrypt_token(stored)

Security Notes:
    - Never log plaintext tokens
    - A missing or malformed key raises ConfigurationError; there is no plaintext fallback
"""

import os
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from banking.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variable name for encryption key
ENCRYPTION_KEY_ENV = "BANK_TOKEN_ENCRYPTION_KEY"


class EncryptionError(Exception):
    """Base exception for encryption errors"""
    pass


class DecryptionError(EncryptionError):
    """Raised when a ciphertext is corrupted or was produced with another key"""
    pass


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    """
    Get Fernet instance with configured key.
    Cached for performance; call clear_fernet_cache() after changing the key.

    Raises:
        ConfigurationError: If the key is absent or not a valid Fernet key
    """
    key = os.environ.get(ENCRYPTION_KEY_ENV)

    if not key:
        logger.error(f"{ENCRYPTION_KEY_ENV} not configured - bank tokens cannot be stored")
        raise ConfigurationError(f"{ENCRYPTION_KEY_ENV} environment variable is not set")

    try:
        return Fernet(key.strip().encode('utf-8'))
    except (ValueError, TypeError) as e:
        logger.error(f"Invalid {ENCRYPTION_KEY_ENV} format: {e}")
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} must be a urlsafe base64-encoded 32-byte key"
        ) from e


def clear_fernet_cache():
    """Drop the cached Fernet instance (key rotation, tests)."""
    _get_fernet.cache_clear()


def is_encryption_configured() -> bool:
    """Check if the token vault has a usable key."""
    try:
        _get_fernet()
        return True
    except ConfigurationError:
        return False


def encrypt_token(plaintext: str) -> str:
    """
    Encrypt an OAuth token for storage.

    Args:
        plaintext: Access or refresh token

    Returns:
        Fernet token string (differs on every call)

    Raises:
        ConfigurationError: If the key is missing or malformed
        EncryptionError: If plaintext is empty
    """
    if not plaintext:
        raise EncryptionError("Cannot encrypt an empty token")

    fernet = _get_fernet()
    return fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')


def decrypt_token(ciphertext: str) -> str:
    """
    Decrypt a stored OAuth token.

    Raises:
        ConfigurationError: If the key is missing or malformed
        DecryptionError: If the ciphertext was tampered with or uses another key
    """
    if not ciphertext:
        raise DecryptionError("Cannot decrypt an empty value")

    fernet = _get_fernet()

    try:
        return fernet.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
    except InvalidToken:
        logger.error("Token decryption failed - invalid token or wrong key")
        raise DecryptionError("Invalid encryption token - data may be corrupted or key mismatch")


def generate_encryption_key() -> str:
    """
    Generate a new Fernet encryption key.

    Returns:
        Base64-encoded key string for BANK_TOKEN_ENCRYPTION_KEY
    """
    return Fernet.generate_key().decode('utf-8')
