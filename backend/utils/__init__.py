"""
Utils Package

Provides utility modules for:
- encryption: Token vault for bank OAuth tokens
"""

from .encryption import (
    encrypt_token,
    decrypt_token,
    generate_encryption_key,
    is_encryption_configured,
    clear_fernet_cache,
    EncryptionError,
    DecryptionError,
)

__all__ = [
    'encrypt_token',
    'decrypt_token',
    'generate_encryption_key',
    'is_encryption_configured',
    'clear_fernet_cache',
    'EncryptionError',
    'DecryptionError',
]
