"""
Security utilities for InboxHub.
Handles channel credential encryption/decryption and opaque token generation.
"""

import secrets

from cryptography.fernet import Fernet

from inboxhub.core.config import settings


def get_fernet() -> Fernet:
    """Get Fernet instance for encryption."""
    key = settings.ENCRYPTION_KEY
    if isinstance(key, str):
        key = key.encode()
    return Fernet(key)


def encrypt_secret(plain: str) -> str:
    """Encrypt a channel credential for storage."""
    if not plain:
        return None
    return get_fernet().encrypt(plain.encode()).decode()


def decrypt_secret(encrypted: str) -> str:
    """Decrypt a channel credential for use."""
    if not encrypted:
        return None
    return get_fernet().decrypt(encrypted.encode()).decode()


def generate_token(nbytes: int = 32) -> str:
    """Random opaque token for invite links, email verification and password resets."""
    return secrets.token_hex(nbytes)
