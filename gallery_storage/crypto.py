"""
Encryption of OAuth tokens at rest using Fernet (symmetric, from cryptography).

Fernet tokens are authenticated (AES-CBC + HMAC-SHA256) with a fresh random IV
per call, and embed version, timestamp, IV and MAC, so decrypting needs only
the key. Share-link tokens and password hashing live here too.
"""
import base64
import hashlib
import secrets

import bcrypt
from cryptography.fernet import Fernet, InvalidToken

from gallery_storage.config import TOKEN_ENCRYPTION_KEY

fernet = Fernet(
    TOKEN_ENCRYPTION_KEY.encode()
    if isinstance(TOKEN_ENCRYPTION_KEY, str)
    else TOKEN_ENCRYPTION_KEY
)

__all__ = [
    "InvalidToken",
    "decrypt",
    "encrypt",
    "generate_share_token",
    "hash_password",
    "verify_password",
]


def encrypt(value: str) -> str:
    """Encrypt a string (e.g. access_token or refresh_token) for storage."""
    return fernet.encrypt(value.encode()).decode()


def decrypt(value: str | None) -> str | None:
    """
    Decrypt a stored token. Returns None if value is None (e.g. optional refresh_token).
    Raises cryptography.fernet.InvalidToken if the value was tampered with.
    """
    if value is None:
        return None
    return fernet.decrypt(value.encode()).decode()


def generate_share_token() -> str:
    """64 hex chars (32 random bytes), unguessable share-link token."""
    return secrets.token_hex(32)


def _prehash(password: str) -> bytes:
    """SHA-256 pre-hash to avoid bcrypt's 72-byte truncation."""
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


def hash_password(password: str) -> str:
    """Return bcrypt hash of password (SHA-256 pre-hashed before bcrypt)."""
    return bcrypt.hashpw(_prehash(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Return True if password matches hashed."""
    try:
        return bool(bcrypt.checkpw(_prehash(password), hashed.encode("utf-8")))
    except (ValueError, TypeError):
        return False
