"""
Vendor token encryption at rest

Access and refresh tokens are sealed with Fernet before they reach the
database. The Fernet key is stretched from ENCRYPTION_KEY with PBKDF2, so the
operator can supply any high-entropy string.
"""

import base64
import os
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KDF_SALT = b"ridelog.oauth_credentials.v1"
KDF_ITERATIONS = 100_000


@lru_cache(maxsize=4)
def cipher_for(secret: str) -> Fernet:
    """Fernet cipher derived from an operator secret (cached per secret)."""
    stretched = PBKDF2HMAC(
        algorithm=hashes.SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ITERATIONS,
    ).derive(secret.encode())
    return Fernet(base64.urlsafe_b64encode(stretched))


def _configured_cipher() -> Fernet:
    secret = os.getenv("ENCRYPTION_KEY")
    if not secret:
        raise RuntimeError("ENCRYPTION_KEY must be set before vendor tokens can be stored or read")
    return cipher_for(secret)


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """Seal a token for storage. Empty values are stored as given."""
    if not token:
        return token
    return _configured_cipher().encrypt(token.encode()).decode()


def decrypt_token(sealed: Optional[str]) -> Optional[str]:
    """
    Open a stored token.

    Raises:
        RuntimeError: ENCRYPTION_KEY is missing
        InvalidToken: the value was sealed with another key or is not a Fernet token
    """
    if not sealed:
        return sealed
    return _configured_cipher().decrypt(sealed.encode()).decode()


def read_stored_token(stored: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored token, falling back to the raw value for rows written
    before encryption was enabled.
    """
    try:
        return decrypt_token(stored)
    except InvalidToken:
        return stored
