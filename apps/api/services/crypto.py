"""
Hashing and at-rest encryption for extension credentials.

Access credentials are stored only as SHA-256 digests. Client metadata that
must be readable later (IP address, user agent) is Fernet-encrypted with a key
derived from ENCRYPTION_KEY.
"""

import base64
from functools import lru_cache
import hashlib
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

_KDF_SALT = b"softcodes_extension_token_salt"


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    raw = secret.encode()
    if len(raw) != 32:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=_KDF_SALT, iterations=100000)
        raw = kdf.derive(raw)
    return Fernet(base64.urlsafe_b64encode(raw))


def _get_fernet() -> Fernet:
    return _fernet_for(settings.ENCRYPTION_KEY)


def encrypt_value(value: Optional[str]) -> Optional[str]:
    """
    Encrypt request metadata for storage.

    Args:
        value: Plain text value, or None

    Returns:
        Fernet token, or None when there is nothing to store
    """
    if not value:
        return None
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return _get_fernet().decrypt(encrypted.encode()).decode()


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to look up issued credentials."""
    return hashlib.sha256(token.encode()).hexdigest()


def pkce_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding, per RFC 7636 S256."""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")
