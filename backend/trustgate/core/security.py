# backend/trustgate/core/security.py
"""
Secret-at-rest helpers.

TOTP secrets are stored Fernet-encrypted. The Fernet key is derived from the
32-byte hex ENCRYPTION_KEY so operators configure a single value.
"""

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from trustgate.core.config import settings

logger = logging.getLogger(__name__)


def _derive_fernet_key(hex_key: str) -> bytes:
    """Turn a 64-char hex key into the urlsafe base64 form Fernet expects."""
    raw = bytes.fromhex(hex_key)
    if len(raw) != 32:
        raise ValueError("Encryption key must decode to exactly 32 bytes")
    return base64.urlsafe_b64encode(raw)


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    if not settings.ENCRYPTION_KEY:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    return Fernet(_derive_fernet_key(settings.ENCRYPTION_KEY))


def encrypt_value(value: str) -> str:
    """Encrypt a string value for storage."""
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_value(token: str) -> str:
    """
    Decrypt a value produced by encrypt_value.

    Raises:
        ValueError: if the token is malformed or was encrypted with another key.
    """
    try:
        return _get_fernet().decrypt(token.encode()).decode()
    except InvalidToken as e:
        logger.error("Failed to decrypt stored secret: invalid token or wrong key.")
        raise ValueError("Stored secret could not be decrypted") from e
