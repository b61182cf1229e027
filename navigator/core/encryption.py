"""Fernet encryption for per-tenant Twilio credentials."""

import logging

from cryptography.fernet import Fernet, InvalidToken

from navigator.core.config import settings

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = settings.fernet_key
        if not key:
            raise ValueError("FERNET_KEY is not configured, cannot encrypt tenant credentials")
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encrypt_value(plaintext: str) -> bytes:
    return _get_fernet().encrypt(plaintext.encode("utf-8"))


def decrypt_value(ciphertext: bytes | None) -> str:
    """Decrypt a stored credential. Returns empty string when it cannot be read."""
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt tenant credential: wrong FERNET_KEY or corrupted value")
        return ""
