"""
Fernet encryption for provider secrets at rest (provider_credentials rows).

ENCRYPTION_KEY may hold several comma-separated keys to rotate: the first
encrypts, all of them decrypt. Without a key, values pass through unchanged
and main.py warns at startup.
"""
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _cipher_for(key_setting: str) -> MultiFernet:
    keys = [k.strip() for k in key_setting.split(",") if k.strip()]
    return MultiFernet([Fernet(k.encode()) for k in keys])


def _cipher() -> Optional[MultiFernet]:
    from src.config import get_settings

    key_setting = get_settings().encryption_key
    if not key_setting:
        return None
    return _cipher_for(key_setting)


def encrypt_value(plaintext: str) -> str:
    if not plaintext:
        return plaintext
    cipher = _cipher()
    if cipher is None:
        logger.warning("ENCRYPTION_KEY not configured - storing secret as plaintext")
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_value(stored: Optional[str]) -> Optional[str]:
    """
    Plaintext for a stored secret. Values that are not Fernet tokens are
    returned unchanged (rows written before a key was configured).
    """
    if not stored:
        return stored
    cipher = _cipher()
    if cipher is None:
        return stored
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.debug("Stored secret is not a Fernet token - using as plaintext")
        return stored
