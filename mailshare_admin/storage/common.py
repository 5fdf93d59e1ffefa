"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from mailshare_admin.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    The Fernet key is derived from arbitrary key material (normally
    TOTP_SECRET_KEY or JWT_SECRET) with SHA-256.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret cipher requires key material")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Key rotated or value stored before encryption was enabled
            logger.warning("totp_secret_decrypt_failed")
            return None
