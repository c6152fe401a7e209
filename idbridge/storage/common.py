"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from idbridge.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Symmetric encryption for provider access tokens kept at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Encryption key material is required")
        try:
            self._fernet = Fernet(derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Key rotated or value tampered with; the provider token is unusable
            logger.warning("stored_secret_decrypt_failed")
            return None
