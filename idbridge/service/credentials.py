from __future__ import annotations

import asyncio
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from idbridge.config import Settings
from idbridge.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """Salted argon2id hashing for passwords and refresh tokens.

    Plaintext never leaves the call; verification failures are reported as
    ``False`` and never raised.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("cannot hash an empty secret")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        if not plaintext or not stored_hash or not isinstance(stored_hash, str):
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("stored_hash_malformed", algorithm=self.algorithm)
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return False

    # argon2 is deliberately slow; keep it off the event loop
    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, plaintext, stored_hash)

    async def verify_dummy_async(self, plaintext: str) -> bool:
        """Run one full verification against a throwaway hash; always ``False``.

        Used when there is no stored hash, so a missing account costs as much
        as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_async(secrets.token_urlsafe(32))
        await self.verify_async(plaintext, self._dummy_hash)
        return False
