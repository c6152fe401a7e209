from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from idbridge.config import Settings
from idbridge.logging import get_logger
from idbridge.service.credentials import CredentialVerifier
from idbridge.service.errors import AuthenticationError, NotFoundError
from idbridge.storage.models import UserIdentity

if TYPE_CHECKING:
    from idbridge.service.identity import IdentityStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenManager:
    """Issues, verifies and rotates the access/refresh token pair.

    A user has at most one live refresh token: its argon2 hash sits in the
    user's single refresh slot, and every ``issue`` overwrites that slot.
    Access and refresh tokens are signed with distinct secrets so one can
    never be replayed as the other.
    """

    def __init__(
        self,
        store: "IdentityStore",
        settings: Settings,
        verifier: CredentialVerifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret_for(self, token_type: str) -> str:
        if token_type == ACCESS:
            return self.settings.jwt_access_secret
        return self.settings.jwt_refresh_secret

    def _build_payload(
        self, user: UserIdentity, token_type: str, issued_at: datetime, expires_at: datetime
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    async def issue(self, user: UserIdentity) -> TokenPair:
        """Sign a fresh pair and persist the refresh hash, replacing any prior one."""
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_token = self._encode_jwt(
            self._build_payload(user, ACCESS, now, access_exp), self._secret_for(ACCESS)
        )
        refresh_token = self._encode_jwt(
            self._build_payload(user, REFRESH, now, refresh_exp), self._secret_for(REFRESH)
        )
        refresh_hash = await self.verifier.hash_async(refresh_token)
        if not self.store.set_refresh_secret(user.id, refresh_hash):
            raise NotFoundError("user not found", detail={"user_id": user.id})
        logger.info("session_issued", user_id=user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(int(access_exp.timestamp()), timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(int(refresh_exp.timestamp()), timezone.utc),
        )

    async def refresh(
        self, user_id: str, presented_refresh_token: str
    ) -> tuple[UserIdentity, TokenPair]:
        """Trade a refresh token for a new pair; the presented token is spent."""
        record = self.store.get_user_with_refresh_secret(user_id)
        if not record or not record.refresh_token_hash:
            logger.warning("refresh_token_rejected", user_id=user_id, reason="no_session")
            raise AuthenticationError("invalid refresh token")
        if not await self.verifier.verify_async(
            presented_refresh_token, record.refresh_token_hash
        ):
            logger.warning("refresh_token_rejected", user_id=user_id, reason="mismatch")
            raise AuthenticationError("invalid refresh token")
        user = record.public()
        return user, await self.issue(user)

    def revoke(self, user_id: str) -> None:
        cleared = self.store.set_refresh_secret(user_id, None)
        logger.info("session_revoked", user_id=user_id, user_found=cleared)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._decode_jwt(token, ACCESS)

    def decode_refresh_token(self, token: str) -> dict[str, Any]:
        return self._decode_jwt(token, REFRESH)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, expected_type: str) -> dict[str, Any]:
        failure = AuthenticationError(f"invalid {expected_type} token")
        if not token or not isinstance(token, str):
            raise failure
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise failure from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise failure from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise failure

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._sign(signing_input, self._secret_for(expected_type))
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise failure
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            logger.warning("jwt_payload_decode_failed")
            raise failure from None
        if not isinstance(payload, dict):
            raise failure
        if payload.get("token_type") != expected_type:
            raise failure
        if payload.get("iss") != self.settings.jwt_issuer:
            raise failure
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub"):
            raise failure
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise failure from None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise failure
        return payload
