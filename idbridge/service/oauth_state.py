"""Signed state cookie for the GitHub authorize/callback round trip.

The cookie is a compact HS256 token minted with ``TokenManager``'s segment
helpers, but under the state secret and with ``token_type`` ``oauth_state``
so it can never pass as an access or refresh token. Each state is bound to
the redirect URI it was issued for; a callback configured differently (for
example after a settings change between start and callback) is refused.
"""

from __future__ import annotations

import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from idbridge.logging import get_logger
from idbridge.service.tokens import TokenManager

logger = get_logger(__name__)

OAUTH_STATE = "oauth_state"


@dataclass(frozen=True)
class OAuthState:
    state: str
    redirect_uri: str
    issued_at: datetime


class OAuthStateError(ValueError):
    """OAuth state failed validation."""


class OAuthStateSigner:
    def __init__(
        self,
        tokens: TokenManager,
        *,
        secret: str,
        redirect_uri: Optional[str],
        ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.tokens = tokens
        self.secret = secret
        self.redirect_uri = redirect_uri or ""
        self.ttl = ttl

    def issue(self) -> tuple[str, OAuthState]:
        """Return ``(cookie_value, state)``; only ``state.state`` goes to GitHub."""
        issued_at = int(time.time())
        state = secrets.token_urlsafe(32)
        payload = {
            "token_type": OAUTH_STATE,
            "state": state,
            "redirect_uri": self.redirect_uri,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
        }
        cookie_value = self.tokens._encode_jwt(payload, self.secret)
        return cookie_value, OAuthState(
            state=state,
            redirect_uri=self.redirect_uri,
            issued_at=datetime.fromtimestamp(issued_at, timezone.utc),
        )

    def verify(
        self, cookie_value: Optional[str], returned_state: Optional[str]
    ) -> OAuthState:
        if not cookie_value or not returned_state:
            raise OAuthStateError("missing OAuth state")
        payload = self._decode(cookie_value)

        if payload.get("token_type") != OAUTH_STATE:
            raise OAuthStateError("not an OAuth state token")
        state = payload.get("state")
        if not isinstance(state, str) or not hmac.compare_digest(state, returned_state):
            raise OAuthStateError("OAuth state mismatch")
        redirect_uri = payload.get("redirect_uri")
        if redirect_uri != self.redirect_uri:
            logger.warning("oauth_state_redirect_mismatch", provider="github")
            raise OAuthStateError("OAuth state issued for another redirect URI")
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise OAuthStateError("malformed OAuth state payload") from exc
        if expires_at <= time.time():
            raise OAuthStateError("OAuth state expired")

        return OAuthState(
            state=state,
            redirect_uri=redirect_uri,
            issued_at=datetime.fromtimestamp(issued_at, timezone.utc),
        )

    def _decode(self, cookie_value: str) -> dict:
        try:
            header_b64, payload_b64, sig_b64 = cookie_value.split(".")
            header = json.loads(self.tokens._decode_segment(header_b64))
        except ValueError as exc:
            raise OAuthStateError("malformed OAuth state") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise OAuthStateError("malformed OAuth state")

        expected = self.tokens._sign(f"{header_b64}.{payload_b64}", self.secret)
        if not hmac.compare_digest(expected, sig_b64):
            raise OAuthStateError("invalid OAuth state signature")
        try:
            payload = json.loads(self.tokens._decode_segment(payload_b64))
        except ValueError as exc:
            raise OAuthStateError("malformed OAuth state payload") from exc
        if not isinstance(payload, dict):
            raise OAuthStateError("malformed OAuth state payload")
        return payload
