from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from idbridge.config import Settings
from idbridge.logging import get_logger
from idbridge.service.errors import AuthenticationError, ValidationError
from idbridge.service.identity import IdentityResolver, IdentityStore
from idbridge.service.oauth import GitHubOAuthClient
from idbridge.service.oauth_state import OAuthStateError, OAuthStateSigner
from idbridge.service.tokens import TokenManager, TokenPair
from idbridge.storage.models import OAuthProfile, UserIdentity

logger = get_logger(__name__)


@dataclass
class AuthResult:
    user: UserIdentity
    tokens: TokenPair


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str
    state_token: str


class AuthService:
    """Entry points that turn an authentication event into an ``AuthResult``.

    Every entry point resolves a canonical identity first (skipped for a
    plain refresh) and then issues a token pair for it, which rotates the
    user's stored refresh hash.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        resolver: IdentityResolver,
        tokens: TokenManager,
        github: Optional[GitHubOAuthClient] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.resolver = resolver
        self.tokens = tokens
        self.github = github or GitHubOAuthClient(settings)
        self.state_signer = OAuthStateSigner(
            tokens,
            secret=settings.state_secret,
            redirect_uri=settings.oauth_redirect_uri,
            ttl=timedelta(minutes=settings.oauth_state_ttl_minutes),
        )
        self.logger = get_logger(__name__)

    async def register_local(
        self,
        email: str,
        username: str,
        display_name: Optional[str],
        password: str,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ValidationError("signup is disabled", status_code=403, error_code="forbidden")
        user = await self.resolver.resolve_local_registration(
            email, username, display_name, password
        )
        return AuthResult(user=user, tokens=await self.tokens.issue(user))

    async def login_local(self, email: str, password: str) -> AuthResult:
        user = await self.resolver.resolve_local_login(email, password)
        self.logger.info("user_logged_in", user_id=user.id, method="password")
        return AuthResult(user=user, tokens=await self.tokens.issue(user))

    async def authenticate_oauth(self, profile: OAuthProfile) -> AuthResult:
        user = self.resolver.resolve_oauth_identity(profile)
        return AuthResult(user=user, tokens=await self.tokens.issue(user))

    def start_github_oauth(self) -> OAuthStart:
        state_token, state = self.state_signer.issue()
        return OAuthStart(
            authorization_url=self.github.authorization_url(state.state),
            state=state.state,
            state_token=state_token,
        )

    async def complete_github_oauth(
        self, code: str, state: Optional[str], state_token: Optional[str]
    ) -> AuthResult:
        try:
            self.state_signer.verify(state_token, state)
        except OAuthStateError as exc:
            self.logger.warning("oauth_state_rejected", provider="github", reason=str(exc))
            raise AuthenticationError("invalid OAuth state") from exc
        profile = await self.github.exchange_code(code)
        return await self.authenticate_oauth(profile)

    async def refresh_session(self, refresh_token: str) -> AuthResult:
        payload = self.tokens.decode_refresh_token(refresh_token)
        user, pair = await self.tokens.refresh(payload["sub"], refresh_token)
        return AuthResult(user=user, tokens=pair)

    async def logout(self, user_id: str) -> None:
        self.tokens.revoke(user_id)

    async def authenticate(self, authorization: Optional[str]) -> UserIdentity:
        """Resolve the user behind a ``Bearer`` access token."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        payload = self.tokens.verify_access_token(token)
        user = self.store.get_user(payload["sub"])
        if not user:
            raise AuthenticationError("invalid access token")
        return user

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
