from __future__ import annotations

import string
import time
from typing import Any, Callable, List, Optional, Protocol, Tuple

from idbridge.logging import get_logger
from idbridge.service.credentials import CredentialVerifier
from idbridge.service.errors import AuthenticationError, ConflictError, NotFoundError
from idbridge.storage.common import normalize_email
from idbridge.storage.errors import ConstraintViolation
from idbridge.storage.models import OAuthProfile, UserIdentity

logger = get_logger(__name__)

_BASE36_DIGITS = string.digits + string.ascii_lowercase


class IdentityStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserIdentity]: ...

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]: ...

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]: ...

    def get_user_by_github_id(self, github_id: str) -> Optional[UserIdentity]: ...

    def get_user_by_email_with_secret(self, email: str) -> Optional[UserIdentity]: ...

    def get_user_with_refresh_secret(self, user_id: str) -> Optional[UserIdentity]: ...

    def get_user_with_provider_secret(self, user_id: str) -> Optional[UserIdentity]: ...

    def create_user(
        self,
        email: str,
        username: str,
        *,
        display_name: Optional[str] = None,
        avatar: Optional[str] = None,
        github_id: Optional[str] = None,
        github_username: Optional[str] = None,
        github_access_token: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> UserIdentity: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserIdentity]: ...

    def set_refresh_secret(
        self, user_id: str, refresh_token_hash: Optional[str]
    ) -> bool: ...


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def _conflict_from(exc: ConstraintViolation) -> ConflictError:
    field_name = exc.field or "identity"
    return ConflictError(f"{field_name} already in use", detail={"field": field_name})


# (rule name, finder or None for the fallback, action)
OAuthRule = Tuple[
    str,
    Optional[Callable[[OAuthProfile], Optional[UserIdentity]]],
    Callable[[Optional[UserIdentity], OAuthProfile], UserIdentity],
]


class IdentityResolver:
    """Maps local credentials or an OAuth profile onto one canonical identity."""

    def __init__(self, store: IdentityStore, verifier: CredentialVerifier) -> None:
        self.store = store
        self.verifier = verifier
        self._oauth_rules: List[OAuthRule] = [
            ("provider_id", self._find_by_provider_id, self._refresh_provider_link),
            ("email", self._find_unlinked_by_email, self._link_provider),
            ("create", None, self._create_from_profile),
        ]

    async def resolve_local_registration(
        self,
        email: str,
        username: str,
        display_name: Optional[str],
        password: str,
    ) -> UserIdentity:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already in use", detail={"field": "email"})
        if self.store.get_user_by_username(username):
            raise ConflictError("username already in use", detail={"field": "username"})
        password_hash = await self.verifier.hash_async(password)
        try:
            user = self.store.create_user(
                email,
                username,
                display_name=display_name or username,
                password_hash=password_hash,
            )
        except ConstraintViolation as exc:
            raise _conflict_from(exc) from exc
        logger.info("user_registered", user_id=user.id, method="password")
        return user

    async def resolve_local_login(self, email: str, password: str) -> UserIdentity:
        record = self.store.get_user_by_email_with_secret(normalize_email(email))
        # Unknown account, OAuth-only account and wrong password look identical
        if not record or not record.has_password:
            await self.verifier.verify_dummy_async(password)
            logger.info("login_rejected", reason="no_password_credential")
            raise AuthenticationError("invalid email or password")
        if not await self.verifier.verify_async(password, record.password_hash):
            logger.info("login_rejected", user_id=record.id, reason="mismatch")
            raise AuthenticationError("invalid email or password")
        if self.verifier.needs_rehash(record.password_hash):
            self.store.update_user(
                record.id, password_hash=await self.verifier.hash_async(password)
            )
            logger.info("password_rehashed", user_id=record.id)
        return record.public()

    def resolve_oauth_identity(self, profile: OAuthProfile) -> UserIdentity:
        """Apply the first OAuth rule whose finder matches the profile.

        Rules are tried in order: an identity already linked to the provider
        id, then an unlinked identity with the same email, then a new
        identity. The fallback rule has no finder and always applies.
        """
        if not profile.provider_id:
            raise AuthenticationError("provider profile is missing an id")
        for name, finder, action in self._oauth_rules:
            existing = finder(profile) if finder else None
            if finder and not existing:
                continue
            try:
                user = action(existing, profile)
            except ConstraintViolation as exc:
                raise _conflict_from(exc) from exc
            logger.info(
                "oauth_identity_resolved",
                user_id=user.id,
                branch=name,
                provider="github",
            )
            return user
        raise AuthenticationError("unable to resolve identity")

    # finders
    def _find_by_provider_id(self, profile: OAuthProfile) -> Optional[UserIdentity]:
        return self.store.get_user_by_github_id(str(profile.provider_id))

    def _find_unlinked_by_email(self, profile: OAuthProfile) -> Optional[UserIdentity]:
        if not profile.email:
            return None
        user = self.store.get_user_by_email(profile.email)
        if user and not user.github_id:
            return user
        return None

    # actions
    def _refresh_provider_link(
        self, user: Optional[UserIdentity], profile: OAuthProfile
    ) -> UserIdentity:
        fields: dict[str, Any] = {
            "github_username": profile.username,
            "github_access_token": profile.provider_access_token,
        }
        if profile.avatar_url:
            fields["avatar"] = profile.avatar_url
        return self._apply_update(user, fields)

    def _link_provider(
        self, user: Optional[UserIdentity], profile: OAuthProfile
    ) -> UserIdentity:
        return self._apply_update(
            user,
            {
                "github_id": str(profile.provider_id),
                "github_username": profile.username,
                "github_access_token": profile.provider_access_token,
                "avatar": profile.avatar_url or user.avatar,
            },
        )

    def _create_from_profile(
        self, _user: Optional[UserIdentity], profile: OAuthProfile
    ) -> UserIdentity:
        if not profile.email:
            raise AuthenticationError("provider profile is missing an email")
        username = profile.username
        if self.store.get_user_by_username(username):
            username = self._suffixed_username(username)
        return self.store.create_user(
            profile.email,
            username,
            display_name=profile.display_name or username,
            avatar=profile.avatar_url,
            github_id=str(profile.provider_id),
            github_username=profile.username,
            github_access_token=profile.provider_access_token,
        )

    def _apply_update(self, user: UserIdentity, fields: dict[str, Any]) -> UserIdentity:
        updated = self.store.update_user(user.id, **fields)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        return updated

    def _suffixed_username(self, username: str) -> str:
        return f"{username}_{_base36(int(time.time() * 1000))}"
