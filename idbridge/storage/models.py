from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

# Columns that only the explicit "with secret" reads populate
SECRET_FIELDS = ("password_hash", "refresh_token_hash", "github_access_token")

# Columns callers may set through create_user/update_user
MUTABLE_FIELDS = (
    "email",
    "username",
    "display_name",
    "avatar",
    "github_id",
    "github_username",
    "github_access_token",
    "password_hash",
)


@dataclass
class UserIdentity:
    id: str
    email: str
    username: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    github_id: Optional[str] = None
    github_username: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    password_hash: Optional[str] = field(default=None, repr=False)
    refresh_token_hash: Optional[str] = field(default=None, repr=False)
    github_access_token: Optional[str] = field(default=None, repr=False)

    def public(self) -> "UserIdentity":
        """Copy of the record with every secret-bearing field cleared."""
        return replace(self, **{name: None for name in SECRET_FIELDS})

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-supplied profile, merged into a ``UserIdentity`` and then dropped."""

    provider_id: str
    email: Optional[str]
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    provider_access_token: Optional[str] = field(default=None, repr=False)
