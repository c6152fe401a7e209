from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from idbridge.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service.

    Signing secrets have no defaults: they must come from the environment or
    a ``.env`` file.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/idbridge", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: Optional[str] = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for memory-store state; unset keeps state in process only",
    )
    jwt_access_secret: Optional[str] = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: Optional[str] = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("idbridge", "JWT_ISSUER")
    jwt_audience: str = env_field("idbridge-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    # argon2id parameters; defaults land near 100ms per verification
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    secret_encryption_key: Optional[str] = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting provider access tokens at rest",
    )
    # OAuth settings
    oauth_github_client_id: Optional[str] = env_field(None, "GITHUB_CLIENT_ID")
    oauth_github_client_secret: Optional[str] = env_field(None, "GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: Optional[str] = env_field(None, "GITHUB_CALLBACK_URL")
    oauth_state_secret: Optional[str] = env_field(None, "OAUTH_STATE_SECRET")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _require_secret(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError(
                "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be configured"
            )
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "oauth_state_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self):
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must be signed with distinct secrets")
        return self

    @property
    def state_secret(self) -> str:
        return self.oauth_state_secret or self.jwt_access_secret

    @property
    def encryption_key_material(self) -> str:
        return self.secret_encryption_key or self.jwt_refresh_secret

    @property
    def github_oauth_configured(self) -> bool:
        return bool(
            self.oauth_github_client_id
            and self.oauth_github_client_secret
            and self.oauth_redirect_uri
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
