from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idbridge.logging import get_logger
from idbridge.storage.common import SecretCipher, normalize_email
from idbridge.storage.errors import ConstraintViolation
from idbridge.storage.models import MUTABLE_FIELDS, UserIdentity

# Non-secret columns; every read selects these
_PUBLIC_COLUMNS = (
    "id, email, username, display_name, avatar, github_id, github_username, "
    "created_at, updated_at"
)

# Unique constraint name -> offending field
_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
    "app_user_github_id_key": "github_id",
}

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    username TEXT NOT NULL,
    display_name TEXT,
    avatar TEXT,
    github_id TEXT,
    github_username TEXT,
    github_access_token TEXT,
    password_hash TEXT,
    refresh_token_hash TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT app_user_email_key UNIQUE (email),
    CONSTRAINT app_user_username_key UNIQUE (username),
    CONSTRAINT app_user_github_id_key UNIQUE (github_id)
)
"""


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _violation_from(exc: errors.UniqueViolation) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag else None
    field_name = _CONSTRAINT_FIELDS.get(constraint or "")
    if field_name is None:
        message = str(exc)
        field_name = next(
            (name for key, name in _CONSTRAINT_FIELDS.items() if key in message),
            "unknown",
        )
    return ConstraintViolation(f"{field_name} already exists", {"field": field_name})


class PostgresStore:
    """Postgres-backed identity store; uniqueness is enforced by table constraints."""

    def __init__(self, dsn: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA_SQL)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> UserIdentity:
        return UserIdentity(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            display_name=row.get("display_name"),
            avatar=row.get("avatar"),
            github_id=row.get("github_id"),
            github_username=row.get("github_username"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    def _fetch_one(
        self, where: str, value: Any, *, extra_columns: str = ""
    ) -> Optional[dict]:
        if where == "id" and not _is_uuid(value):
            return None
        columns = _PUBLIC_COLUMNS + (f", {extra_columns}" if extra_columns else "")
        with self._connect() as conn:
            return conn.execute(
                f"SELECT {columns} FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()

    # reads: public projection
    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        row = self._fetch_one("id", user_id)
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]:
        row = self._fetch_one("email", normalize_email(email))
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]:
        row = self._fetch_one("username", username)
        return self._row_to_user(row) if row else None

    def get_user_by_github_id(self, github_id: str) -> Optional[UserIdentity]:
        row = self._fetch_one("github_id", str(github_id))
        return self._row_to_user(row) if row else None

    # reads: internal projections carrying one secret each
    def get_user_by_email_with_secret(self, email: str) -> Optional[UserIdentity]:
        row = self._fetch_one(
            "email", normalize_email(email), extra_columns="password_hash"
        )
        if not row:
            return None
        user = self._row_to_user(row)
        user.password_hash = row.get("password_hash")
        return user

    def get_user_with_refresh_secret(self, user_id: str) -> Optional[UserIdentity]:
        row = self._fetch_one("id", user_id, extra_columns="refresh_token_hash")
        if not row:
            return None
        user = self._row_to_user(row)
        user.refresh_token_hash = row.get("refresh_token_hash")
        return user

    def get_user_with_provider_secret(self, user_id: str) -> Optional[UserIdentity]:
        row = self._fetch_one("id", user_id, extra_columns="github_access_token")
        if not row:
            return None
        user = self._row_to_user(row)
        user.github_access_token = self._cipher.decrypt(row.get("github_access_token"))
        return user

    # writes
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
    ) -> UserIdentity:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, email, username, display_name, avatar, github_id,
                        github_username, github_access_token, password_hash
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_PUBLIC_COLUMNS}
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        username,
                        display_name,
                        avatar,
                        str(github_id) if github_id is not None else None,
                        github_username,
                        self._cipher.encrypt(github_access_token),
                        password_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation_from(exc) from exc
        return self._row_to_user(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserIdentity]:
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")
        if fields.get("email") is not None:
            fields["email"] = normalize_email(fields["email"])
        if fields.get("github_id") is not None:
            fields["github_id"] = str(fields["github_id"])
        if "github_access_token" in fields:
            fields["github_access_token"] = self._cipher.encrypt(
                fields["github_access_token"]
            )
        if not _is_uuid(user_id):
            return None
        if not fields:
            return self.get_user(user_id)
        # Column names come from MUTABLE_FIELDS, never from caller input
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {assignments}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_PUBLIC_COLUMNS}
                    """,
                    (*fields.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation_from(exc) from exc
        return self._row_to_user(row) if row else None

    def set_refresh_secret(self, user_id: str, refresh_token_hash: Optional[str]) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE app_user SET refresh_token_hash = %s, updated_at = now() WHERE id = %s",
                (refresh_token_hash, user_id),
            )
            return cursor.rowcount > 0
