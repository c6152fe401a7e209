from __future__ import annotations

import json
import os
import secrets
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from idbridge.logging import get_logger
from idbridge.storage.common import SecretCipher, normalize_email
from idbridge.storage.errors import ConstraintViolation
from idbridge.storage.models import MUTABLE_FIELDS, UserIdentity

# Fields whose values must be unique across all records
_UNIQUE_FIELDS = ("email", "username", "github_id")


class MemoryStore:
    """In-memory identity store, optionally persisted to a JSON state file."""

    def __init__(
        self, fs_root: str | None = None, *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserIdentity] = {}
        # RLock so mutation helpers can call read helpers while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(self._resolve_key_material(encryption_key))
        if self.fs_root:
            self._load_state()

    def _resolve_key_material(self, encryption_key: str | None) -> str:
        material = (
            encryption_key
            or os.getenv("SECRET_ENCRYPTION_KEY")
            or os.getenv("JWT_REFRESH_SECRET")
        )
        if material:
            return material
        if self.fs_root:
            raise RuntimeError(
                "A persistent memory store needs SECRET_ENCRYPTION_KEY to protect stored provider tokens"
            )
        # Process-local key: nothing outlives the process anyway
        return secrets.token_urlsafe(64)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def _check_unique(
        self, candidate: Dict[str, Any], *, exclude_id: Optional[str] = None
    ) -> None:
        for name in _UNIQUE_FIELDS:
            value = candidate.get(name)
            if value is None:
                continue
            for existing in self.users.values():
                if existing.id != exclude_id and getattr(existing, name) == value:
                    raise ConstraintViolation(
                        f"{name} already exists", {"field": name}
                    )

    def _find(self, field_name: str, value: Any) -> Optional[UserIdentity]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if getattr(u, field_name) == value),
                None,
            )

    # reads: public projection
    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.public() if user else None

    def get_user_by_email(self, email: str) -> Optional[UserIdentity]:
        user = self._find("email", normalize_email(email))
        return user.public() if user else None

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]:
        user = self._find("username", username)
        return user.public() if user else None

    def get_user_by_github_id(self, github_id: str) -> Optional[UserIdentity]:
        user = self._find("github_id", str(github_id))
        return user.public() if user else None

    # reads: internal projections carrying one secret each
    def get_user_by_email_with_secret(self, email: str) -> Optional[UserIdentity]:
        user = self._find("email", normalize_email(email))
        if not user:
            return None
        return replace(user.public(), password_hash=user.password_hash)

    def get_user_with_refresh_secret(self, user_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return replace(user.public(), refresh_token_hash=user.refresh_token_hash)

    def get_user_with_provider_secret(self, user_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return replace(
                user.public(),
                github_access_token=self._cipher.decrypt(user.github_access_token),
            )

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
        now = datetime.utcnow()
        user = UserIdentity(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            username=username,
            display_name=display_name,
            avatar=avatar,
            github_id=str(github_id) if github_id is not None else None,
            github_username=github_username,
            created_at=now,
            updated_at=now,
            password_hash=password_hash,
            github_access_token=self._cipher.encrypt(github_access_token),
        )
        with self._data_lock:
            self._check_unique(asdict(user))
            self.users[user.id] = user
            self._persist_state()
        return user.public()

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
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(fields, exclude_id=user_id)
            updated = replace(user, updated_at=datetime.utcnow(), **fields)
            self.users[user_id] = updated
            self._persist_state()
            return updated.public()

    def set_refresh_secret(self, user_id: str, refresh_token_hash: Optional[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(
                user, refresh_token_hash=refresh_token_hash, updated_at=datetime.utcnow()
            )
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: UserIdentity) -> dict:
        data = asdict(user)
        data["created_at"] = user.created_at.isoformat()
        data["updated_at"] = user.updated_at.isoformat()
        return data

    def _deserialize_user(self, data: dict) -> UserIdentity:
        return UserIdentity(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            display_name=data.get("display_name"),
            avatar=data.get("avatar"),
            github_id=data.get("github_id"),
            github_username=data.get("github_username"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            password_hash=data.get("password_hash"),
            refresh_token_hash=data.get("refresh_token_hash"),
            github_access_token=data.get("github_access_token"),
        )
