import json

import pytest

from idbridge.storage.errors import ConstraintViolation
from idbridge.storage.memory import MemoryStore


def test_create_normalizes_email_and_hides_secrets():
    store = MemoryStore(encryption_key="test-key")

    user = store.create_user(
        " Alice@Example.COM ", "alice", password_hash="$argon2id$fake"
    )

    assert user.email == "alice@example.com"
    assert user.password_hash is None
    assert store.get_user(user.id).password_hash is None
    assert store.get_user_by_email("ALICE@example.com").id == user.id
    assert store.get_user_by_email_with_secret("alice@example.com").password_hash == "$argon2id$fake"


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"email": "ALICE@example.com", "username": "other"}, "email"),
        ({"email": "other@example.com", "username": "alice"}, "username"),
        ({"email": "other@example.com", "username": "other", "github_id": "gh1"}, "github_id"),
    ],
)
def test_unique_fields_enforced(kwargs, field):
    store = MemoryStore(encryption_key="test-key")
    store.create_user("alice@example.com", "alice", github_id="gh1")

    email = kwargs.pop("email")
    username = kwargs.pop("username")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(email, username, **kwargs)

    assert excinfo.value.field == field
    assert len(store.users) == 1


def test_update_rejects_unknown_fields_and_missing_users():
    store = MemoryStore(encryption_key="test-key")
    user = store.create_user("alice@example.com", "alice")

    with pytest.raises(ValueError):
        store.update_user(user.id, refresh_token_hash="nope")
    assert store.update_user("missing", avatar="x") is None


def test_update_checks_uniqueness_against_other_users():
    store = MemoryStore(encryption_key="test-key")
    alice = store.create_user("alice@example.com", "alice")
    store.create_user("bob@example.com", "bob", github_id="gh2")

    with pytest.raises(ConstraintViolation):
        store.update_user(alice.id, github_id="gh2")
    # Re-setting a user's own value is not a conflict
    assert store.update_user(alice.id, username="alice").username == "alice"


def test_refresh_slot_holds_one_value():
    store = MemoryStore(encryption_key="test-key")
    user = store.create_user("alice@example.com", "alice")

    assert store.set_refresh_secret(user.id, "hash-one") is True
    assert store.set_refresh_secret(user.id, "hash-two") is True
    assert store.get_user_with_refresh_secret(user.id).refresh_token_hash == "hash-two"
    assert store.set_refresh_secret(user.id, None) is True
    assert store.get_user_with_refresh_secret(user.id).refresh_token_hash is None
    assert store.set_refresh_secret("missing", "hash") is False


def test_provider_token_encrypted_at_rest():
    store = MemoryStore(encryption_key="test-key")
    user = store.create_user("alice@example.com", "alice", github_access_token="gho_secret")

    raw = store.users[user.id].github_access_token
    assert raw and raw != "gho_secret"
    assert store.get_user_with_provider_secret(user.id).github_access_token == "gho_secret"
    assert store.get_user(user.id).github_access_token is None


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key="test-key")
    user = store.create_user(
        "alice@example.com", "alice", github_id="gh1", github_access_token="gho_secret"
    )
    store.set_refresh_secret(user.id, "refresh-hash")

    state = json.loads((tmp_path / "state" / "identity_store.json").read_text())
    assert "gho_secret" not in json.dumps(state)

    reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key="test-key")
    assert reloaded.get_user_by_github_id("gh1").id == user.id
    assert reloaded.get_user_with_refresh_secret(user.id).refresh_token_hash == "refresh-hash"
    assert reloaded.get_user_with_provider_secret(user.id).github_access_token == "gho_secret"


def test_wrong_key_cannot_read_provider_token(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key="test-key")
    user = store.create_user("alice@example.com", "alice", github_access_token="gho_secret")

    other = MemoryStore(fs_root=str(tmp_path), encryption_key="different-key")

    assert other.get_user_with_provider_secret(user.id).github_access_token is None


def test_persistent_store_requires_key(tmp_path, monkeypatch):
    monkeypatch.delenv("SECRET_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)

    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path))
