"""Unit tests for token issue, rotation, revocation and verification."""

import time
from datetime import timedelta

import pytest

from idbridge.config import Settings
from idbridge.service.credentials import CredentialVerifier
from idbridge.service.errors import AuthenticationError, NotFoundError
from idbridge.service.tokens import TokenManager
from idbridge.storage.memory import MemoryStore
from idbridge.storage.models import UserIdentity


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="Access-Secret_for-Automation-Only-123456",
        jwt_refresh_secret="Refresh-Secret_for-Automation-Only-654321",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
    )


@pytest.fixture
def store():
    return MemoryStore(encryption_key="test-key")


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1)


@pytest.fixture
def tokens(store, settings, verifier):
    return TokenManager(store, settings, verifier)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "alice", display_name="Alice")


class TestIssue:
    async def test_issue_returns_bearer_pair(self, tokens, user):
        pair = await tokens.issue(user)

        assert pair.token_type == "bearer"
        assert pair.access_token != pair.refresh_token
        assert pair.refresh_expires_at > pair.access_expires_at

    async def test_issue_persists_only_a_hash(self, tokens, store, user):
        pair = await tokens.issue(user)

        record = store.get_user_with_refresh_secret(user.id)
        assert record.refresh_token_hash
        assert record.refresh_token_hash != pair.refresh_token
        assert tokens.verifier.verify(pair.refresh_token, record.refresh_token_hash)

    async def test_access_token_carries_identity_claims(self, tokens, settings, user):
        pair = await tokens.issue(user)

        payload = tokens.verify_access_token(pair.access_token)
        assert payload["sub"] == user.id
        assert payload["email"] == "alice@example.com"
        assert payload["username"] == "alice"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] - payload["iat"] == 15 * 60

    async def test_pairs_issued_back_to_back_differ(self, tokens, user):
        first = await tokens.issue(user)
        second = await tokens.issue(user)

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    async def test_issue_for_missing_user_raises(self, tokens):
        ghost = UserIdentity(id="missing", email="ghost@example.com", username="ghost")

        with pytest.raises(NotFoundError):
            await tokens.issue(ghost)


class TestRefresh:
    async def test_refresh_rotates_pair(self, tokens, user):
        first = await tokens.issue(user)

        refreshed_user, second = await tokens.refresh(user.id, first.refresh_token)

        assert refreshed_user.id == user.id
        assert refreshed_user.refresh_token_hash is None
        assert second.refresh_token != first.refresh_token

    async def test_previous_refresh_token_invalid_after_rotation(self, tokens, user):
        first = await tokens.issue(user)
        await tokens.refresh(user.id, first.refresh_token)

        with pytest.raises(AuthenticationError):
            await tokens.refresh(user.id, first.refresh_token)

    async def test_reissue_invalidates_prior_refresh_token(self, tokens, user):
        first = await tokens.issue(user)
        second = await tokens.issue(user)

        with pytest.raises(AuthenticationError):
            await tokens.refresh(user.id, first.refresh_token)
        _, third = await tokens.refresh(user.id, second.refresh_token)
        assert third.refresh_token

    async def test_refresh_without_session_fails(self, tokens, user):
        with pytest.raises(AuthenticationError) as excinfo:
            await tokens.refresh(user.id, "anything")

        assert excinfo.value.message == "invalid refresh token"

    async def test_refresh_for_unknown_user_fails(self, tokens):
        with pytest.raises(AuthenticationError):
            await tokens.refresh("unknown-user", "anything")


class TestRevoke:
    async def test_revoke_clears_slot(self, tokens, store, user):
        pair = await tokens.issue(user)

        tokens.revoke(user.id)

        assert store.get_user_with_refresh_secret(user.id).refresh_token_hash is None
        with pytest.raises(AuthenticationError):
            await tokens.refresh(user.id, pair.refresh_token)

    def test_revoke_is_idempotent(self, tokens, user):
        tokens.revoke(user.id)
        tokens.revoke(user.id)
        tokens.revoke("unknown-user")


class TestDecode:
    async def test_refresh_token_not_accepted_as_access(self, tokens, user):
        pair = await tokens.issue(user)

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            tokens.decode_refresh_token(pair.access_token)

    def test_garbage_token_rejected(self, tokens):
        for token in ("", "invalid.token.here", "a.b", "x.y.z.w"):
            with pytest.raises(AuthenticationError):
                tokens.verify_access_token(token)

    def test_expired_token_rejected(self, tokens, settings, user):
        past = int(time.time()) - int(timedelta(hours=1).total_seconds())
        payload = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": user.id,
            "token_type": "access",
            "iat": past - 60,
            "exp": past,
        }
        token = tokens._encode_jwt(payload, settings.jwt_access_secret)

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(token)

    def test_token_within_clock_skew_accepted(self, tokens, settings, user):
        now = int(time.time())
        payload = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": user.id,
            "token_type": "access",
            "iat": now - 900,
            "exp": now - 30,
        }
        token = tokens._encode_jwt(payload, settings.jwt_access_secret)

        assert tokens.verify_access_token(token)["sub"] == user.id

    def test_wrong_audience_rejected(self, tokens, settings, user):
        payload = {
            "iss": settings.jwt_issuer,
            "aud": "someone-else",
            "sub": user.id,
            "token_type": "access",
            "exp": int(time.time()) + 600,
        }
        token = tokens._encode_jwt(payload, settings.jwt_access_secret)

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(token)

    async def test_tampered_signature_rejected(self, tokens, user):
        pair = await tokens.issue(user)
        header, payload, signature = pair.access_token.split(".")
        forged = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(forged)

    def test_non_hs256_algorithm_rejected(self, tokens, settings, user):
        token = tokens._encode_jwt(
            {"sub": user.id, "token_type": "access"}, settings.jwt_access_secret
        )
        _, payload, signature = token.split(".")
        none_header = tokens._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(f"{none_header}.{payload}.{signature}")
