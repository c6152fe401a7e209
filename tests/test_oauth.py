"""GitHub code exchange against a mocked transport."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from idbridge.config import Settings
from idbridge.service.errors import AuthenticationError, ValidationError
from idbridge.service.oauth import GitHubOAuthClient


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="Access-Secret_for-Automation-Only-123456",
        jwt_refresh_secret="Refresh-Secret_for-Automation-Only-654321",
        oauth_github_client_id="client-id",
        oauth_github_client_secret="client-secret",
        oauth_redirect_uri="http://localhost:8000/v1/auth/github/callback",
    )


def _transport(*, token_body=None, user_body=None, emails=None, emails_status=200, seen=None):
    token_body = token_body if token_body is not None else {"access_token": "gho_abc"}
    user_body = user_body if user_body is not None else {
        "id": 101,
        "login": "octo",
        "name": "Octo Cat",
        "email": "octo@example.com",
        "avatar_url": "https://avatars.example/octo.png",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json=token_body)
        if request.url.path == "/user":
            return httpx.Response(200, json=user_body)
        if request.url.path == "/user/emails":
            return httpx.Response(emails_status, json=emails or [])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def test_authorization_url_carries_scope_and_state(settings):
    client = GitHubOAuthClient(settings)

    url = urlparse(client.authorization_url("state-123"))
    query = parse_qs(url.query)

    assert url.netloc == "github.com"
    assert query["client_id"] == ["client-id"]
    assert query["scope"] == ["read:user user:email"]
    assert query["state"] == ["state-123"]
    assert query["redirect_uri"] == ["http://localhost:8000/v1/auth/github/callback"]


def test_unconfigured_client_refuses(settings):
    client = GitHubOAuthClient(settings.model_copy(update={"oauth_github_client_id": None}))

    with pytest.raises(ValidationError):
        client.authorization_url("state")


def test_insecure_redirect_outside_localhost_refused(settings):
    client = GitHubOAuthClient(
        settings.model_copy(update={"oauth_redirect_uri": "http://app.example/cb"})
    )

    with pytest.raises(ValidationError):
        client.authorization_url("state")


async def test_exchange_builds_profile(settings):
    seen = []
    client = GitHubOAuthClient(settings, transport=_transport(seen=seen))

    profile = await client.exchange_code("code-1")

    assert profile.provider_id == "101"
    assert profile.email == "octo@example.com"
    assert profile.username == "octo"
    assert profile.display_name == "Octo Cat"
    assert profile.avatar_url == "https://avatars.example/octo.png"
    assert profile.provider_access_token == "gho_abc"
    assert seen[1].headers["Authorization"] == "Bearer gho_abc"


async def test_hidden_email_falls_back_to_primary_verified(settings):
    user_body = {"id": 7, "login": "quiet", "email": None}
    emails = [
        {"email": "old@example.com", "primary": False, "verified": True},
        {"email": "unverified@example.com", "primary": True, "verified": False},
        {"email": "main@example.com", "primary": True, "verified": True},
    ]
    client = GitHubOAuthClient(
        settings, transport=_transport(user_body=user_body, emails=emails)
    )

    profile = await client.exchange_code("code-1")

    assert profile.email == "main@example.com"


async def test_no_verified_email_leaves_profile_email_empty(settings):
    client = GitHubOAuthClient(
        settings,
        transport=_transport(user_body={"id": 7, "login": "quiet"}, emails_status=403),
    )

    profile = await client.exchange_code("code-1")

    assert profile.provider_id == "7"
    assert profile.email is None


async def test_bad_code_fails(settings):
    client = GitHubOAuthClient(
        settings, transport=_transport(token_body={"error": "bad_verification_code"})
    )

    with pytest.raises(AuthenticationError):
        await client.exchange_code("stale")


async def test_provider_http_error_fails(settings):
    def handler(request):
        return httpx.Response(502)

    client = GitHubOAuthClient(settings, transport=httpx.MockTransport(handler))

    with pytest.raises(AuthenticationError):
        await client.exchange_code("code-1")


async def test_transport_error_fails(settings):
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = GitHubOAuthClient(settings, transport=httpx.MockTransport(handler))

    with pytest.raises(AuthenticationError):
        await client.exchange_code("code-1")
