from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from idbridge.config import Settings
from idbridge.logging import get_logger
from idbridge.service.errors import AuthenticationError, ValidationError
from idbridge.storage.models import OAuthProfile

GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
GITHUB_SCOPE = "read:user user:email"

logger = get_logger(__name__)


class GitHubOAuthClient:
    """Authorization-code exchange against GitHub, yielding an ``OAuthProfile``."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return self.settings.github_oauth_configured

    def _redirect_uri(self) -> str:
        redirect_uri = self.settings.oauth_redirect_uri
        if not redirect_uri:
            raise ValidationError("GitHub OAuth is not configured")
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValidationError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure OAuth redirect URI outside localhost")
        return redirect_uri

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            logger.warning("oauth_not_configured", provider="github")
            raise ValidationError("GitHub OAuth is not configured")
        params = {
            "client_id": self.settings.oauth_github_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": GITHUB_SCOPE,
            "state": state,
        }
        return f"{GITHUB_AUTH_URL}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange_code(self, code: str) -> OAuthProfile:
        """Trade an authorization code for the user's GitHub profile.

        When the public profile hides the email, the primary verified address
        from ``/user/emails`` is used. Every provider failure surfaces as a
        generic ``AuthenticationError``.
        """
        if not self.configured:
            raise ValidationError("GitHub OAuth is not configured")
        if not code:
            raise AuthenticationError("GitHub authentication failed")
        try:
            async with self._client() as client:
                token_response = await client.post(
                    GITHUB_TOKEN_URL,
                    data={
                        "client_id": self.settings.oauth_github_client_id,
                        "client_secret": self.settings.oauth_github_client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    # GitHub reports bad codes with 200 and an "error" field
                    logger.error(
                        "oauth_no_access_token",
                        provider="github",
                        error=token_result.get("error") if isinstance(token_result, dict) else None,
                    )
                    raise AuthenticationError("GitHub authentication failed")

                api_headers = {
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github+json",
                }
                user_response = await client.get(GITHUB_USER_URL, headers=api_headers)
                user_response.raise_for_status()
                userinfo = user_response.json()
                if not isinstance(userinfo, dict) or userinfo.get("id") is None:
                    logger.error("oauth_userinfo_invalid", provider="github")
                    raise AuthenticationError("GitHub authentication failed")

                email = userinfo.get("email")
                if not email:
                    email = await self._primary_email(client, api_headers)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="github",
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("GitHub authentication failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider="github", error=str(exc))
            raise AuthenticationError("GitHub authentication failed") from exc

        if not email:
            # Still resolvable when the GitHub id is already linked
            logger.warning("oauth_identity_missing_email", provider="github")

        profile = self._parse_userinfo(userinfo, email, access_token)
        logger.info("oauth_exchange_success", provider="github", provider_uid=profile.provider_id)
        return profile

    async def _primary_email(
        self, client: httpx.AsyncClient, headers: dict[str, str]
    ) -> Optional[str]:
        response = await client.get(GITHUB_EMAILS_URL, headers=headers)
        if response.status_code != 200:
            logger.warning(
                "oauth_email_lookup_failed",
                provider="github",
                status_code=response.status_code,
            )
            return None
        emails = response.json()
        if not isinstance(emails, list):
            return None
        return next(
            (
                entry.get("email")
                for entry in emails
                if isinstance(entry, dict) and entry.get("primary") and entry.get("verified")
            ),
            None,
        )

    def _parse_userinfo(
        self, userinfo: dict[str, Any], email: Optional[str], access_token: str
    ) -> OAuthProfile:
        provider_id = str(userinfo["id"])
        return OAuthProfile(
            provider_id=provider_id,
            email=email,
            username=userinfo.get("login") or f"github_{provider_id}",
            display_name=userinfo.get("name"),
            avatar_url=userinfo.get("avatar_url"),
            provider_access_token=access_token,
        )
