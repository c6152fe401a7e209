from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Response

from idbridge.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from idbridge.logging import get_logger
from idbridge.service.auth import AuthResult
from idbridge.service.errors import AuthenticationError
from idbridge.service.runtime import get_runtime
from idbridge.storage.models import UserIdentity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"
OAUTH_STATE_COOKIE = "oauth_state"


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> UserIdentity:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _apply_refresh_cookie(response: Response, result: AuthResult) -> None:
    runtime = get_runtime()
    response.set_cookie(
        REFRESH_COOKIE,
        result.tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/v1/auth",
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    tokens = result.tokens
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_identity(result.user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, response: Response):
    """Create a password account and sign it in.

    Raises:
        409: If the email or username is already taken
        403: If signup is disabled
    """
    runtime = get_runtime()
    result = await runtime.auth.register_local(
        email=body.email,
        username=body.username,
        display_name=body.display_name,
        password=body.password,
    )
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login_local(body.email, body.password)
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.get("/github/start", response_model=Envelope)
async def github_start(response: Response):
    """Begin the GitHub flow.

    The signed state goes back as an httponly cookie; the client then
    follows ``authorization_url``.
    """
    runtime = get_runtime()
    start = runtime.auth.start_github_oauth()
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        start.state_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.oauth_state_ttl_minutes * 60,
        path="/v1/auth/github",
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start.authorization_url, state=start.state
        ),
    )


@router.get("/github/callback", response_model=Envelope)
async def github_callback(
    response: Response,
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
    oauth_state: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    result = await runtime.auth.complete_github_oauth(code, state, oauth_state)
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/v1/auth/github")
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/refresh", response_model=Envelope)
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    if not presented:
        raise AuthenticationError("invalid refresh token")
    result = await runtime.auth.refresh_session(presented)
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, user: UserIdentity = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(user.id)
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/me", response_model=Envelope)
async def me(user: UserIdentity = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_identity(user))
