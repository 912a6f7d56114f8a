"""
api/routes/v1/auth.py -- Device-session authentication REST endpoints.

Routes:
  POST /api/v1/auth                          -- password login; sets "jwt" refresh cookie
  POST /api/v1/auth/refresh                  -- new access token from the refresh cookie
  POST /api/v1/auth/logout                   -- deactivate this device's session (requires auth)
  POST /api/v1/auth/register                 -- create an account with the default role
  POST /api/v1/auth/verify-email             -- confirm an email with its verification code
  POST /api/v1/auth/password-reset           -- send a reset code (always 202)
  POST /api/v1/auth/password-reset/confirm   -- set a new password with a reset code
  GET  /api/v1/auth/me                       -- current user with roles (requires auth)
  GET  /api/v1/auth/sessions                 -- current user's active devices (requires auth)

Every session-bearing request carries the client's device id in the
"Device-Uuid" header.

Security:
  POST /auth and POST /auth/refresh are rate-limited per IP.
  Unknown email and wrong password produce the same 401 body.
  Cache-Control: no-store on every response that carries a token.
  The refresh token is only ever sent as an httpOnly, Secure, SameSite=None cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    DeviceSessionResponse,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    UserResponse,
    VerifyEmailRequest,
    VerifyRedirectResponse,
)
from auth.dependencies import device_id_from, device_meta_from, get_current_user, get_orchestrator
from auth.models import UserRecord
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Credential endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth", response_model=AuthResponse | VerifyRedirectResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password for the device in Device-Uuid.

    A verified account gets a fresh access token in the body and a refresh
    token in the "jwt" cookie; any previous session on the same device is
    superseded. An unverified account gets a verification redirect instead,
    and no session is created.
    """
    result = get_orchestrator(request).login(
        body.email, body.password, device_id_from(request), device_meta_from(request)
    )
    if result.email_unverified:
        return _no_store(JSONResponse(content=VerifyRedirectResponse(redirect=result.verify_redirect).model_dump()))

    resp = JSONResponse(
        content=AuthResponse(
            access_token=result.access_token,
            user=UserResponse.from_profile(result.user),
        ).model_dump(by_alias=True)
    )
    set_refresh_cookie(
        resp,
        result.refresh_token,
        max_age=_settings.refresh_token_ttl_seconds,
        secure=_settings.secure_cookies,
    )
    return _no_store(resp)


@limiter.limit(_settings.refresh_rate_limit)
@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the "jwt" refresh cookie for a new access token on this device."""
    result = get_orchestrator(request).refresh(device_id_from(request), request.cookies.get(REFRESH_COOKIE_NAME))
    return _no_store(
        JSONResponse(
            content=AuthResponse(
                access_token=result.access_token,
                user=UserResponse.from_profile(result.user),
            ).model_dump(by_alias=True)
        )
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: UserRecord = Depends(get_current_user)) -> JSONResponse:
    """Deactivate the caller's session on this device and clear the refresh cookie."""
    get_orchestrator(request).logout(current_user.id, device_id_from(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp, secure=_settings.secure_cookies)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Registration, verification, password reset
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account. Repeating a registration for an unverified email returns that account."""
    orchestrator = get_orchestrator(request)
    user = orchestrator.register(body.email, body.password, body.confirm_password)
    profile = orchestrator.get_profile(user.id)
    return JSONResponse(status_code=201, content=UserResponse.from_profile(profile).model_dump(by_alias=True))


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    get_orchestrator(request).confirm_email(body.email, body.code)
    return MessageResponse(message="Email verified.")


@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Send a reset code. The response is identical whether or not the account exists."""
    get_orchestrator(request).request_password_reset(body.email)
    return MessageResponse(message="If the account exists, a verification code has been sent.")


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def complete_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    get_orchestrator(request).complete_password_reset(body.email, body.password, body.verify_code)
    return MessageResponse(message="Password updated.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: UserRecord = Depends(get_current_user)) -> JSONResponse:
    profile = get_orchestrator(request).get_profile(current_user.id)
    return JSONResponse(content=UserResponse.from_profile(profile).model_dump(by_alias=True))


@router.get("/auth/sessions", response_model=list[DeviceSessionResponse])
def list_sessions(request: Request, current_user: UserRecord = Depends(get_current_user)) -> JSONResponse:
    """List the caller's active device sessions. Tokens are never included."""
    sessions = get_orchestrator(request).list_devices(current_user.id)
    return JSONResponse(
        content=[DeviceSessionResponse.from_session(s).model_dump(by_alias=True) for s in sessions],
    )
