"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes (mounted under /api):
  POST /api/auth/sign-up                  -- create unconfirmed account, mail confirmation link
  POST /api/auth/confirm-email            -- confirm account; returns tokens
  POST /api/auth/sign-in                  -- password sign-in; tokens or "code sent"
  POST /api/auth/confirm-sign-in          -- exchange emailed code for tokens
  POST /api/auth/sign-out                 -- revoke refresh token, clear cookie
  POST /api/auth/refresh-token            -- rotate refresh token; returns tokens
  POST /api/auth/forgot-password          -- mail reset link (always 200)
  POST /api/auth/reset-password           -- set new password from reset token
  POST /api/auth/update-password          -- change password (Bearer + refresh cookie)
  POST /api/auth/update-two-factor        -- toggle emailed-code second factor (Bearer)
  GET  /api/auth/ext/{provider}           -- 307 to provider authorize URL
  GET  /api/auth/ext/{provider}/callback  -- finish OAuth login; returns tokens

Every response that carries tokens also sets the refresh cookie:
  http-only, path=/api/auth, max-age = refresh token lifetime, samesite=lax,
  secure when SECURE_COOKIES is set.

Security:
  [H2] sign-in and confirm-sign-in are rate-limited per IP (SIGN_IN_RATE_LIMIT).
  [C1] timing equalization on unknown emails happens in AuthService.
  [M5] Cache-Control: no-store on every response from this router.
  Errors are raised as ServiceError subclasses and rendered by the handler in
  api/main.py; Unauthorized always reads "Invalid credentials".
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ConfirmEmailRequest,
    ConfirmSignInRequest,
    EmailRequest,
    MessageResponse,
    RefreshTokenRequest,
    ResetPasswordRequest,
    SignInRequest,
    SignUpRequest,
    UpdatePasswordRequest,
    UpdateTwoFactorRequest,
)
from auth.dependencies import get_access_token, get_auth_service, resolve_refresh_token, try_get_refresh_cookie
from auth.errors import Unauthorized
from auth.models import AuthTokens, OAuthProvider
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - sign-up, confirm-email, sign-in, confirm-sign-in, forgot-password,
#   reset-password, ext/*:             public
# - refresh-token, sign-out:           refresh token (body or cookie)
# - update-password:                  Bearer access token + refresh cookie
# - update-two-factor:                Bearer access token
router = APIRouter(prefix="/auth")

REFRESH_COOKIE_PATH = "/api/auth"


def _sign_in_limit() -> str:
    return get_settings().sign_in_rate_limit


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _message(message: str) -> JSONResponse:
    return _no_store(JSONResponse(content=MessageResponse(message=message).model_dump()))


def _auth_response(request: Request, tokens: AuthTokens) -> JSONResponse:
    """Return the token pair and store the refresh token in the http-only cookie."""
    settings = request.app.state.settings
    resp = JSONResponse(content=AuthResponse.from_tokens(tokens).model_dump())
    resp.set_cookie(
        key=settings.refresh_cookie_name,
        value=tokens.refresh_token,
        max_age=settings.refresh_expiration,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    return _no_store(resp)


def _clear_refresh_cookie(request: Request, resp: JSONResponse) -> JSONResponse:
    settings = request.app.state.settings
    resp.delete_cookie(
        key=settings.refresh_cookie_name,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    return resp


# ---------------------------------------------------------------------------
# Account creation and confirmation
# ---------------------------------------------------------------------------


@router.post("/sign-up", response_model=MessageResponse)
def sign_up(body: SignUpRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Create an unconfirmed local account. The confirmation link goes out by email."""
    service.sign_up(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        date_of_birth=body.date_of_birth,
        password1=body.password1,
        password2=body.password2,
    )
    return _message("User created successfully")


@router.post("/confirm-email", response_model=AuthResponse)
def confirm_email(
    request: Request,
    body: ConfirmEmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    return _auth_response(request, service.confirm_email(body.confirmation_token))


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@router.post("/sign-in", response_model=AuthResponse | MessageResponse)
@limiter.limit(_sign_in_limit)  # [H2] must be BELOW @router so the registered endpoint is the limited one
def sign_in(
    request: Request,
    body: SignInRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Password sign-in.

    With two-factor enabled on the local provider the response is a message
    and a 6-digit code is emailed; finish with POST /confirm-sign-in.
    """
    result = service.sign_in(body.email, body.password)
    if result.two_factor_pending:
        return _message("Confirmation code sent, check your email")
    return _auth_response(request, result.tokens)


@router.post("/confirm-sign-in", response_model=AuthResponse)
@limiter.limit(_sign_in_limit)  # [H2]
def confirm_sign_in(
    request: Request,
    body: ConfirmSignInRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    return _auth_response(request, service.confirm_sign_in(body.email, body.code))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/refresh-token", response_model=AuthResponse)
def refresh_token(
    request: Request,
    body: Optional[RefreshTokenRequest] = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Rotate the refresh token. The presented token is revoked and cannot be reused."""
    token = resolve_refresh_token(request, body.refresh_token if body else None)
    return _auth_response(request, service.refresh_token(token))


@router.post("/sign-out", response_model=MessageResponse)
def sign_out(
    request: Request,
    body: Optional[RefreshTokenRequest] = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    token = resolve_refresh_token(request, body.refresh_token if body else None)
    service.sign_out(token)
    return _clear_refresh_cookie(request, _message("Signed out successfully"))


# ---------------------------------------------------------------------------
# Passwords and second factor
# ---------------------------------------------------------------------------


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(body: EmailRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Always answers the same way, whether or not the email has an account."""
    service.forgot_password(body.email)
    return _message("Password reset link sent")


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    service.reset_password(body.reset_token, body.password1, body.password2)
    return _message("Password reset successfully")


@router.post("/update-password", response_model=AuthResponse)
def update_password(
    request: Request,
    body: UpdatePasswordRequest,
    access_token: str = Depends(get_access_token),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Change the password. Needs both the Bearer access token and the refresh cookie."""
    refresh = try_get_refresh_cookie(request)
    if refresh is None:
        raise Unauthorized("Missing refresh cookie")
    tokens = service.update_password(
        access_token=access_token,
        refresh_token=refresh,
        old_password=body.old_password,
        password1=body.password1,
        password2=body.password2,
    )
    return _auth_response(request, tokens)


@router.post("/update-two-factor", response_model=MessageResponse)
def update_two_factor(
    body: UpdateTwoFactorRequest,
    access_token: str = Depends(get_access_token),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.update_two_factor(access_token, body.two_factor)
    return _message("Two factor updated successfully")


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


@router.get("/ext/{provider}", status_code=307)
def oauth_sign_in(provider: OAuthProvider, service: AuthService = Depends(get_auth_service)) -> RedirectResponse:
    """Redirect (307) to the provider's consent page. 404 if the provider is not configured."""
    url = service.oauth_sign_in(provider)
    resp = RedirectResponse(url, status_code=307)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/ext/{provider}/callback", response_model=AuthResponse)
def oauth_callback(
    request: Request,
    provider: OAuthProvider,
    code: str = Query(min_length=1, max_length=2000),
    state: str = Query(min_length=1, max_length=200),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    return _auth_response(request, service.oauth_callback(provider, code, state))
