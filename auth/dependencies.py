"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credentials travel with a request:
  1. Authorization: Bearer <access token> -- every authenticated call.
  2. Refresh token -- the http-only cookie set on sign-in (name from
     REFRESH_COOKIE_NAME). refresh-token and sign-out also accept it in the
     JSON body for clients that cannot use cookies; the body wins.

These helpers only extract the raw strings. Verification happens in
AuthService so every failure goes through the same Unauthorized path and gets
the same generic message.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Unauthorized
from auth.service import AuthService

_BEARER_PREFIX = "bearer "


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService built in the lifespan."""
    return request.app.state.auth_service


def get_access_token(request: Request) -> str:
    """Require an Authorization: Bearer header. Raises Unauthorized otherwise."""
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith(_BEARER_PREFIX):
        raise Unauthorized("Missing bearer token")
    token = header[len(_BEARER_PREFIX):].strip()
    if not token:
        raise Unauthorized("Empty bearer token")
    return token


def try_get_refresh_cookie(request: Request) -> str | None:
    """Return the refresh cookie value, or None. Never raises."""
    settings = request.app.state.settings
    return request.cookies.get(settings.refresh_cookie_name) or None


def resolve_refresh_token(request: Request, body_token: str | None) -> str:
    """Pick the refresh token from the body, falling back to the cookie."""
    token = body_token or try_get_refresh_cookie(request)
    if not token:
        raise Unauthorized("Missing refresh token")
    return token
