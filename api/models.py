"""
API request and response models for Authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Validation rules applied here (field-level only; cross-field rules such as
"passwords must match" are business rules and live in AuthService):
  email     5-200 chars, local@domain.tld shape, lower-cased
  names     3-50 chars of letters, digits, apostrophes, dots and spaces
  dates     YYYY-MM-DD
  passwords 8-40 chars with a lowercase letter, an uppercase letter, a number
            and a symbol (new passwords only; sign-in just requires non-empty)
  tokens    20-500 chars shaped like a JWT
  codes     exactly 6 digits

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import re
from datetime import date
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthTokens

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$"
JWT_PATTERN = r"^[A-Za-z0-9_=-]+\.[A-Za-z0-9_=-]+\.?[A-Za-z0-9_.+/=-]*$"
CODE_PATTERN = r"^\d{6}$"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

# Letters (any script), digits, apostrophes, dots and spaces.
_NAME_RE = re.compile(r"^(?:[^\W_]|['. ])+$")
_MULTI_SPACE_RE = re.compile(r"\s{2,}")
_SYMBOL_RE = re.compile(r"[^\w\s]|_")

_Email = Annotated[str, Field(min_length=5, max_length=200, pattern=EMAIL_PATTERN)]
_Jwt = Annotated[str, Field(min_length=20, max_length=500, pattern=JWT_PATTERN)]
_Name = Annotated[str, Field(min_length=3, max_length=50)]
_NewPassword = Annotated[str, Field(min_length=8, max_length=40)]


def _check_name(value: str) -> str:
    if not _NAME_RE.match(value):
        raise ValueError("may only contain letters, numbers, apostrophes, dots and spaces")
    if _MULTI_SPACE_RE.search(value):
        raise ValueError("may not contain consecutive spaces")
    return value


def _check_password_strength(value: str) -> str:
    """Require a lowercase letter, an uppercase letter, a number and a symbol."""
    missing = []
    if not any(c.islower() for c in value):
        missing.append("a lowercase letter")
    if not any(c.isupper() for c in value):
        missing.append("an uppercase letter")
    if not any(c.isdigit() for c in value):
        missing.append("a number")
    if not _SYMBOL_RE.search(value):
        missing.append("a symbol")
    if missing:
        raise ValueError("password must contain " + ", ".join(missing))
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SignUpRequest(_Request):
    """Request body for POST /api/auth/sign-up."""

    email: _Email
    first_name: _Name
    last_name: _Name
    date_of_birth: date
    password1: _NewPassword
    password2: str = Field(min_length=1, max_length=40)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _check_name(value)

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def require_iso_date(cls, value):
        """Accept only the YYYY-MM-DD string form (no timestamps, no datetimes)."""
        if not isinstance(value, str) or not re.match(DATE_PATTERN, value):
            raise ValueError("date must be in the format YYYY-MM-DD")
        return value

    @field_validator("password1")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_strength(value)


class ConfirmEmailRequest(_Request):
    """Request body for POST /api/auth/confirm-email."""

    confirmation_token: _Jwt


class SignInRequest(_Request):
    """Request body for POST /api/auth/sign-in."""

    email: _Email
    password: str = Field(min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class ConfirmSignInRequest(_Request):
    """Request body for POST /api/auth/confirm-sign-in."""

    email: _Email
    code: str = Field(pattern=CODE_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class RefreshTokenRequest(_Request):
    """Optional body for POST /api/auth/refresh-token and /sign-out.

    When absent, the refresh cookie is used.
    """

    refresh_token: _Jwt


class EmailRequest(_Request):
    """Request body for POST /api/auth/forgot-password."""

    email: _Email

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class ResetPasswordRequest(_Request):
    """Request body for POST /api/auth/reset-password."""

    reset_token: _Jwt
    password1: _NewPassword
    password2: str = Field(min_length=1, max_length=40)

    @field_validator("password1")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_strength(value)


class UpdatePasswordRequest(_Request):
    """Request body for POST /api/auth/update-password."""

    old_password: str = Field(min_length=1, max_length=200)
    password1: _NewPassword
    password2: str = Field(min_length=1, max_length=40)

    @field_validator("password1")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_strength(value)


class UpdateTwoFactorRequest(_Request):
    """Request body for POST /api/auth/update-two-factor."""

    two_factor: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthResponse(BaseModel):
    """Token pair returned by every endpoint that authenticates the caller."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "AuthResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
