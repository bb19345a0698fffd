"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the domain shape.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class Role(str, Enum):
    user = "user"
    staff = "staff"
    admin = "admin"


class OAuthProvider(str, Enum):
    local = "local"
    google = "google"
    facebook = "facebook"


class TokenPurpose(str, Enum):
    """Purposes for email-style tokens. The value is the JWT `sub` claim."""

    confirmation = "confirmation"
    reset = "reset"
    refresh = "refresh"


@dataclass
class User:
    """An account. Referenced by the auth core, persisted by UserStore.

    hashed_password is None for accounts created through an external provider.
    Those have no local provider link, so they only sign in through their
    provider. It is also cleared when a provider sign-in claims an unconfirmed
    local account; that account keeps its local link and can set a password
    through the reset flow.

    version increases on every credential-affecting mutation (email
    confirmation, password reset, password change, provider claim). Purpose tokens embed the
    version they were issued at and die when it moves on.
    """

    email: str
    first_name: str
    last_name: str
    username: str
    date_of_birth: date
    hashed_password: str | None = None
    role: str = Role.user.value
    confirmed: bool = False
    suspended: bool = False
    version: int = 1
    picture: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class OAuthProviderLink:
    """One row per (email, provider) the account can sign in with.

    two_factor only matters for the local provider: when set, a correct password
    yields an emailed access code instead of tokens.
    """

    user_email: str
    provider: str
    two_factor: bool = False
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class UserProfile:
    """Normalized profile returned by an external provider's userinfo endpoint."""

    first_name: str
    last_name: str
    email: str
    date_of_birth: date
    picture: str | None = None


@dataclass(frozen=True)
class EmailTokenData:
    """Verified contents of a purpose token. expires_at is epoch seconds."""

    user_id: int
    version: int
    token_id: str
    expires_at: int


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    token_type: str = "Bearer"


@dataclass(frozen=True)
class SignInResult:
    """Outcome of a password sign-in: tokens, or None when a code was emailed."""

    tokens: AuthTokens | None = None

    @property
    def two_factor_pending(self) -> bool:
        return self.tokens is None
