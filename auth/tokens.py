"""
auth/tokens.py -- JWT issuance and verification for the two token families.

Security design decisions:
  Access tokens: python-jose with HS256, signed with ACCESS_SECRET. Claims
       carry the issuer (API_ID), sub="access", {id, role} and a short expiry
       (10 min by default). Stateless: they are never revoked, they expire.

  Purpose tokens (confirmation, reset, refresh): each purpose has its own
       secret and lifetime, looked up once in a single purpose table. Claims
       carry sub=<purpose>, {id, version, token_id}. A leaked confirmation
       secret cannot mint refresh tokens, and a token of one purpose never
       verifies as another (different key AND different sub).

  Revocation: verify_purpose() only checks the signature, issuer, subject and
       expiry. Whether the token_id is on the denylist or the version still
       matches the user row is business state, checked by AuthService. Bumping
       a user's version therefore kills every outstanding purpose token
       without a list of issued tokens; the denylist is reserved for
       single-token revocation (sign-out, rotation).

  Secrets: injected through the immutable Settings object. Nothing here reads
       the environment.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import InternalServerError, Unauthorized
from auth.models import EmailTokenData, Role, TokenPurpose

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("authgate.tokens")

_ALGORITHM = "HS256"
_ACCESS_SUBJECT = "access"
_ROLES = {role.value for role in Role}


@dataclass(frozen=True)
class PurposeKey:
    secret: str
    ttl: int  # seconds


class TokenService:
    """Signs and verifies access tokens and purpose tokens.

    Usage:
        tokens = TokenService(get_settings())
        refresh = tokens.issue_purpose(TokenPurpose.refresh, user)
        data = tokens.verify_purpose(TokenPurpose.refresh, refresh)
    """

    def __init__(self, settings: Settings) -> None:
        self._issuer = settings.api_id
        self._access = PurposeKey(settings.access_secret, settings.access_expiration)
        self._purposes: dict[TokenPurpose, PurposeKey] = {
            TokenPurpose.confirmation: PurposeKey(settings.confirmation_secret, settings.confirmation_expiration),
            TokenPurpose.reset: PurposeKey(settings.reset_secret, settings.reset_expiration),
            TokenPurpose.refresh: PurposeKey(settings.refresh_secret, settings.refresh_expiration),
        }

    # ------------------------------------------------------------------
    # Lifetimes
    # ------------------------------------------------------------------

    @property
    def access_ttl(self) -> int:
        return self._access.ttl

    def ttl_for(self, purpose: TokenPurpose) -> int:
        return self._purposes[purpose].ttl

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access(self, user: User) -> str:
        payload = self._base_claims(_ACCESS_SUBJECT, self._access.ttl)
        payload["user"] = {"id": user.id, "role": user.role}
        return self._encode(payload, self._access.secret)

    def verify_access(self, token: str) -> tuple[int, str]:
        """Return (user_id, role). Raises Unauthorized on any failure."""
        payload = self._decode(token, self._access.secret, _ACCESS_SUBJECT)
        try:
            user_id = int(payload["user"]["id"])
            role = str(payload["user"]["role"])
        except (KeyError, TypeError, ValueError) as exc:
            raise Unauthorized("Malformed access token payload") from exc
        if role not in _ROLES:
            raise Unauthorized("Unknown role in access token")
        return user_id, role

    # ------------------------------------------------------------------
    # Purpose tokens
    # ------------------------------------------------------------------

    def issue_purpose(self, purpose: TokenPurpose, user: User) -> str:
        key = self._purposes[purpose]
        payload = self._base_claims(purpose.value, key.ttl)
        payload["user"] = {"id": user.id, "version": user.version, "token_id": str(uuid.uuid4())}
        return self._encode(payload, key.secret)

    def verify_purpose(self, purpose: TokenPurpose, token: str) -> EmailTokenData:
        """Check signature, issuer, subject and expiry only. Raises Unauthorized."""
        key = self._purposes[purpose]
        payload = self._decode(token, key.secret, purpose.value)
        try:
            claims = payload["user"]
            return EmailTokenData(
                user_id=int(claims["id"]),
                version=int(claims["version"]),
                token_id=str(claims["token_id"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise Unauthorized(f"Malformed {purpose.value} token payload") from exc

    def issue_auth_pair(self, user: User) -> tuple[str, str]:
        """Return (access_token, refresh_token) for a freshly authenticated user."""
        return self.issue_access(user), self.issue_purpose(TokenPurpose.refresh, user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _base_claims(self, subject: str, ttl: int) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "iss": self._issuer,
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }

    def _encode(self, payload: dict, secret: str) -> str:
        try:
            return jwt.encode(payload, secret, algorithm=_ALGORITHM)
        except JWTError as exc:
            logger.error("Token signing failed for sub=%s", payload.get("sub"))
            raise InternalServerError("Token signing failed") from exc

    def _decode(self, token: str, secret: str, subject: str) -> dict:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                subject=subject,
            )
        except JWTError as exc:
            raise Unauthorized(f"Invalid {subject} token: {exc}") from exc
