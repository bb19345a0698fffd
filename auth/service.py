"""
auth/service.py -- AuthService: the authentication workflows.

Composes TokenService, the password helpers, SessionRevocationStore,
TwoFactorCodeStore, OAuthFlowCoordinator, Mailer and UserStore into the
operations the HTTP layer exposes.

State machine:
  identity      Unconfirmed --confirm_email--> Confirmed
  login attempt CredentialsChecked --> Denied | TwoFactorPending | Authenticated

Rules applied everywhere:
  - Every Unauthorized carries the generic "Invalid credentials" message; the
    real cause is only in internal_cause (logged by the API layer).
  - Version bumps (confirmation, reset, password change, provider claim) are
    conditional updates on the version the token was issued at. A purpose
    token drives at most one mutation.
  - Refresh tokens rotate: a successful refresh revokes the presented token id
    with an atomic revoke-if-absent before new tokens are issued. A token
    presented twice gets Unauthorized on the second use.
  - touch() is called before every persist.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.errors import BadRequest, Conflict, Forbidden, Unauthorized
from auth.models import AuthTokens, OAuthProvider, OAuthProviderLink, SignInResult, TokenPurpose, User, UserProfile
from auth.passwords import equalize_timing, hash_password, needs_rehash, verify_password
from auth.store import touch
from auth.two_factor import generate_code

if TYPE_CHECKING:
    from auth.mailer import Mailer
    from auth.oauth import OAuthFlowCoordinator
    from auth.revocation import SessionRevocationStore
    from auth.store import UserStore
    from auth.tokens import TokenService
    from auth.two_factor import TwoFactorCodeStore

logger = logging.getLogger("authgate.auth")

PASSWORDS_DO_NOT_MATCH = "Passwords do not match"


def _format_name(name: str) -> str:
    """Collapse whitespace and capitalize each word: '  jane   DOE ' -> 'Jane Doe'."""
    return " ".join(part[:1].upper() + part[1:].lower() for part in name.split())


class AuthService:
    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        revocations: SessionRevocationStore,
        codes: TwoFactorCodeStore,
        oauth: OAuthFlowCoordinator,
        mailer: Mailer,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.revocations = revocations
        self.codes = codes
        self.oauth = oauth
        self.mailer = mailer

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    def sign_up(
        self,
        email: str,
        first_name: str,
        last_name: str,
        date_of_birth: date,
        password1: str,
        password2: str,
    ) -> User:
        """Create an unconfirmed local account and mail its confirmation link."""
        if password1 != password2:
            raise BadRequest(PASSWORDS_DO_NOT_MATCH)
        email = email.lower()
        if self.users.get_by_email(email) is not None:
            raise Conflict("User already exists")

        user = touch(
            User(
                email=email,
                first_name=_format_name(first_name),
                last_name=_format_name(last_name),
                username="",
                date_of_birth=date_of_birth,
                hashed_password=hash_password(password1),
                confirmed=False,
            )
        )
        try:
            user = self.users.create_user(user, OAuthProvider.local, two_factor=True)
        except IntegrityError as exc:
            if self.users.get_by_email(email) is None:
                raise
            # A concurrent sign-up won the race for this email.
            raise Conflict("User already exists") from exc

        token = self.tokens.issue_purpose(TokenPurpose.confirmation, user)
        self.mailer.send_confirmation_email(user.email, user.full_name, token)
        logger.info("User signed up id=%s", user.id)
        return user

    def confirm_email(self, confirmation_token: str) -> AuthTokens:
        data = self.tokens.verify_purpose(TokenPurpose.confirmation, confirmation_token)
        user = self.users.get_by_version(data.user_id, data.version)
        if user is None:
            raise Unauthorized("Confirmation token version is stale or user is gone")

        user.confirmed = True
        self._bump_version(user, data.version)
        logger.info("User confirmed id=%s", user.id)
        return self._issue_tokens(user)

    def sign_in(self, email: str, password: str) -> SignInResult:
        """Check credentials; return tokens, or email a code when two-factor is on."""
        email = email.lower()
        user = self.users.get_by_email(email)
        if user is None:
            equalize_timing(password)
            raise Unauthorized("No user with that email")
        if not verify_password(password, user.hashed_password):
            raise Unauthorized(f"Wrong password for user id={user.id}")

        if not user.confirmed:
            token = self.tokens.issue_purpose(TokenPurpose.confirmation, user)
            self.mailer.send_confirmation_email(user.email, user.full_name, token)
            raise Unauthorized(f"User id={user.id} is not confirmed; confirmation re-sent")
        if user.suspended:
            raise Forbidden("Your account has been suspended")

        link = self.users.get_provider(email, OAuthProvider.local)
        if link is None:
            raise Unauthorized(f"User id={user.id} has no local provider")

        if needs_rehash(user.hashed_password):
            user.hashed_password = hash_password(password)
            self.users.update_user(touch(user))

        if link.two_factor:
            code = generate_code()
            self.codes.create(user.email, code)
            self.mailer.send_access_email(user.email, user.full_name, code)
            logger.info("Access code sent to user id=%s", user.id)
            return SignInResult()

        logger.info("User signed in id=%s", user.id)
        return SignInResult(tokens=self._issue_tokens(user))

    def confirm_sign_in(self, email: str, code: str) -> AuthTokens:
        email = email.lower()
        user = self.users.get_by_email(email)
        if user is None:
            raise Unauthorized("No user with that email")
        if not self.codes.validate(email, code):
            raise Unauthorized(f"Invalid or expired access code for user id={user.id}")
        if user.suspended:
            raise Forbidden("Your account has been suspended")
        if not user.confirmed:
            raise Unauthorized(f"User id={user.id} is not confirmed")
        logger.info("User signed in with access code id=%s", user.id)
        return self._issue_tokens(user)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh_token(self, refresh_token: str) -> AuthTokens:
        """Rotate: revoke the presented refresh token and issue a new pair."""
        data = self.tokens.verify_purpose(TokenPurpose.refresh, refresh_token)
        if self.revocations.is_revoked(data.token_id):
            raise Unauthorized("Refresh token is blacklisted")

        user = self.users.get_by_version(data.user_id, data.version)
        if user is None:
            raise Unauthorized("Refresh token version is stale or user is gone")
        if user.suspended:
            raise Unauthorized(f"User id={user.id} is suspended")

        if not self.revocations.revoke_if_absent(data.token_id, user.id, data.expires_at):
            raise Unauthorized("Refresh token already rotated")
        return self._issue_tokens(user)

    def sign_out(self, refresh_token: str) -> None:
        data = self.tokens.verify_purpose(TokenPurpose.refresh, refresh_token)
        if not self.revocations.revoke_if_absent(data.token_id, data.user_id, data.expires_at):
            raise Unauthorized("Refresh token is blacklisted")
        logger.info("User signed out id=%s", data.user_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Mail a reset link if a local account exists. Always returns normally."""
        email = email.lower()
        if self.users.get_provider(email, OAuthProvider.local) is None:
            logger.info("Password reset requested for an email without a local account")
            return
        user = self.users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for a missing user")
            return

        token = self.tokens.issue_purpose(TokenPurpose.reset, user)
        self.mailer.send_password_reset_email(user.email, user.full_name, token)
        logger.info("Password reset sent to user id=%s", user.id)

    def reset_password(self, reset_token: str, password1: str, password2: str) -> None:
        data = self.tokens.verify_purpose(TokenPurpose.reset, reset_token)
        if password1 != password2:
            raise BadRequest(PASSWORDS_DO_NOT_MATCH)

        user = self.users.get_by_version(data.user_id, data.version)
        if user is None:
            raise Unauthorized("Reset token version is stale or user is gone")

        user.hashed_password = hash_password(password1)
        self._bump_version(user, data.version)
        logger.info("Password reset for user id=%s", user.id)

    def update_password(
        self,
        access_token: str,
        refresh_token: str,
        old_password: str,
        password1: str,
        password2: str,
    ) -> AuthTokens:
        """Change the password of the signed-in user and start a fresh session.

        Both tokens must belong to the same user and the refresh token must
        carry the user's current version, so a session opened before an earlier
        password change cannot change the password again.
        """
        user_id, _ = self.tokens.verify_access(access_token)
        data = self.tokens.verify_purpose(TokenPurpose.refresh, refresh_token)
        if data.user_id != user_id:
            raise Unauthorized("Access and refresh tokens belong to different users")
        if password1 != password2:
            raise BadRequest(PASSWORDS_DO_NOT_MATCH)
        if self.revocations.is_revoked(data.token_id):
            raise Unauthorized("Refresh token is blacklisted")

        user = self.users.get_by_id(user_id)
        if user is None:
            raise Unauthorized(f"User id={user_id} not found")
        if user.version != data.version:
            raise Unauthorized(f"Refresh token version {data.version} is stale for user id={user.id}")
        if not verify_password(old_password, user.hashed_password):
            raise Unauthorized(f"Wrong current password for user id={user.id}")

        if not self.revocations.revoke_if_absent(data.token_id, user.id, data.expires_at):
            raise Unauthorized("Refresh token already used")
        user.hashed_password = hash_password(password1)
        self._bump_version(user, data.version)
        logger.info("Password updated for user id=%s", user.id)
        return self._issue_tokens(user)

    def update_two_factor(self, access_token: str, two_factor: bool) -> None:
        user_id, _ = self.tokens.verify_access(access_token)
        user = self.users.get_by_id(user_id)
        if user is None:
            raise Unauthorized(f"User id={user_id} not found")
        link = self.users.get_provider(user.email, OAuthProvider.local)
        if link is None:
            raise Unauthorized(f"User id={user.id} has no local provider")

        link.two_factor = two_factor
        self.users.update_provider(touch(link))
        logger.info("Two-factor set to %s for user id=%s", two_factor, user.id)

    # ------------------------------------------------------------------
    # External providers
    # ------------------------------------------------------------------

    def oauth_sign_in(self, provider: OAuthProvider) -> str:
        return self.oauth.initiate(provider)

    def oauth_callback(self, provider: OAuthProvider, code: str, state: str) -> AuthTokens:
        profile = self.oauth.complete(provider, code, state)
        user = self._find_or_create_external(provider, profile)
        if user.suspended:
            raise Forbidden("Your account has been suspended")
        logger.info("User signed in with %s id=%s", provider.value, user.id)
        return self._issue_tokens(user)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_or_create_external(self, provider: OAuthProvider, profile: UserProfile) -> User:
        user = self.users.get_by_email(profile.email)
        if user is not None:
            if self.users.get_provider(user.email, provider) is None:
                try:
                    self.users.create_provider(touch(OAuthProviderLink(user_email=user.email, provider=provider.value)))
                except IntegrityError:
                    logger.info("Provider link %s for user id=%s created concurrently", provider.value, user.id)
            if not user.confirmed:
                user = self._claim_unconfirmed(user, provider)
            return user

        user = touch(
            User(
                email=profile.email,
                first_name=_format_name(profile.first_name),
                last_name=_format_name(profile.last_name),
                username="",
                date_of_birth=profile.date_of_birth,
                hashed_password=None,
                confirmed=True,
                picture=profile.picture,
            )
        )
        try:
            user = self.users.create_user(user, provider, two_factor=False)
        except IntegrityError:
            existing = self.users.get_by_email(profile.email)
            if existing is None:
                raise
            return existing
        logger.info("User created from %s profile id=%s", provider.value, user.id)
        return user

    def _claim_unconfirmed(self, user: User, provider: OAuthProvider) -> User:
        """Confirm a never-confirmed local account and drop its unverified password.

        The provider has verified the email. The version bump kills any
        confirmation token already mailed for the local registration.
        """
        user.confirmed = True
        user.hashed_password = None
        self._bump_version(user, user.version)
        logger.info("Unconfirmed user id=%s claimed through %s", user.id, provider.value)
        return user

    def _bump_version(self, user: User, expected_version: int) -> None:
        user.version = expected_version + 1
        if not self.users.update_user(touch(user), expected_version=expected_version):
            raise Unauthorized(f"Version {expected_version} of user id={user.id} changed concurrently")

    def _issue_tokens(self, user: User) -> AuthTokens:
        access_token, refresh_token = self.tokens.issue_auth_pair(user)
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl,
        )
