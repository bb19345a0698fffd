"""
auth/oauth.py -- External OAuth2 login: authorization code + PKCE with CSRF state.

Uses Authlib's requests-based OAuth2Session for the protocol work (building
the authorize URL with the S256 code challenge, exchanging the code together
with the verifier, attaching the bearer token to the userinfo call). State and
verifier are generated here and kept server-side in the shared KeyValueCache,
so any API instance can finish a flow another instance started.

Flow:
  initiate(provider)
      state    = random token (CSRF)
      verifier = random PKCE code verifier
      cache["{provider}:{state}"] = {provider, verifier, created_at}  (TTL 5 min)
      -> provider authorize URL carrying state + code_challenge

  complete(provider, code, state)
      pop cache["{provider}:{state}"]   -- single use, replay fails
      reject if missing, older than 5 minutes, or bound to another provider
      exchange code + verifier at the token endpoint
      GET userinfo with the access token
      -> normalized UserProfile (InternalServerError if a field is missing)

Supported providers:
  google   -- OpenID userinfo v3; birthdate as YYYY-MM-DD.
  facebook -- Graph API /me; birthday as MM/DD/YYYY.

A provider is only enabled when both its client id and secret are configured.

Layer rule: no imports from api/. Imports from core/ and cache/ are allowed.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable

import requests
from authlib.common.security import generate_token
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from authlib.oauth2 import OAuth2Error

from auth.errors import InternalServerError, NotFound, Unauthorized
from auth.models import OAuthProvider, UserProfile
from cache.store import KeyValueCache

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.oauth")

CSRF_STATE_TTL = 5 * 60
_STATE_LENGTH = 32
_VERIFIER_LENGTH = 64  # RFC 7636: 43..128 characters

# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthProviderConfig:
    name: OAuthProvider
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    redirect_uri: str
    scopes: tuple[str, ...]
    userinfo_params: dict = field(default_factory=dict)


def build_provider_configs(settings: Settings) -> dict[OAuthProvider, OAuthProviderConfig]:
    """Return configs for every provider whose credentials are set."""
    callback_base = f"{settings.backend_url.rstrip('/')}/api/auth/ext"
    configs: dict[OAuthProvider, OAuthProviderConfig] = {}

    if settings.google_client_id and settings.google_client_secret:
        configs[OAuthProvider.google] = OAuthProviderConfig(
            name=OAuthProvider.google,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://www.googleapis.com/oauth2/v3/userinfo",
            redirect_uri=f"{callback_base}/google/callback",
            scopes=(
                "https://www.googleapis.com/auth/userinfo.email",
                "https://www.googleapis.com/auth/userinfo.profile",
                "https://www.googleapis.com/auth/user.birthday.read",
            ),
        )
        logger.info("Google OAuth provider registered")

    if settings.facebook_client_id and settings.facebook_client_secret:
        configs[OAuthProvider.facebook] = OAuthProviderConfig(
            name=OAuthProvider.facebook,
            client_id=settings.facebook_client_id,
            client_secret=settings.facebook_client_secret,
            authorize_url="https://www.facebook.com/v18.0/dialog/oauth",
            token_url="https://graph.facebook.com/v18.0/oauth/access_token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://graph.facebook.com/v18.0/me",
            redirect_uri=f"{callback_base}/facebook/callback",
            scopes=("email", "public_profile", "user_birthday"),
            userinfo_params={"fields": "id,first_name,last_name,email,birthday,picture"},
        )
        logger.info("Facebook OAuth provider registered")

    return configs


# ---------------------------------------------------------------------------
# Profile normalization -- provider-specific
# ---------------------------------------------------------------------------


def _required(data: dict, key: str, provider: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise InternalServerError(f"{provider} userinfo: missing {key}")
    return value


def _parse_date(value: str, fmt: str, provider: str) -> date:
    try:
        return datetime.strptime(value, fmt).date()
    except ValueError as exc:
        raise InternalServerError(f"{provider} userinfo: unparseable birth date") from exc


def _google_profile(data: dict) -> UserProfile:
    return UserProfile(
        first_name=_required(data, "given_name", "google"),
        last_name=_required(data, "family_name", "google"),
        email=_required(data, "email", "google").lower(),
        date_of_birth=_parse_date(_required(data, "birthdate", "google"), "%Y-%m-%d", "google"),
        picture=data.get("picture") or None,
    )


def _facebook_profile(data: dict) -> UserProfile:
    picture = data.get("picture")
    picture_url = None
    if isinstance(picture, dict) and isinstance(picture.get("data"), dict):
        picture_url = picture["data"].get("url") or None
    return UserProfile(
        first_name=_required(data, "first_name", "facebook"),
        last_name=_required(data, "last_name", "facebook"),
        email=_required(data, "email", "facebook").lower(),
        date_of_birth=_parse_date(_required(data, "birthday", "facebook"), "%m/%d/%Y", "facebook"),
        picture=picture_url,
    )


_PROFILE_MAPPERS: dict[OAuthProvider, Callable[[dict], UserProfile]] = {
    OAuthProvider.google: _google_profile,
    OAuthProvider.facebook: _facebook_profile,
}


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class OAuthFlowCoordinator:
    """Runs the authorization-code + PKCE flow for the configured providers.

    session_factory builds the OAuth2 client for one provider; tests pass a
    fake with the same create_authorization_url / fetch_token / get surface.
    """

    def __init__(
        self,
        settings: Settings,
        cache: KeyValueCache,
        session_factory: Callable[..., Any] = OAuth2Session,
    ) -> None:
        self._providers = build_provider_configs(settings)
        self._cache = cache
        self._session_factory = session_factory

    @property
    def enabled_providers(self) -> list[str]:
        return [provider.value for provider in self._providers]

    def initiate(self, provider: OAuthProvider) -> str:
        """Persist a fresh CSRF state + PKCE verifier and return the authorize URL."""
        config = self._get_config(provider)
        state = generate_token(_STATE_LENGTH)
        verifier = generate_token(_VERIFIER_LENGTH)
        session = self._new_session(config)
        url, _ = session.create_authorization_url(config.authorize_url, state=state, code_verifier=verifier)
        record = {"provider": provider.value, "verifier": verifier, "created_at": time.time()}
        if not self._cache.add(self._state_key(provider, state), json.dumps(record), CSRF_STATE_TTL):
            raise InternalServerError("CSRF state collision")
        return url

    def complete(self, provider: OAuthProvider, code: str, state: str) -> UserProfile:
        """Consume the CSRF state, exchange the code and return the normalized profile."""
        config = self._get_config(provider)
        verifier = self._consume_state(provider, state)
        session = self._new_session(config)

        try:
            session.fetch_token(config.token_url, code=code, code_verifier=verifier)
        except (OAuthError, OAuth2Error) as exc:
            # The provider rejected the code: expired, reused, or verifier mismatch.
            raise Unauthorized(f"{provider.value} code exchange rejected: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.error("%s token endpoint failed: %s", provider.value, exc)
            raise InternalServerError(f"{provider.value} token exchange failed") from exc

        try:
            resp = session.get(config.userinfo_url, params=config.userinfo_params or None)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("%s userinfo request failed: %s", provider.value, exc)
            raise InternalServerError(f"{provider.value} userinfo request failed") from exc

        if not isinstance(data, dict):
            raise InternalServerError(f"{provider.value} userinfo: unexpected payload")
        return _PROFILE_MAPPERS[provider](data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_config(self, provider: OAuthProvider) -> OAuthProviderConfig:
        config = self._providers.get(provider)
        if config is None:
            raise NotFound(f"OAuth provider {provider.value} is not enabled")
        return config

    def _new_session(self, config: OAuthProviderConfig):
        return self._session_factory(
            client_id=config.client_id,
            client_secret=config.client_secret,
            scope=" ".join(config.scopes),
            redirect_uri=config.redirect_uri,
            code_challenge_method="S256",
        )

    def _consume_state(self, provider: OAuthProvider, state: str) -> str:
        raw = self._cache.pop(self._state_key(provider, state))
        if raw is None:
            raise Unauthorized("Unknown, reused or expired CSRF state")
        record = json.loads(raw)
        if record.get("provider") != provider.value:
            raise Unauthorized("CSRF state bound to another provider")
        if time.time() - float(record.get("created_at", 0)) > CSRF_STATE_TTL:
            raise Unauthorized("CSRF state expired")
        return record["verifier"]

    @staticmethod
    def _state_key(provider: OAuthProvider, state: str) -> str:
        return f"{provider.value}:{state}"
