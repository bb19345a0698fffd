"""Unit tests for core/config.py -- the secret policy and dev-mode defaults."""

from __future__ import annotations

import uuid

import pytest
from pydantic import ValidationError

from core.config import Settings

_SECRETS = {
    "access_secret": "a" * 32,
    "confirmation_secret": "b" * 32,
    "reset_secret": "c" * 32,
    "refresh_secret": "d" * 32,
}
_API_ID = "6f1c1c9e-3f0b-4f5e-9a55-0d9a0c2f7b11"


def test_debug_mode_generates_secrets_and_api_id() -> None:
    settings = Settings(debug=True)
    assert len(settings.access_secret) >= 32
    assert settings.access_secret != settings.refresh_secret
    uuid.UUID(settings.api_id)


def test_production_requires_secrets(monkeypatch) -> None:
    monkeypatch.delenv("DEBUG", raising=False)
    with pytest.raises(ValidationError):
        Settings(debug=False, api_id=_API_ID)


def test_production_accepts_complete_config() -> None:
    settings = Settings(debug=False, api_id=_API_ID, **_SECRETS)
    assert settings.refresh_secret == "d" * 32


def test_short_secret_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=False, api_id=_API_ID, **{**_SECRETS, "reset_secret": "short"})


def test_secrets_must_be_distinct() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=False, api_id=_API_ID, **{**_SECRETS, "refresh_secret": "a" * 32})


def test_api_id_must_be_uuid() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=False, api_id="not-a-uuid", **_SECRETS)


def test_settings_are_immutable() -> None:
    settings = Settings(debug=True)
    with pytest.raises(ValidationError):
        settings.access_expiration = 1


def test_cache_url_defaults_to_database_url() -> None:
    settings = Settings(debug=True, database_url="sqlite:///x.db")
    assert settings.shared_cache_url == "sqlite:///x.db"
    assert Settings(debug=True, cache_url="sqlite:///c.db").shared_cache_url == "sqlite:///c.db"
