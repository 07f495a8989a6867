import base64
import os

import pytest

from clinicore.config import (
    ConfigurationError,
    Environment,
    Settings,
    resolve_master_key,
    resolve_signing_secret,
)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("APP_ENV", " Staging ")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("TWO_FACTOR_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("DEFAULT_LOCALE", "EN")

    settings = Settings.from_env()

    assert settings.environment is Environment.STAGING
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.two_factor_max_attempts == 7
    assert settings.default_locale == "en"


def test_unsupported_locale_rejected():
    with pytest.raises(ValueError):
        Settings(default_locale="fr")


def test_signing_secret_priority():
    settings = Settings(jwt_secret=" second ", session_secret="third")
    assert resolve_signing_secret(settings) == "second"
    assert resolve_signing_secret(Settings(auth_secret="first", jwt_secret="second")) == "first"


def test_signing_secret_required_in_production():
    with pytest.raises(ConfigurationError):
        resolve_signing_secret(Settings(environment="production"))


def test_ephemeral_secret_outside_production():
    first = resolve_signing_secret(Settings(environment="development"))
    second = resolve_signing_secret(Settings(environment="development"))
    assert first and second and first != second


def test_master_key_from_environment():
    raw = os.urandom(32)
    settings = Settings(encryption_master_key=base64.b64encode(raw).decode())
    assert resolve_master_key(settings, "secret") == raw


@pytest.mark.parametrize("value", ["not base64!!", base64.b64encode(b"short").decode()])
def test_bad_master_key(value):
    with pytest.raises(ConfigurationError):
        resolve_master_key(Settings(encryption_master_key=value), "secret")


def test_master_key_required_in_production():
    with pytest.raises(ConfigurationError):
        resolve_master_key(Settings(environment="production"), "secret")


def test_derived_master_key_is_stable():
    settings = Settings(environment="test")
    derived = resolve_master_key(settings, "secret")
    assert len(derived) == 32
    assert derived == resolve_master_key(settings, "secret")
    assert derived != resolve_master_key(settings, "other")


def test_oauth_client_lookup():
    settings = Settings(gemini_client_id="g", gemini_redirect_uri="https://x/cb")
    assert settings.oauth_client("gemini") == ("g", "https://x/cb")
    assert settings.oauth_client("google_calendar") == (None, None)
    assert settings.oauth_client("unknown") == (None, None)
