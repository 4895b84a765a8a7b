import pytest
from pydantic import ValidationError

from farmauth.config import Settings, get_settings, reset_settings_cache

ACCESS = "a" * 32
REFRESH = "r" * 32


def test_defaults():
    settings = Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH)
    assert settings.access_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.otp_length == 4
    assert settings.otp_ttl_minutes == 10
    assert settings.dispatch_timeout_seconds == 10.0
    assert settings.cookie_secure is True


@pytest.mark.parametrize(
    "access, refresh",
    [
        (None, REFRESH),
        (ACCESS, None),
        ("short", REFRESH),
        (ACCESS, ACCESS),
    ],
    ids=["missing-access", "missing-refresh", "weak-access", "shared-secret"],
)
def test_secrets_are_validated(access, refresh):
    with pytest.raises(ValidationError):
        Settings(access_token_secret=access, refresh_token_secret=refresh)


def test_from_env_reads_declared_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", ACCESS)
    monkeypatch.setenv("REFRESH_TOKEN_SECRET", REFRESH)
    monkeypatch.setenv("OTP_LENGTH", "6")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("COOKIE_SECURE", "false")

    settings = Settings.from_env()

    assert settings.otp_length == 6
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.cookie_secure is False


def test_otp_length_bounds():
    with pytest.raises(ValidationError):
        Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH, otp_length=3)


def test_settings_cache_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("APP_NAME", "Shamba")
    reset_settings_cache()
    assert get_settings().app_name == "Shamba"
