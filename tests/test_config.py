import pytest
from pydantic import ValidationError

from authkeeper.config import (
    SessionMode,
    Settings,
    StoreFailurePolicy,
    decode_key_bytes,
    get_settings,
    reset_settings_cache,
)
from conftest import TEST_ENCRYPTION_KEY


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("SESSION_MODE", "multi")
    monkeypatch.setenv("STORE_FAILURE_POLICY", "open")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "2")
    monkeypatch.setenv("JWT_ALGORITHM", "hs512")

    settings = Settings.from_env()

    assert settings.session_mode is SessionMode.MULTI
    assert settings.store_failure_policy is StoreFailurePolicy.OPEN
    assert settings.access_token_ttl_seconds == 15 * 60
    assert settings.refresh_token_ttl_seconds == 2 * 24 * 60 * 60
    assert settings.jwt_algorithm == "HS512"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("DEFAULT_ROLE", "viewer")
    assert get_settings().default_role == first.default_role
    reset_settings_cache()
    assert get_settings().default_role == "viewer"


def test_defaults_fail_closed_in_single_mode():
    settings = Settings()
    assert settings.session_mode is SessionMode.SINGLE
    assert settings.store_failure_policy is StoreFailurePolicy.CLOSED
    assert settings.jwt_algorithm == "RS256"


@pytest.mark.parametrize("algorithm", ["none", "HS1024", "PS256x"])
def test_unsupported_algorithm_rejected(algorithm):
    with pytest.raises(ValidationError):
        Settings(jwt_algorithm=algorithm)


@pytest.mark.parametrize("value", ["sessions", "both"])
def test_unknown_session_mode_rejected(value):
    with pytest.raises(ValidationError):
        Settings(session_mode=value)


def test_encryption_key_length_checked():
    assert Settings(session_encryption_key=TEST_ENCRYPTION_KEY).session_encryption_key
    assert len(decode_key_bytes(TEST_ENCRYPTION_KEY)) == 32
    with pytest.raises(ValidationError):
        Settings(session_encryption_key="c2hvcnQ")  # "short"
    with pytest.raises(ValidationError):
        Settings(session_encryption_key="***not base64***")


def test_decode_key_bytes_accepts_missing_padding():
    assert decode_key_bytes("YWJj") == b"abc"
    assert decode_key_bytes("YWI") == b"ab"


@pytest.mark.parametrize("floor", [-0.1, 1.5])
def test_entropy_floor_bounds(floor):
    with pytest.raises(ValidationError):
        Settings(entropy_floor=floor)


def test_negative_leeway_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_leeway_seconds=-1)
