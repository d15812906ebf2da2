from __future__ import annotations

import base64
import binascii
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkeeper.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_JWT_ALGORITHMS = frozenset(
    {
        "HS256",
        "HS384",
        "HS512",
        "RS256",
        "RS384",
        "RS512",
        "ES256",
        "ES384",
        "ES512",
    }
)


class SessionMode(str, Enum):
    """How many live refresh sessions a subject may hold.

    - SINGLE: a new session replaces (and blacklists) the subject's previous one
    - MULTI: sessions accumulate in a per-subject index until revoked or expired
    """

    SINGLE = "single"
    MULTI = "multi"


class StoreFailurePolicy(str, Enum):
    """Outcome of the access-token blacklist check when the store cannot answer."""

    CLOSED = "closed"
    OPEN = "open"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def decode_key_bytes(value: str) -> bytes:
    """Decode base64url (padding optional) key material."""
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(value + padding)


class Settings(BaseModel):
    """Injected configuration for token issuance, session storage and identity exchange."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the static identity provider and in-memory fallbacks.",
    )

    # Signing
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    jwt_secret: str | None = env_field(None, "JWT_SECRET", description="HS* shared secret")
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY", description="PEM")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY", description="PEM")
    jwt_issuer: str = env_field("authkeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("authkeeper-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        5, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated on exp/iat"
    )

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(14, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_bytes: int = env_field(32, "REFRESH_TOKEN_BYTES")

    # Session store
    session_encryption_key: str | None = env_field(
        None,
        "SESSION_ENCRYPTION_KEY",
        description="base64url AES key (16, 24 or 32 bytes) for session records at rest",
    )
    session_mode: SessionMode = env_field(SessionMode.SINGLE, "SESSION_MODE")
    store_failure_policy: StoreFailurePolicy = env_field(
        StoreFailurePolicy.CLOSED,
        "STORE_FAILURE_POLICY",
        description="Blacklist check outcome on store timeout/outage during validation",
    )
    store_timeout_seconds: float = env_field(1.0, "STORE_TIMEOUT_SECONDS")
    validate_store_timeout_seconds: float = env_field(
        0.25, "VALIDATE_STORE_TIMEOUT_SECONDS"
    )
    store_retry_attempts: int = env_field(2, "STORE_RETRY_ATTEMPTS")
    store_retry_backoff_seconds: float = env_field(0.05, "STORE_RETRY_BACKOFF_SECONDS")

    # Login attempt limiting
    login_rate_limit_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Identity provider
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_token_url: str = env_field(
        "https://oauth2.googleapis.com/token", "GOOGLE_TOKEN_URL"
    )
    google_jwks_url: str = env_field(
        "https://www.googleapis.com/oauth2/v3/certs", "GOOGLE_JWKS_URL"
    )
    google_hosted_domain: str | None = env_field(
        None,
        "GOOGLE_HOSTED_DOMAIN",
        description="Restrict logins to one Google Workspace domain",
    )
    identity_timeout_seconds: float = env_field(3.0, "IDENTITY_TIMEOUT_SECONDS")
    default_role: str = env_field("user", "DEFAULT_ROLE")

    # Randomness
    entropy_floor: float = env_field(
        0.75, "ENTROPY_FLOOR", description="Minimum normalized Shannon entropy (0..1)"
    )
    entropy_max_attempts: int = env_field(5, "ENTROPY_MAX_ATTEMPTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(f"unsupported JWT algorithm: {value}")
        return normalized

    @field_validator("session_mode")
    @classmethod
    def _validate_session_mode(cls, value: SessionMode) -> SessionMode:
        return SessionMode(value)

    @field_validator("store_failure_policy")
    @classmethod
    def _validate_failure_policy(cls, value: StoreFailurePolicy) -> StoreFailurePolicy:
        return StoreFailurePolicy(value)

    @field_validator("session_encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            raw = decode_key_bytes(value.strip())
        except (binascii.Error, ValueError) as exc:
            raise ValueError("session_encryption_key must be base64url encoded") from exc
        if len(raw) not in (16, 24, 32):
            raise ValueError("session_encryption_key must decode to 16, 24 or 32 bytes")
        return value.strip()

    @field_validator("entropy_floor")
    @classmethod
    def _validate_entropy_floor(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("entropy_floor must be between 0 and 1")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _validate_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("jwt_leeway_seconds cannot be negative")
        if value > 60:
            logger.warning("jwt_leeway_large", leeway_seconds=value)
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
