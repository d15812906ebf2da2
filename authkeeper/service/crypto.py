"""Signing, at-rest encryption, randomness and hashing primitives.

Everything here is pure over its inputs: no I/O, no shared mutable state.
Key objects are built once at startup and only read afterwards, so the
functions are safe to call from any number of concurrent requests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import math
import os
import secrets
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authkeeper.config import Settings, decode_key_bytes
from authkeeper.logging import get_logger
from authkeeper.service.errors import (
    AudienceMismatchError,
    InsufficientEntropyError,
    InvalidSignatureError,
    IssuerMismatchError,
    SigningError,
    TamperedDataError,
    TokenExpiredError,
)

logger = get_logger(__name__)

REQUIRED_CLAIMS = ("exp", "iat", "sub", "iss", "aud")
NONCE_LENGTH = 12
TAG_LENGTH = 16
MIN_TOKEN_BYTES = 16
SESSION_ASSOCIATED_DATA = b"authkeeper.session.v1"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _normalize_pem(value: Optional[str]) -> Optional[str]:
    # PEM blocks passed through env vars often arrive with escaped newlines
    if not value:
        return None
    return value.replace("\\n", "\n").strip()


@dataclass(frozen=True)
class KeyMaterial:
    """Signing/verification keys for one algorithm."""

    algorithm: str
    signing_key: Optional[str]
    verification_key: Optional[str]

    @property
    def is_symmetric(self) -> bool:
        return self.algorithm.startswith("HS")

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyMaterial":
        algorithm = settings.jwt_algorithm
        if algorithm.startswith("HS"):
            return cls(algorithm, settings.jwt_secret, settings.jwt_secret)
        private_pem = _normalize_pem(settings.jwt_private_key)
        public_pem = _normalize_pem(settings.jwt_public_key)
        if private_pem and not public_pem:
            public_pem = derive_public_pem(private_pem)
        return cls(algorithm, private_pem, public_pem)


def derive_public_pem(private_pem: str) -> str:
    try:
        private_key = serialization.load_pem_private_key(
            private_pem.encode(), password=None
        )
    except (ValueError, TypeError) as exc:
        raise SigningError("private key could not be loaded") from exc
    return (
        private_key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


def sign_claims(
    claims: dict[str, Any],
    key: Optional[str],
    algorithm: str,
    expires_in: timedelta,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Sign ``claims`` as a JWT valid for ``expires_in`` from ``now``."""
    if not key:
        raise SigningError("signing key material is missing")
    issued = now or datetime.now(timezone.utc)
    payload = dict(claims)
    payload["iat"] = int(issued.timestamp())
    payload["exp"] = int((issued + expires_in).timestamp())
    try:
        return jwt.encode(payload, key, algorithm=algorithm)
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise SigningError(f"token signing failed: {type(exc).__name__}") from exc


def verify_token(
    token: str,
    key: Optional[str],
    algorithm: str,
    *,
    issuer: str,
    audience: str,
    leeway: int,
) -> dict[str, Any]:
    """Verify signature and registered claims; return the payload.

    Only ``algorithm`` is accepted, whatever the token header says.
    """
    if not key:
        raise InvalidSignatureError("verification key material is missing")
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            issuer=issuer,
            audience=audience,
            leeway=leeway,
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("token expired") from exc
    except jwt.InvalidIssuerError as exc:
        raise IssuerMismatchError("issuer mismatch") from exc
    except jwt.InvalidAudienceError as exc:
        raise AudienceMismatchError("audience mismatch") from exc
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise InvalidSignatureError(f"token rejected: {type(exc).__name__}") from exc


class SessionCipher:
    """AES-GCM authenticated encryption for session records at rest.

    Blob layout: base64url(nonce || ciphertext || tag).
    """

    def __init__(self, key: bytes, *, associated_data: bytes = SESSION_ASSOCIATED_DATA) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("AES-GCM key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(key)
        self._associated_data = associated_data

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionCipher":
        if not settings.session_encryption_key:
            raise ValueError("session encryption key is not configured")
        return cls(decode_key_bytes(settings.session_encryption_key))

    def encrypt(self, plaintext: bytes | str) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, data, self._associated_data)
        return _b64encode(nonce + sealed)

    def decrypt(self, blob: str) -> bytes:
        try:
            raw = decode_key_bytes(blob)
        except (binascii.Error, ValueError) as exc:
            raise TamperedDataError("encrypted payload is not valid base64") from exc
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise TamperedDataError("encrypted payload is truncated")
        nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        try:
            return self._aead.decrypt(nonce, sealed, self._associated_data)
        except InvalidTag as exc:
            raise TamperedDataError("encrypted payload failed authentication") from exc


def generate_encryption_key(byte_length: int = 32) -> str:
    """Fresh base64url AES key suitable for ``SESSION_ENCRYPTION_KEY``."""
    return _b64encode(AESGCM.generate_key(bit_length=byte_length * 8))


def shannon_entropy(data: bytes) -> float:
    """Shannon entropy of ``data`` normalized to the maximum its length allows.

    A sample of n bytes can show at most log2(min(n, 256)) bits per byte, so
    the score is comparable across token lengths. Returns 0..1.
    """
    length = len(data)
    if length < 2:
        return 0.0
    entropy = 0.0
    for count in Counter(data).values():
        probability = count / length
        entropy -= probability * math.log2(probability)
    return entropy / math.log2(min(length, 256))


def random_token(
    byte_length: int = 32,
    *,
    min_entropy: float = 0.75,
    max_attempts: int = 5,
    source: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    """Return a base64url CSPRNG token whose bytes pass the entropy floor.

    Low-entropy draws are discarded and redrawn; after ``max_attempts``
    consecutive failures the source is considered broken.
    """
    if byte_length < MIN_TOKEN_BYTES:
        raise ValueError(f"byte_length must be at least {MIN_TOKEN_BYTES}")
    for attempt in range(1, max(1, max_attempts) + 1):
        raw = source(byte_length)
        score = shannon_entropy(raw) if len(raw) == byte_length else 0.0
        if score >= min_entropy:
            return _b64encode(raw)
        logger.warning(
            "random_token_low_entropy",
            attempt=attempt,
            entropy=round(score, 3),
            floor=min_entropy,
        )
    raise InsufficientEntropyError(
        "random source produced low-entropy output on every attempt"
    )


def hash_value(value: str) -> str:
    """One-way SHA-256 digest used for store keys derived from secrets or PII."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def token_fingerprint(token: str) -> str:
    """Short digest prefix that identifies a token in logs without exposing it."""
    return hash_value(token)[:12]
