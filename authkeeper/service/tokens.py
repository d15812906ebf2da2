from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from authkeeper.config import Settings
from authkeeper.logging import get_logger
from authkeeper.service.crypto import (
    KeyMaterial,
    random_token,
    sign_claims,
    verify_token,
)
from authkeeper.service.errors import InvalidTokenError, TokenVerificationError
from authkeeper.storage.models import AccessClaims, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenCodec:
    """Mints and parses the credentials handed to clients.

    Access tokens are signed JWTs carrying a role snapshot. Refresh tokens
    are opaque random strings; all of their meaning lives in the session
    store.
    """

    def __init__(self, settings: Settings, keys: Optional[KeyMaterial] = None) -> None:
        self.settings = settings
        self.keys = keys or KeyMaterial.from_settings(settings)

    def mint_access_token(
        self, user: User, *, now: Optional[datetime] = None
    ) -> Tuple[str, AccessClaims]:
        issued = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        ttl = timedelta(seconds=self.settings.access_token_ttl_seconds)
        token_id = uuid.uuid4().hex
        claims = {
            "sub": user.id,
            "role": user.role,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": token_id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        token = sign_claims(
            claims, self.keys.signing_key, self.keys.algorithm, ttl, now=issued
        )
        return token, AccessClaims(
            subject=user.id,
            role=user.role,
            token_type=ACCESS_TOKEN_TYPE,
            issued_at=issued,
            expires_at=issued + ttl,
            token_id=token_id,
        )

    def mint_refresh_token(self) -> str:
        return random_token(
            self.settings.refresh_token_bytes,
            min_entropy=self.settings.entropy_floor,
            max_attempts=self.settings.entropy_max_attempts,
        )

    def parse_access_token(self, token: str) -> AccessClaims:
        """Verify ``token`` and return its claims or raise ``InvalidTokenError``."""
        if not token or not isinstance(token, str):
            raise InvalidTokenError("missing_token")
        try:
            payload = verify_token(
                token,
                self.keys.verification_key,
                self.keys.algorithm,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                leeway=self.settings.jwt_leeway_seconds,
            )
        except TokenVerificationError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise InvalidTokenError(type(exc).__name__) from exc
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            logger.info("access_token_rejected", reason="wrong_token_type")
            raise InvalidTokenError("wrong_token_type")
        try:
            return AccessClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("malformed_claims") from exc
