from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from authkeeper.config import Settings, StoreFailurePolicy
from authkeeper.logging import get_logger
from authkeeper.service.crypto import hash_value, token_fingerprint
from authkeeper.service.errors import (
    AuthenticationFailedError,
    IdentityExchangeError,
    InvalidTokenError,
    RateLimitedError,
    RevokedTokenError,
    StoreUnavailableError,
    TamperedDataError,
)
from authkeeper.service.identity import IdentityExchangeClient, UserDirectory
from authkeeper.service.tokens import TokenCodec
from authkeeper.storage.common import SessionStore
from authkeeper.storage.models import (
    AccessClaims,
    AuthResult,
    SessionRecord,
    TokenPair,
    User,
    utcnow,
)


class AuthService:
    """Issue, validate, rotate and revoke the credentials of authenticated users.

    The service holds no mutable state of its own. Each invariant is enforced
    by a single atomic store operation, so any number of instances can share
    one store.

    Session lifecycle per subject::

        NoSession -> Active -> Rotated -> Active'
                           \\-> Revoked -> NoSession
                           \\-> Expired (store TTL) -> NoSession
    """

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        store: SessionStore,
        identity: IdentityExchangeClient,
        *,
        directory: Optional[UserDirectory] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.settings = settings
        self.codec = codec
        self.store = store
        self.identity = identity
        self.directory = directory or identity.directory

    @property
    def _refresh_ttl(self) -> int:
        return self.settings.refresh_token_ttl_seconds

    def _pair(self, user: User, refresh_token: str, record: SessionRecord) -> TokenPair:
        access_token, claims = self.codec.mint_access_token(user)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=claims.expires_at,
            refresh_expires_at=record.expires_at,
        )

    async def authenticate(
        self, code: str, redirect_uri: str, client_key: str
    ) -> AuthResult:
        """Exchange an authorization code for a fresh token pair.

        ``client_key`` identifies the caller for attempt limiting (client IP
        or similar); it is hashed before it reaches the store.
        """
        decision = await self.store.consume_rate_limit(
            client_key,
            self.settings.login_rate_limit_window_seconds,
            self.settings.login_rate_limit_attempts,
        )
        if not decision.allowed:
            self.logger.warning(
                "rate_limited",
                client=hash_value(client_key)[:12],
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                retry_after=decision.retry_after,
                detail={"retry_after": decision.retry_after},
            )

        try:
            user, _claims = await self.identity.exchange(code, redirect_uri)
        except IdentityExchangeError as exc:
            self.logger.warning("authentication_failed", reason=exc.message)
            raise AuthenticationFailedError("identity_exchange_failed") from exc
        if not user.is_active:
            self.logger.warning(
                "authentication_failed", reason="user_inactive", user_id=user.id
            )
            raise AuthenticationFailedError("user_inactive")

        refresh_token = self.codec.mint_refresh_token()
        record = SessionRecord.new(user.id, self._refresh_ttl)
        tokens = self._pair(user, refresh_token, record)
        await self.store.put_session(record, refresh_token, self._refresh_ttl)
        self.logger.info(
            "session_created",
            user_id=user.id,
            family=record.family_id,
            fingerprint=token_fingerprint(refresh_token),
        )
        return AuthResult(user=user, tokens=tokens)

    async def validate_access_token(self, token: str) -> AccessClaims:
        """Return the claims of a live access token. Performs no writes."""
        claims = self.codec.parse_access_token(token)
        try:
            revoked = await self.store.is_blacklisted(
                claims.token_id, timeout=self.settings.validate_store_timeout_seconds
            )
        except StoreUnavailableError:
            if self.settings.store_failure_policy is StoreFailurePolicy.OPEN:
                self.logger.warning("blacklist_check_skipped", jti=claims.token_id)
                return claims
            self.logger.error("blacklist_check_failed_closed", jti=claims.token_id)
            raise
        if revoked:
            raise RevokedTokenError("token_revoked")
        return claims

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate ``refresh_token`` into a new pair.

        The presented token is consumed: whatever the outcome of a concurrent
        race, it never validates again. Losing callers must re-authenticate.
        """
        if not refresh_token:
            raise InvalidTokenError("missing_token")
        fingerprint = token_fingerprint(refresh_token)
        try:
            record = await self.store.get_session(refresh_token)
        except TamperedDataError as exc:
            self.logger.error("session_record_tampered", fingerprint=fingerprint)
            await self.store.revoke_session(refresh_token, self._refresh_ttl)
            raise InvalidTokenError("session_tampered") from exc

        if record is None:
            if await self.store.is_blacklisted(refresh_token):
                self.logger.warning(
                    "refresh_token_replay_detected", fingerprint=fingerprint
                )
                raise InvalidTokenError("refresh_token_replayed")
            raise InvalidTokenError("unknown_refresh_token")
        if record.expires_at <= utcnow():
            await self.store.revoke_session(refresh_token, self._refresh_ttl)
            raise InvalidTokenError("refresh_token_expired")

        user = await self.directory.get_user(record.subject)
        if user is None or not user.is_active:
            await self.store.revoke_session(refresh_token, self._refresh_ttl)
            self.logger.warning(
                "refresh_rejected_inactive_user",
                user_id=record.subject,
                fingerprint=fingerprint,
            )
            raise InvalidTokenError("user_inactive")

        new_refresh = self.codec.mint_refresh_token()
        new_record = record.rotated(self._refresh_ttl)
        rotated = await self.store.rotate_session(
            refresh_token,
            new_refresh,
            new_record,
            self._refresh_ttl,
            self._refresh_ttl,
        )
        if not rotated:
            self.logger.warning(
                "refresh_rotation_lost", user_id=user.id, fingerprint=fingerprint
            )
            raise InvalidTokenError("rotation_conflict")

        tokens = self._pair(user, new_refresh, new_record)
        self.logger.info(
            "session_rotated",
            user_id=user.id,
            family=new_record.family_id,
            generation=new_record.generation,
            fingerprint=token_fingerprint(new_refresh),
        )
        return AuthResult(user=user, tokens=tokens)

    async def revoke(self, refresh_token: str) -> bool:
        """Delete and blacklist a refresh token. Safe to call repeatedly."""
        if not refresh_token:
            return False
        existed = await self.store.revoke_session(refresh_token, self._refresh_ttl)
        self.logger.info(
            "session_revoked",
            fingerprint=token_fingerprint(refresh_token),
            existed=existed,
        )
        return existed

    async def revoke_access_token(self, access_token: str) -> bool:
        """Blacklist an access token's id until it would have expired anyway."""
        try:
            claims = self.codec.parse_access_token(access_token)
        except InvalidTokenError:
            return False
        remaining = int(
            (claims.expires_at - datetime.now(timezone.utc)).total_seconds()
        )
        # Outlive the verification leeway so a skewed clock cannot revive it
        ttl = remaining + self.settings.jwt_leeway_seconds
        if ttl <= 0:
            return False
        await self.store.blacklist(claims.token_id, ttl)
        self.logger.info("access_token_revoked", user_id=claims.subject, jti=claims.token_id)
        return True

    async def revoke_all_sessions(self, user_id: str) -> int:
        revoked = await self.store.revoke_subject_sessions(user_id, self._refresh_ttl)
        self.logger.info("sessions_revoked_all", user_id=user_id, count=revoked)
        return revoked
