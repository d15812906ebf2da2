from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - rate_limited (429)
    - validation_error (400)
    - identity_exchange_failed (502)
    - store_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses share the public message so callers cannot tell which check
    failed; ``reason`` is for internal logs only.
    """
    status_code = 401
    error_code = "unauthorized"
    public_message = "unauthorized"

    def __init__(self, reason: str = "unauthorized", **kwargs) -> None:
        super().__init__(self.public_message, **kwargs)
        self.reason = reason


class InvalidTokenError(AuthenticationError):
    """Token is malformed, expired, unknown or already rotated."""


class RevokedTokenError(AuthenticationError):
    """Token was blacklisted before its natural expiry."""


class AuthenticationFailedError(AuthenticationError):
    """Login could not be completed (identity exchange or account state)."""


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many attempts", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))


class IdentityExchangeError(ServiceError):
    """The identity provider rejected or failed the code exchange (502)."""
    status_code = 502
    error_code = "identity_exchange_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """Session store did not answer within its timeout/retry budget (503)."""
    status_code = 503
    error_code = "store_unavailable"


class SigningError(ServerError):
    """Token could not be signed; key material missing or unusable."""


class TamperedDataError(ServerError):
    """Encrypted payload failed authentication and was rejected."""


class InsufficientEntropyError(ServerError):
    """Random source kept producing low-entropy output."""


class TokenVerificationError(Exception):
    """Base class for signed-token verification failures."""


class InvalidSignatureError(TokenVerificationError):
    pass


class TokenExpiredError(TokenVerificationError):
    pass


class IssuerMismatchError(TokenVerificationError):
    pass


class AudienceMismatchError(TokenVerificationError):
    pass


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "RevokedTokenError",
    "AuthenticationFailedError",
    "RateLimitedError",
    "IdentityExchangeError",
    "ServerError",
    "StoreUnavailableError",
    "SigningError",
    "TamperedDataError",
    "InsufficientEntropyError",
    "TokenVerificationError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "IssuerMismatchError",
    "AudienceMismatchError",
]
