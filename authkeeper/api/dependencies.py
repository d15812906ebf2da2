from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from authkeeper.logging import get_logger, set_correlation_id
from authkeeper.service.errors import AuthenticationError, ServiceError
from authkeeper.service.runtime import get_runtime

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    token_id: str


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _unauthorized() -> HTTPException:
    return _http_error(
        "unauthorized",
        AuthenticationError.public_message,
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
    )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_auth_context(
    authorization: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
) -> AuthContext:
    """Resolve ``Authorization: Bearer <token>`` into the caller's identity.

    Every failure, including an unreachable store under the fail-closed
    policy, produces the same 401.
    """
    # The app middleware already bound an id for this request; only adopt an explicit one
    if x_request_id:
        set_correlation_id(x_request_id)
    token = bearer_token(authorization)
    if token is None:
        raise _unauthorized()
    runtime = get_runtime()
    try:
        claims = await runtime.auth.validate_access_token(token)
    except AuthenticationError as exc:
        logger.info("bearer_rejected", reason=exc.reason)
        raise _unauthorized() from exc
    except ServiceError as exc:
        logger.warning("bearer_rejected", reason=exc.error_code)
        raise _unauthorized() from exc
    return AuthContext(user_id=claims.subject, role=claims.role, token_id=claims.token_id)
