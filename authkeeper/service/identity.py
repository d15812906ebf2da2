from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx
import jwt

from authkeeper.config import Settings
from authkeeper.logging import get_logger
from authkeeper.service.errors import IdentityExchangeError
from authkeeper.storage.models import Identity, User

GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})
GOOGLE_ID_TOKEN_ALGORITHMS = ["RS256"]
JWKS_CACHE_SECONDS = 3600


class IdentityProvider(Protocol):
    async def exchange_code(
        self, code: str, redirect_uri: str
    ) -> Tuple[Identity, Dict[str, Any]]: ...


class UserDirectory(Protocol):
    """User records owned outside this package."""

    async def find_or_create_by_external_id(
        self, external_id: str, defaults: Dict[str, Any]
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def touch_last_login(self, user_id: str) -> Optional[User]: ...


def _claim_is_true(value: Any) -> bool:
    # Google has historically sent email_verified as either a bool or a string
    if isinstance(value, str):
        return value.lower() == "true"
    return value is True


class GoogleIdentityProvider:
    """Exchange an authorization code with Google and verify the returned ID token.

    The provider's own access/ID tokens never leave this object; callers get
    the verified identity and the decoded claims only.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        jwks_url: str,
        hosted_domain: Optional[str] = None,
        timeout: float = 3.0,
        leeway: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.jwks_url = jwks_url
        self.hosted_domain = hosted_domain.lower() if hosted_domain else None
        self.timeout = timeout
        self.leeway = leeway
        self._transport = transport
        self._jwks: Optional[jwt.PyJWKSet] = None
        self._jwks_fetched_at = 0.0
        self._jwks_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "GoogleIdentityProvider":
        if not settings.google_client_id or not settings.google_client_secret:
            raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required")
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_url=settings.google_token_url,
            jwks_url=settings.google_jwks_url,
            hosted_domain=settings.google_hosted_domain,
            timeout=settings.identity_timeout_seconds,
            leeway=settings.jwt_leeway_seconds,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange_code(
        self, code: str, redirect_uri: str
    ) -> Tuple[Identity, Dict[str, Any]]:
        if not code:
            raise IdentityExchangeError("authorization code is empty")
        # httpx timeouts are per phase; the JWKS fetches count against the same budget
        try:
            return await asyncio.wait_for(
                self._exchange(code, redirect_uri), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            self.logger.error("oauth_exchange_timeout", timeout_seconds=self.timeout)
            raise IdentityExchangeError("identity provider timed out") from exc

    async def _exchange(
        self, code: str, redirect_uri: str
    ) -> Tuple[Identity, Dict[str, Any]]:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                token_result = response.json()
                id_token = (
                    token_result.get("id_token") if isinstance(token_result, dict) else None
                )
                if not id_token:
                    self.logger.error("oauth_no_id_token")
                    raise IdentityExchangeError("provider returned no id_token")
                claims = await self._verify_id_token(client, id_token)
        except httpx.TimeoutException as exc:
            self.logger.error("oauth_exchange_timeout", timeout_seconds=self.timeout)
            raise IdentityExchangeError("identity provider timed out") from exc
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error", status=exc.response.status_code
            )
            raise IdentityExchangeError("identity provider rejected the code") from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_exchange_request_error", error=type(exc).__name__)
            raise IdentityExchangeError("identity provider unreachable") from exc
        except ValueError as exc:
            # Undecodable JSON bodies
            self.logger.error("oauth_token_parse_error", error=str(exc))
            raise IdentityExchangeError("identity provider response malformed") from exc
        return self._identity_from_claims(claims), claims

    async def _load_jwks(self, client: httpx.AsyncClient, *, force: bool = False) -> jwt.PyJWKSet:
        with self._jwks_lock:
            cached = self._jwks
            fresh = time.monotonic() - self._jwks_fetched_at < JWKS_CACHE_SECONDS
        if cached is not None and fresh and not force:
            return cached
        response = await client.get(self.jwks_url)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            self.logger.error("oauth_jwks_invalid", error="not_an_object")
            raise IdentityExchangeError("provider key set is unusable")
        try:
            keyset = jwt.PyJWKSet.from_dict(payload)
        except (jwt.PyJWTError, AttributeError, TypeError, KeyError) as exc:
            self.logger.error("oauth_jwks_invalid", error=type(exc).__name__)
            raise IdentityExchangeError("provider key set is unusable") from exc
        with self._jwks_lock:
            self._jwks = keyset
            self._jwks_fetched_at = time.monotonic()
        return keyset

    @staticmethod
    def _find_key(keyset: jwt.PyJWKSet, kid: Optional[str]) -> Optional[jwt.PyJWK]:
        for key in keyset.keys:
            if key.key_id == kid:
                return key
        return None

    async def _verify_id_token(
        self, client: httpx.AsyncClient, id_token: str
    ) -> Dict[str, Any]:
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.PyJWTError as exc:
            raise IdentityExchangeError("id_token is malformed") from exc
        keyset = await self._load_jwks(client)
        signing_key = self._find_key(keyset, kid)
        if signing_key is None:
            # Provider may have rotated keys since the cached fetch
            keyset = await self._load_jwks(client, force=True)
            signing_key = self._find_key(keyset, kid)
        if signing_key is None:
            self.logger.error("oauth_id_token_unknown_kid", kid=kid)
            raise IdentityExchangeError("id_token signed by unknown key")
        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=GOOGLE_ID_TOKEN_ALGORITHMS,
                audience=self.client_id,
                leeway=self.leeway,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as exc:
            self.logger.warning("oauth_id_token_rejected", error=type(exc).__name__)
            raise IdentityExchangeError("id_token failed verification") from exc
        if claims.get("iss") not in GOOGLE_ISSUERS:
            self.logger.warning("oauth_id_token_rejected", error="issuer_mismatch")
            raise IdentityExchangeError("id_token issuer not trusted")
        if not claims.get("email"):
            raise IdentityExchangeError("id_token carries no email")
        if not _claim_is_true(claims.get("email_verified")):
            raise IdentityExchangeError("email address not verified")
        if self.hosted_domain and (claims.get("hd") or "").lower() != self.hosted_domain:
            self.logger.warning("oauth_hosted_domain_rejected", hd=claims.get("hd"))
            raise IdentityExchangeError("account outside the allowed domain")
        return claims

    @staticmethod
    def _identity_from_claims(claims: Dict[str, Any]) -> Identity:
        return Identity(
            subject_id=str(claims["sub"]),
            email=str(claims["email"]),
            name=claims.get("name"),
            picture_url=claims.get("picture"),
            email_verified=True,
            hosted_domain=claims.get("hd"),
        )


class StaticIdentityProvider:
    """Pre-registered single-use codes for tests and offline environments."""

    def __init__(self) -> None:
        self._codes: Dict[str, Tuple[Identity, Dict[str, Any], Optional[str]]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        code: str,
        identity: Identity,
        *,
        claims: Optional[Dict[str, Any]] = None,
        redirect_uri: Optional[str] = None,
    ) -> None:
        raw = claims or {
            "sub": identity.subject_id,
            "email": identity.email,
            "name": identity.name,
            "picture": identity.picture_url,
            "email_verified": identity.email_verified,
        }
        with self._lock:
            self._codes[code] = (identity, raw, redirect_uri)

    async def exchange_code(
        self, code: str, redirect_uri: str
    ) -> Tuple[Identity, Dict[str, Any]]:
        with self._lock:
            entry = self._codes.pop(code, None)
        if entry is None:
            raise IdentityExchangeError("authorization code unknown or already used")
        identity, claims, bound_redirect = entry
        if bound_redirect is not None and bound_redirect != redirect_uri:
            raise IdentityExchangeError("redirect_uri mismatch")
        if not identity.email_verified:
            raise IdentityExchangeError("email address not verified")
        return identity, dict(claims)


class IdentityExchangeClient:
    """Resolve an authorization code into an internal user record."""

    def __init__(
        self,
        provider: IdentityProvider,
        directory: UserDirectory,
        *,
        default_role: str = "user",
    ) -> None:
        self.logger = get_logger(__name__)
        self.provider = provider
        self.directory = directory
        self.default_role = default_role

    async def exchange(self, code: str, redirect_uri: str) -> Tuple[User, Dict[str, Any]]:
        identity, claims = await self.provider.exchange_code(code, redirect_uri)
        if not identity.subject_id or not identity.email:
            raise IdentityExchangeError("identity is missing subject or email")
        user = await self.directory.find_or_create_by_external_id(
            identity.subject_id,
            {
                "email": identity.email,
                "name": identity.name,
                "picture_url": identity.picture_url,
                "role": self.default_role,
            },
        )
        touched = await self.directory.touch_last_login(user.id)
        user = touched or user
        self.logger.info("identity_resolved", user_id=user.id, email=user.email)
        return user, claims
