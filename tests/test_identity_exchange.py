"""Identity exchange tests against a mocked Google token endpoint and JWKS."""

import asyncio
import json
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from authkeeper.config import Settings
from authkeeper.service.errors import IdentityExchangeError
from authkeeper.service.identity import (
    GoogleIdentityProvider,
    IdentityExchangeClient,
    StaticIdentityProvider,
)
from authkeeper.storage.memory import MemoryUserDirectory
from authkeeper.storage.models import Identity

CLIENT_ID = "client-123.apps.googleusercontent.com"
TOKEN_URL = "https://oauth.test/token"
JWKS_URL = "https://oauth.test/certs"
REDIRECT_URI = "https://app.example.com/callback"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def jwks(signing_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk.update({"kid": "key-1", "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


def _id_token(signing_key, kid="key-1", **overrides):
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "google-sub-42",
        "email": "dana@example.com",
        "email_verified": True,
        "name": "Dana",
        "picture": "https://example.com/dana.png",
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, signing_key, algorithm="RS256", headers={"kid": kid})


class FakeGoogle:
    """Mock transport handler recording requests to the token and JWKS endpoints."""

    def __init__(self, jwks, id_token=None, token_status=200, raise_timeout=False):
        self.jwks = jwks
        self.id_token = id_token
        self.token_status = token_status
        self.raise_timeout = raise_timeout
        self.token_requests = []
        self.jwks_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            if self.raise_timeout:
                raise httpx.ReadTimeout("slow provider", request=request)
            self.token_requests.append(parse_qs(request.content.decode()))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            body = {"access_token": "provider-access", "token_type": "Bearer"}
            if self.id_token:
                body["id_token"] = self.id_token
            return httpx.Response(200, json=body)
        if request.url.path == "/certs":
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404)


def _provider(fake, **kwargs):
    return GoogleIdentityProvider(
        client_id=CLIENT_ID,
        client_secret="shh",
        token_url=TOKEN_URL,
        jwks_url=JWKS_URL,
        transport=httpx.MockTransport(fake),
        **kwargs,
    )


class TestGoogleIdentityProvider:
    async def test_successful_exchange(self, signing_key, jwks):
        fake = FakeGoogle(jwks, _id_token(signing_key))
        identity, claims = await _provider(fake).exchange_code("auth-code", REDIRECT_URI)

        assert identity.subject_id == "google-sub-42"
        assert identity.email == "dana@example.com"
        assert identity.name == "Dana"
        assert claims["aud"] == CLIENT_ID
        form = fake.token_requests[0]
        assert form["grant_type"] == ["authorization_code"]
        assert form["redirect_uri"] == [REDIRECT_URI]
        assert form["code"] == ["auth-code"]

    async def test_jwks_cached_between_exchanges(self, signing_key, jwks):
        fake = FakeGoogle(jwks, _id_token(signing_key))
        provider = _provider(fake)
        await provider.exchange_code("code-1", REDIRECT_URI)
        await provider.exchange_code("code-2", REDIRECT_URI)
        assert fake.jwks_requests == 1

    async def test_unknown_kid_refetches_then_fails(self, signing_key, jwks):
        fake = FakeGoogle(jwks, _id_token(signing_key, kid="rotated-away"))
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)
        assert fake.jwks_requests == 2

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-else"},
            {"iss": "https://evil.example.com"},
            {"email_verified": False},
            {"email": None},
            {"exp": int(time.time()) - 3600},
        ],
    )
    async def test_rejected_claims(self, signing_key, jwks, overrides):
        fake = FakeGoogle(jwks, _id_token(signing_key, **overrides))
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)

    async def test_string_email_verified_accepted(self, signing_key, jwks):
        fake = FakeGoogle(jwks, _id_token(signing_key, email_verified="true"))
        identity, _ = await _provider(fake).exchange_code("code", REDIRECT_URI)
        assert identity.email_verified is True

    async def test_forged_signature_rejected(self, jwks):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        fake = FakeGoogle(jwks, _id_token(other_key))
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)

    async def test_hosted_domain_enforced(self, signing_key, jwks):
        fake = FakeGoogle(jwks, _id_token(signing_key, hd="other.com"))
        with pytest.raises(IdentityExchangeError):
            await _provider(fake, hosted_domain="example.com").exchange_code("code", REDIRECT_URI)

        fake = FakeGoogle(jwks, _id_token(signing_key, hd="example.com"))
        identity, _ = await _provider(fake, hosted_domain="Example.com").exchange_code(
            "code", REDIRECT_URI
        )
        assert identity.hosted_domain == "example.com"

    async def test_token_endpoint_error(self, jwks):
        fake = FakeGoogle(jwks, token_status=400)
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("bad-code", REDIRECT_URI)

    async def test_timeout(self, jwks):
        fake = FakeGoogle(jwks, raise_timeout=True)
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)

    @pytest.mark.parametrize(
        "keyset",
        [[{"kty": "RSA"}], {"keys": [["not", "a", "jwk"]]}, {"keys": "nope"}],
    )
    async def test_malformed_key_set(self, signing_key, keyset):
        fake = FakeGoogle(keyset, _id_token(signing_key))
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)

    async def test_whole_exchange_is_bounded(self):
        async def stalled(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        provider = GoogleIdentityProvider(
            client_id=CLIENT_ID,
            client_secret="shh",
            token_url=TOKEN_URL,
            jwks_url=JWKS_URL,
            timeout=0.2,
            transport=httpx.MockTransport(stalled),
        )
        started = time.monotonic()
        with pytest.raises(IdentityExchangeError):
            await provider.exchange_code("code", REDIRECT_URI)
        assert time.monotonic() - started < 2

    async def test_missing_id_token(self, jwks):
        fake = FakeGoogle(jwks, id_token=None)
        with pytest.raises(IdentityExchangeError):
            await _provider(fake).exchange_code("code", REDIRECT_URI)

    def test_from_settings_requires_credentials(self):
        with pytest.raises(ValueError):
            GoogleIdentityProvider.from_settings(Settings(google_client_id="x"))

    def test_from_settings_carries_options(self):
        provider = GoogleIdentityProvider.from_settings(
            Settings(
                google_client_id=CLIENT_ID,
                google_client_secret="shh",
                google_hosted_domain="Example.com",
                identity_timeout_seconds=2.5,
            )
        )
        assert provider.hosted_domain == "example.com"
        assert provider.timeout == 2.5


class TestStaticIdentityProvider:
    async def test_codes_are_single_use(self, alice):
        provider = StaticIdentityProvider()
        provider.register("code-1", alice)
        identity, _ = await provider.exchange_code("code-1", REDIRECT_URI)
        assert identity == alice
        with pytest.raises(IdentityExchangeError):
            await provider.exchange_code("code-1", REDIRECT_URI)

    async def test_bound_redirect_uri(self, alice):
        provider = StaticIdentityProvider()
        provider.register("code-1", alice, redirect_uri=REDIRECT_URI)
        with pytest.raises(IdentityExchangeError):
            await provider.exchange_code("code-1", "https://attacker.example/cb")


class TestIdentityExchangeClient:
    async def test_creates_and_touches_user(self, alice):
        provider = StaticIdentityProvider()
        provider.register("code-1", alice)
        directory = MemoryUserDirectory()
        client = IdentityExchangeClient(provider, directory, default_role="analyst")

        user, claims = await client.exchange("code-1", REDIRECT_URI)

        assert user.external_id == alice.subject_id
        assert user.email == alice.email
        assert user.role == "analyst"
        assert user.last_login_at is not None
        assert claims["sub"] == alice.subject_id

    async def test_same_subject_maps_to_same_user(self, alice):
        provider = StaticIdentityProvider()
        provider.register("code-1", alice)
        provider.register(
            "code-2",
            Identity(subject_id=alice.subject_id, email="alice@new.example.com"),
        )
        client = IdentityExchangeClient(provider, MemoryUserDirectory())
        first, _ = await client.exchange("code-1", REDIRECT_URI)
        second, _ = await client.exchange("code-2", REDIRECT_URI)
        assert first.id == second.id
        assert second.email == "alice@new.example.com"

    async def test_provider_failure_propagates(self):
        client = IdentityExchangeClient(StaticIdentityProvider(), MemoryUserDirectory())
        with pytest.raises(IdentityExchangeError):
            await client.exchange("never-registered", REDIRECT_URI)
