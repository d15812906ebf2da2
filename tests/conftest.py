import asyncio
import inspect
import os
import sys
from pathlib import Path

# Env defaults must be in place before anything imports authkeeper.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

from authkeeper.config import Settings  # noqa: E402
from authkeeper.service.auth import AuthService  # noqa: E402
from authkeeper.service.crypto import SessionCipher  # noqa: E402
from authkeeper.service.identity import (  # noqa: E402
    IdentityExchangeClient,
    StaticIdentityProvider,
)
from authkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkeeper.service.tokens import TokenCodec  # noqa: E402
from authkeeper.storage.memory import MemorySessionStore, MemoryUserDirectory  # noqa: E402
from authkeeper.storage.models import Identity  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_ENCRYPTION_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Manually advanced epoch clock for store expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def rsa_pem_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def settings():
    return Settings(
        jwt_algorithm="HS256",
        jwt_secret=TEST_SECRET,
        session_encryption_key=TEST_ENCRYPTION_KEY,
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=14,
        login_rate_limit_attempts=5,
        login_rate_limit_window_seconds=900,
    )


@pytest.fixture
def cipher(settings):
    return SessionCipher.from_settings(settings)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store(cipher):
    return MemorySessionStore(cipher)


@pytest.fixture
def directory():
    return MemoryUserDirectory()


@pytest.fixture
def provider():
    return StaticIdentityProvider()


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


@pytest.fixture
def auth_service(settings, codec, session_store, provider, directory):
    identity = IdentityExchangeClient(provider, directory)
    return AuthService(settings, codec, session_store, identity)


@pytest.fixture
def alice():
    return Identity(
        subject_id="google-sub-alice",
        email="alice@example.com",
        name="Alice Example",
        picture_url="https://example.com/alice.png",
    )
