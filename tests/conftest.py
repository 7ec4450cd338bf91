"""
Shared fixtures for the Face Authentication Server test suite.
"""

import pytest
from fastapi.testclient import TestClient

from auth.claims import ClaimsMapper
from auth.clients import ClientRegistry, OAuthClient
from auth.continuation import ContinuationCodec
from auth.engine import AuthorizationEngine
from auth.store import InMemoryCodeTokenStore, SQLiteCodeTokenStore
from auth.tokens import TokenSigner
from biometrics.identities import InMemoryIdentityStore
from biometrics.matcher import LinearScanMatcher
from biometrics.templates import InMemoryTemplateStore
from server_http import create_app
from utils import ratelimit
from utils.config import Settings
from utils.sqlite import SQLiteDatabase

CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"
REDIRECT_URI = "https://app.example.com/callback"
DESCRIPTOR_LENGTH = 128


def face_vector(*leading: float) -> list[float]:
    """A descriptor whose first components are given and the rest zero."""
    vector = [0.0] * DESCRIPTOR_LENGTH
    vector[:len(leading)] = leading
    return vector


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_rate_limits(monkeypatch):
    """Keep rate limiting in-process and start every test with empty buckets."""
    monkeypatch.delenv("FACEAUTH_REDIS_URL", raising=False)
    ratelimit.reset()
    yield
    ratelimit.reset()


@pytest.fixture(scope="session")
def signer():
    """RSA key generation is slow, so one signing key serves the whole run."""
    return TokenSigner()


@pytest.fixture
def settings():
    return Settings(
        environ={
            "FACEAUTH_ISSUER": "https://auth.example.com",
            "FACEAUTH_CONTINUATION_SECRET": "continuation-secret",
            "FACEAUTH_SESSION_SECRET": "session-secret",
            "FACEAUTH_DEFAULT_CLIENT_SECRET": "default-secret",
        }
    )


@pytest.fixture
def test_client_registration():
    return OAuthClient(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uris=(REDIRECT_URI, "https://app.example.com/other"),
        name="Test Client",
    )


@pytest.fixture
def registry(test_client_registration):
    registry = ClientRegistry(register_rate_limit=5, rate_limit_window=60)
    registry.register(test_client_registration)
    return registry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec():
    return ContinuationCodec("continuation-secret")


@pytest.fixture
def engine(registry, codec, signer, clock):
    return AuthorizationEngine(
        clients=registry,
        codes=InMemoryCodeTokenStore(),
        templates=InMemoryTemplateStore(),
        identities=InMemoryIdentityStore(),
        matcher=LinearScanMatcher(),
        codec=codec,
        signer=signer,
        claims=ClaimsMapper(),
        clock=clock,
    )


@pytest.fixture(params=["memory", "sqlite"])
def code_store(request, tmp_path):
    """Code/Token Store of each backend."""
    if request.param == "memory":
        return InMemoryCodeTokenStore()
    return SQLiteCodeTokenStore(SQLiteDatabase(str(tmp_path / "codes.db")))


@pytest.fixture
def app(settings, registry, signer):
    return create_app(settings, clients=registry, signer=signer)


@pytest.fixture
def http(app):
    with TestClient(app, follow_redirects=False) as client:
        yield client
