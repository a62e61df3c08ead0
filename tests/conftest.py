# Shared fixtures for the provider tests.
# Created: 2026-10-14

import asyncio
import time

import pytest

from pocketoidc.config import Settings, get_settings
from pocketoidc.oidc.authorize import InteractionRequired
from pocketoidc.oidc.interactions import ConsentDecision, LoginSubmission
from pocketoidc.oidc.keys import generate_key_pair
from pocketoidc.oidc.models import AuthorizationRequest
from pocketoidc.oidc.provider import Provider, reset_provider
from pocketoidc.oidc.storage import MemoryStore

ALICE = "alice@example.com"
ALICE_PASSWORD = "wonderland"

CLIENTS = [
    {
        "client_id": "c1",
        "client_secret": "s3cret",
        "client_name": "Acme Web",
        "redirect_uris": ["https://a.test/cb"],
        "post_logout_redirect_uris": ["https://a.test/signed-out"],
        "scope": "openid email",
        "grant_types": ["authorization_code", "refresh_token"],
    },
    {
        "client_id": "c2",
        "client_secret": "other-secret",
        "redirect_uris": ["https://b.test/cb"],
        "scope": "openid",
    },
    {
        "client_id": "spa",
        "redirect_uris": ["https://spa.test/cb"],
        "scope": "openid email profile offline_access",
        "grant_types": ["authorization_code", "refresh_token"],
    },
]


class FakeClock:
    """Controllable time source. Starts at the real current time so PyJWT's
    own exp/iat checks agree with tokens minted under it."""

    def __init__(self, start: float | None = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class YieldingStore(MemoryStore):
    """MemoryStore that yields to the event loop on every access, so
    concurrent redemptions genuinely interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key, value, expires_at):
        await asyncio.sleep(0)
        await super().put(key, value, expires_at)


@pytest.fixture(scope="session")
def rsa_pem():
    private_pem, _ = generate_key_pair()
    return private_pem


@pytest.fixture(autouse=True)
def _isolated_config_dir(tmp_path, monkeypatch):
    """Never read or write the real ~/.pocketoidc."""
    monkeypatch.setenv("POCKETOIDC_CONFIG_DIR", str(tmp_path / "config"))
    get_settings.cache_clear()
    reset_provider()
    yield
    get_settings.cache_clear()
    reset_provider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(rsa_pem, tmp_path):
    return Settings(
        issuer="https://op.test",
        private_key=rsa_pem,
        clients=CLIENTS,
        dev_accounts={ALICE: {"password": ALICE_PASSWORD, "claims": {"name": "Alice"}}},
        cookie_secret="test-cookie-secret",
        cookie_secure=False,
        audit_log_path=tmp_path / "audit.jsonl",
    )


@pytest.fixture
def make_provider(settings, clock):
    def _make(**overrides):
        return Provider.from_settings(settings.model_copy(update=overrides), clock=clock)

    return _make


@pytest.fixture
def provider(make_provider):
    return make_provider()


@pytest.fixture
def auth_request():
    def _make(client_id="c1", redirect_uri="https://a.test/cb", **params):
        params.setdefault("response_type", "code")
        params.setdefault("scope", "openid email")
        return AuthorizationRequest.from_params(
            {"client_id": client_id, "redirect_uri": redirect_uri, **params}
        )

    return _make


@pytest.fixture
def login_and_consent(provider):
    """Drive a request through login and consent; returns (redirect, session)."""

    async def _run(request, scope=None, session_id=None):
        outcome = await provider.authorization.authorize(request, session_id=session_id)
        assert isinstance(outcome, InteractionRequired)
        if outcome.interaction.prompt == "login":
            await provider.interactions.submit(
                outcome.uid, LoginSubmission(ALICE, ALICE_PASSWORD)
            )
        await provider.interactions.submit(outcome.uid, ConsentDecision(True, scope=scope))
        return await provider.authorization.complete(outcome.uid, session_id=session_id)

    return _run


@pytest.fixture
def yielding_store(clock):
    return YieldingStore(clock)
