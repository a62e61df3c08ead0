# Tests for oidc/storage.py and oidc/grants.py
# Created: 2026-10-14

import asyncio

import pytest

from pocketoidc.oidc.errors import (
    GrantAlreadyConsumed,
    GrantExpired,
    GrantNotFound,
    InvalidGrant,
    TransientInfraError,
)
from pocketoidc.oidc.grants import GrantStore, hash_token
from pocketoidc.oidc.models import AuthorizationCode, RefreshGrant
from pocketoidc.oidc.storage import MemoryStore


def _code(clock, value="code-1", ttl=600, **overrides):
    fields = {
        "code": value,
        "grant_id": "grant-1",
        "client_id": "c1",
        "redirect_uri": "https://a.test/cb",
        "scope": ("openid",),
        "account_id": "alice",
        "issued_at": clock(),
        "expires_at": clock() + ttl,
    }
    fields.update(overrides)
    return AuthorizationCode(**fields)


@pytest.fixture
def store(clock):
    return MemoryStore(clock)


@pytest.fixture
def grants(store, clock):
    return GrantStore(store, replay_window=600, revocation_ttl=3600, clock=clock)


# ===================== MemoryStore =====================


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_expiry_is_lazy(self, store, clock):
        await store.put("k", "v", clock() + 10)
        assert await store.get("k") == "v"
        clock.advance(10)
        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_values_are_copied(self, store, clock):
        value = {"scopes": ["openid"]}
        await store.put("k", value, clock() + 10)
        value["scopes"].append("email")
        loaded = await store.get("k")
        assert loaded == {"scopes": ["openid"]}
        loaded["scopes"].append("profile")
        assert await store.get("k") == {"scopes": ["openid"]}

    @pytest.mark.asyncio
    async def test_sweep(self, store, clock):
        await store.put("a", 1, clock() + 1)
        await store.put("b", 2, clock() + 100)
        clock.advance(5)
        assert await store.sweep() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_delete(self, store, clock):
        await store.put("a", 1, clock() + 10)
        assert await store.delete("a") is True
        assert await store.delete("a") is False

    @pytest.mark.asyncio
    async def test_locks_are_released(self, store):
        async with store.lock("k"):
            async with store.lock("other"):
                pass
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_full_store_refuses_new_keys(self, clock):
        store = MemoryStore(clock, max_entries=2)
        await store.put("a", 1, clock() + 10)
        await store.put("b", 2, clock() + 10)
        with pytest.raises(TransientInfraError):
            await store.put("c", 3, clock() + 10)
        await store.put("a", 10, clock() + 10)
        assert await store.get("a") == 10
        assert await store.get("c") is None

    @pytest.mark.asyncio
    async def test_full_store_sweeps_before_refusing(self, clock):
        store = MemoryStore(clock, max_entries=2)
        await store.put("a", 1, clock() + 1)
        await store.put("b", 2, clock() + 100)
        clock.advance(5)
        await store.put("c", 3, clock() + 10)
        assert len(store) == 2
        assert await store.get("c") == 3


# ===================== Authorization codes =====================


class TestConsumeOnce:
    @pytest.mark.asyncio
    async def test_first_redemption_succeeds(self, grants, clock):
        await grants.put(_code(clock))
        code = await grants.consume_once("code-1")
        assert code.account_id == "alice"
        assert code.consumed

    @pytest.mark.asyncio
    async def test_second_redemption_reports_grant(self, grants, clock):
        await grants.put(_code(clock))
        await grants.consume_once("code-1")
        with pytest.raises(GrantAlreadyConsumed) as exc_info:
            await grants.consume_once("code-1")
        assert exc_info.value.grant_id == "grant-1"
        assert exc_info.value.client_id == "c1"

    @pytest.mark.asyncio
    async def test_unknown_code(self, grants):
        with pytest.raises(GrantNotFound):
            await grants.consume_once("nope")

    @pytest.mark.asyncio
    async def test_expired_code(self, grants, clock):
        await grants.put(_code(clock, ttl=60))
        clock.advance(60)
        with pytest.raises(GrantExpired):
            await grants.consume_once("code-1")

    @pytest.mark.asyncio
    async def test_forgotten_after_replay_window(self, grants, clock):
        await grants.put(_code(clock, ttl=60))
        await grants.consume_once("code-1")
        clock.advance(60 + 600)
        with pytest.raises(GrantNotFound):
            await grants.consume_once("code-1")

    @pytest.mark.asyncio
    async def test_put_with_ttl_resets_expiry(self, grants, clock):
        stored = await grants.put(_code(clock, ttl=1), ttl=300)
        assert stored.expires_at == clock() + 300
        clock.advance(10)
        await grants.consume_once("code-1")

    @pytest.mark.asyncio
    async def test_failed_verification_leaves_code_usable(self, grants, clock):
        await grants.put(_code(clock))

        def reject(code):
            raise InvalidGrant("nope")

        with pytest.raises(InvalidGrant):
            await grants.consume_once("code-1", reject)
        code = await grants.consume_once("code-1", lambda code: None)
        assert code.consumed

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_single_winner(self, clock, yielding_store):
        grants = GrantStore(yielding_store, clock=clock)
        await grants.put(_code(clock))

        results = await asyncio.gather(
            *(grants.consume_once("code-1") for _ in range(10)), return_exceptions=True
        )
        winners = [r for r in results if isinstance(r, AuthorizationCode)]
        losers = [r for r in results if isinstance(r, GrantAlreadyConsumed)]
        assert len(winners) == 1
        assert len(losers) == 9


# ===================== Refresh grants =====================


def _refresh(clock, token, **overrides):
    fields = {
        "token_id": hash_token(token),
        "grant_id": "grant-1",
        "client_id": "c1",
        "account_id": "alice",
        "scope": ("openid", "offline_access"),
        "issued_at": clock(),
        "expires_at": clock() + 3600,
    }
    fields.update(overrides)
    return RefreshGrant(**fields)


class TestRefreshGrants:
    @pytest.mark.asyncio
    async def test_stored_by_hash(self, grants, store, clock):
        await grants.put_refresh(_refresh(clock, "rt-1"))
        assert await store.get("refresh:rt-1") is None
        assert (await grants.get_refresh("rt-1")).account_id == "alice"

    @pytest.mark.asyncio
    async def test_get_does_not_consume(self, grants, clock):
        await grants.put_refresh(_refresh(clock, "rt-1"))
        await grants.get_refresh("rt-1")
        await grants.get_refresh("rt-1")

    @pytest.mark.asyncio
    async def test_rotation_is_single_use(self, grants, clock):
        await grants.put_refresh(_refresh(clock, "rt-1"))
        await grants.rotate_refresh("rt-1")
        with pytest.raises(GrantAlreadyConsumed):
            await grants.rotate_refresh("rt-1")
        with pytest.raises(GrantAlreadyConsumed):
            await grants.get_refresh("rt-1")

    @pytest.mark.asyncio
    async def test_expired(self, grants, clock):
        await grants.put_refresh(_refresh(clock, "rt-1"))
        clock.advance(3600)
        with pytest.raises(GrantNotFound):
            await grants.get_refresh("rt-1")


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke(self, grants, clock):
        assert not await grants.is_revoked("grant-1")
        await grants.revoke_grant("grant-1")
        assert await grants.is_revoked("grant-1")
        clock.advance(3600)
        assert not await grants.is_revoked("grant-1")
