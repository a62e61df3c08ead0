# Authorization code and refresh grant storage.
# Created: 2026-10-12
#
# consume_once / rotate_refresh are check-and-flag operations under the
# backend's per-key lock: of any number of concurrent redemptions of one code,
# exactly one succeeds. Consumed records are kept for a replay window so a
# second redemption is reported as a replay rather than an unknown code.

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import replace

from pocketoidc.oidc.errors import GrantAlreadyConsumed, GrantExpired, GrantNotFound
from pocketoidc.oidc.models import AuthorizationCode, RefreshGrant
from pocketoidc.oidc.storage import Clock, KeyValueStore

logger = logging.getLogger(__name__)

_CODE_PREFIX = "code:"
_REFRESH_PREFIX = "refresh:"
_REVOKED_PREFIX = "revoked:"


def hash_token(token: str) -> str:
    """Refresh tokens are only ever stored as sha256 hashes."""
    return hashlib.sha256(token.encode()).hexdigest()


class GrantStore:
    """Single-use authorization codes, refresh grants and grant revocation."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        replay_window: float = 600,
        revocation_ttl: float = 14 * 24 * 3600,
        clock: Clock = time.time,
    ):
        self._store = store
        self._replay_window = replay_window
        self._revocation_ttl = revocation_ttl
        self._clock = clock

    # =========================================================================
    # Authorization codes
    # =========================================================================

    async def put(self, code: AuthorizationCode, ttl: float | None = None) -> AuthorizationCode:
        """Store *code*. When *ttl* is given the expiry is reset to now + ttl."""
        if ttl is not None:
            code = replace(code, expires_at=self._clock() + ttl)
        await self._store.put(
            _CODE_PREFIX + code.code, code, code.expires_at + self._replay_window
        )
        return code

    async def consume_once(
        self,
        code_value: str,
        verify: Callable[[AuthorizationCode], None] | None = None,
    ) -> AuthorizationCode:
        """Redeem a code exactly once.

        *verify* runs under the same lock before the code is flagged; if it
        raises, the code stays redeemable and the exception propagates.

        Raises:
            GrantNotFound: unknown code, or past the replay window
            GrantExpired: code TTL elapsed before redemption
            GrantAlreadyConsumed: every redemption after the first
        """
        key = _CODE_PREFIX + code_value
        async with self._store.lock(key):
            code: AuthorizationCode | None = await self._store.get(key)
            if code is None:
                raise GrantNotFound("authorization code not found")
            if code.consumed:
                raise GrantAlreadyConsumed(code.grant_id, code.client_id)
            if self._clock() >= code.expires_at:
                raise GrantExpired("authorization code expired")
            if verify is not None:
                verify(code)
            code.consumed = True
            await self._store.put(key, code, code.expires_at + self._replay_window)
        return code

    # =========================================================================
    # Refresh grants
    # =========================================================================

    async def put_refresh(self, grant: RefreshGrant) -> None:
        await self._store.put(_REFRESH_PREFIX + grant.token_id, grant, grant.expires_at)

    async def get_refresh(self, token: str) -> RefreshGrant:
        """Look up a refresh token without consuming it."""
        grant: RefreshGrant | None = await self._store.get(_REFRESH_PREFIX + hash_token(token))
        if grant is None:
            raise GrantNotFound("refresh token not found")
        if grant.consumed:
            raise GrantAlreadyConsumed(grant.grant_id, grant.client_id)
        if self._clock() >= grant.expires_at:
            raise GrantExpired("refresh token expired")
        return grant

    async def rotate_refresh(
        self,
        token: str,
        verify: Callable[[RefreshGrant], None] | None = None,
    ) -> RefreshGrant:
        """Consume a refresh token for rotation. Same semantics as consume_once."""
        key = _REFRESH_PREFIX + hash_token(token)
        async with self._store.lock(key):
            grant: RefreshGrant | None = await self._store.get(key)
            if grant is None:
                raise GrantNotFound("refresh token not found")
            if grant.consumed:
                raise GrantAlreadyConsumed(grant.grant_id, grant.client_id)
            if self._clock() >= grant.expires_at:
                raise GrantExpired("refresh token expired")
            if verify is not None:
                verify(grant)
            grant.consumed = True
            await self._store.put(key, grant, grant.expires_at)
        return grant

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke_grant(self, grant_id: str) -> None:
        """Revoke every token descending from *grant_id*."""
        await self._store.put(
            _REVOKED_PREFIX + grant_id, True, self._clock() + self._revocation_ttl
        )
        logger.warning("Revoked grant %s", grant_id)

    async def is_revoked(self, grant_id: str) -> bool:
        return bool(await self._store.get(_REVOKED_PREFIX + grant_id))

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def run_sweeper(self, interval: float) -> None:
        """Sweep expired entries every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self._store.sweep()
            except Exception:
                logger.warning("Grant store sweep failed", exc_info=True)
