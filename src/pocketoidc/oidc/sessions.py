# End-user sessions.
# Created: 2026-10-12
#
# A session remembers who logged in, when, and which scopes each client was
# granted, so a later /authorize can skip the interaction. The transport keeps
# only the signed sid in a cookie.

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterable

from pocketoidc.oidc.models import Session
from pocketoidc.oidc.storage import Clock, KeyValueStore

logger = logging.getLogger(__name__)

_PREFIX = "session:"


class SessionStore:
    def __init__(self, store: KeyValueStore, *, ttl: float = 86400, clock: Clock = time.time):
        self._store = store
        self.ttl = ttl
        self._clock = clock

    async def get(self, sid: str | None) -> Session | None:
        if not sid:
            return None
        session: Session | None = await self._store.get(_PREFIX + sid)
        if session is None or self._clock() >= session.expires_at:
            return None
        return session

    async def record_login(
        self,
        account_id: str,
        auth_time: float,
        *,
        client_id: str | None = None,
        scope: Iterable[str] = (),
        sid: str | None = None,
    ) -> Session:
        """Create or refresh a session after a completed interaction.

        A different account logging in through an existing sid gets a fresh session.
        """
        key = _PREFIX + sid if sid else None
        if key is not None:
            async with self._store.lock(key):
                session = await self.get(sid)
                if session is not None and session.account_id == account_id:
                    self._apply(session, auth_time, client_id, scope)
                    await self._store.put(key, session, session.expires_at)
                    return session

        session = Session(
            sid=secrets.token_urlsafe(32),
            account_id=account_id,
            auth_time=auth_time,
            expires_at=self._clock() + self.ttl,
        )
        self._apply(session, auth_time, client_id, scope)
        await self._store.put(_PREFIX + session.sid, session, session.expires_at)
        logger.debug("Started session for client %s", client_id)
        return session

    async def end(self, sid: str) -> bool:
        return await self._store.delete(_PREFIX + sid)

    def _apply(
        self,
        session: Session,
        auth_time: float,
        client_id: str | None,
        scope: Iterable[str],
    ) -> None:
        session.auth_time = max(session.auth_time, auth_time)
        session.expires_at = self._clock() + self.ttl
        if client_id is not None:
            granted = session.consents.get(client_id, frozenset())
            session.consents[client_id] = granted | frozenset(scope)
