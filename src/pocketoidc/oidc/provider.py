# Provider assembly.
# Created: 2026-10-12
#
# Builds every component from one Settings value plus the account
# collaborators, and owns the background sweep task.

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time

from pocketoidc.config import Settings, get_settings
from pocketoidc.oidc.accounts import ClaimsProvider, CredentialVerifier, DevAccountStore
from pocketoidc.oidc.authorize import AuthorizationEndpoint
from pocketoidc.oidc.clients import ClientRegistry
from pocketoidc.oidc.discovery import DiscoveryPublisher
from pocketoidc.oidc.errors import FatalConfigError
from pocketoidc.oidc.events import ProviderEvents, log_event
from pocketoidc.oidc.grants import GrantStore
from pocketoidc.oidc.interactions import InteractionEngine
from pocketoidc.oidc.keys import KeyManager
from pocketoidc.oidc.logout import EndSessionEndpoint
from pocketoidc.oidc.sessions import SessionStore
from pocketoidc.oidc.storage import Clock, KeyValueStore, MemoryStore
from pocketoidc.oidc.token import TokenEndpoint
from pocketoidc.oidc.userinfo import UserinfoEndpoint
from pocketoidc.security.audit import AuditLogger

logger = logging.getLogger(__name__)


class Provider:
    """All endpoints of one OpenID Provider, sharing one store and one config."""

    def __init__(
        self,
        settings: Settings,
        *,
        keys: KeyManager,
        clients: ClientRegistry,
        claims: ClaimsProvider,
        verifier: CredentialVerifier,
        store: KeyValueStore | None = None,
        events: ProviderEvents | None = None,
        clock: Clock = time.time,
    ):
        for client in clients:
            if client.id_token_signing_alg not in keys.algorithms:
                raise FatalConfigError(
                    f"Client {client.client_id} wants {client.id_token_signing_alg} ID tokens "
                    f"but the signing key uses {', '.join(keys.algorithms)}"
                )

        self.settings = settings
        self.keys = keys
        self.clients = clients
        if store is None:
            store = MemoryStore(clock, max_entries=settings.store_max_entries)
        self.store = store
        self.events = events or ProviderEvents()
        self.events.subscribe("*", log_event)

        self.grants = GrantStore(
            self.store,
            replay_window=settings.authorization_code_ttl,
            revocation_ttl=max(settings.refresh_token_ttl, settings.access_token_ttl),
            clock=clock,
        )
        self.interactions = InteractionEngine(
            self.store,
            verifier,
            ttl=settings.interaction_ttl,
            max_login_attempts=settings.max_login_attempts,
            events=self.events,
            clock=clock,
        )
        self.sessions = SessionStore(self.store, ttl=settings.session_ttl, clock=clock)
        self.authorization = AuthorizationEndpoint(
            settings,
            clients,
            self.grants,
            self.interactions,
            self.sessions,
            events=self.events,
            clock=clock,
        )
        self.token = TokenEndpoint(
            settings, keys, clients, self.grants, claims, events=self.events, clock=clock
        )
        self.userinfo = UserinfoEndpoint(settings, keys, self.grants, claims)
        self.logout = EndSessionEndpoint(
            settings, keys, clients, self.sessions, events=self.events
        )
        self.discovery = DiscoveryPublisher(settings, keys)

        if settings.cookie_secret:
            self.cookie_secret = settings.cookie_secret
        else:
            logger.warning("No cookie_secret configured; sessions will not survive a restart")
            self.cookie_secret = secrets.token_hex(32)

        self._sweeper: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        claims: ClaimsProvider | None = None,
        verifier: CredentialVerifier | None = None,
        store: KeyValueStore | None = None,
        clock: Clock = time.time,
    ) -> Provider:
        """Build a provider from configuration.

        Without explicit collaborators the configured development accounts are used.

        Raises:
            FatalConfigError: no signing key, no clients, or no way to log users in
        """
        settings = settings or get_settings()
        keys = KeyManager.from_settings(settings)
        clients = ClientRegistry.from_config(settings.clients)

        if claims is None or verifier is None:
            if not settings.dev_accounts and not settings.dev_interactions:
                raise FatalConfigError(
                    "No account backend: pass claims/verifier or configure dev_accounts"
                )
            accounts = DevAccountStore(settings.dev_accounts, accept_any=settings.dev_interactions)
            claims = claims or accounts
            verifier = verifier or accounts

        provider = cls(
            settings,
            keys=keys,
            clients=clients,
            claims=claims,
            verifier=verifier,
            store=store,
            clock=clock,
        )
        AuditLogger(settings.audit_log_path).attach(provider.events)
        logger.info("OpenID Provider ready for issuer %s", settings.issuer)
        return provider

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self.grants.run_sweeper(self.settings.sweep_interval)
            )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None


# Singleton
_provider: Provider | None = None


def get_provider() -> Provider:
    global _provider
    if _provider is None:
        _provider = Provider.from_settings()
    return _provider


def reset_provider() -> None:
    global _provider
    _provider = None
