# Login / consent interaction state machine.
# Created: 2026-10-12
#
#   pending --valid login--> awaiting_consent --granted|denied--> completed
#   pending --invalid login--> pending (until max_login_attempts)
#   any unresolved state --TTL--> expired
#
# Submissions for one uid are serialized through the store's per-key lock.

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.accounts import CredentialVerifier
from pocketoidc.oidc.errors import (
    InteractionExpired,
    InteractionNotFound,
    InvalidInteractionState,
)
from pocketoidc.oidc.events import ProviderEvents
from pocketoidc.oidc.models import (
    AuthorizationRequest,
    Interaction,
    InteractionResult,
    InteractionStatus,
)
from pocketoidc.oidc.storage import Clock, KeyValueStore

logger = logging.getLogger(__name__)

_PREFIX = "interaction:"


@dataclass(frozen=True)
class LoginSubmission:
    identifier: str
    secret: str = field(default="", repr=False)


@dataclass(frozen=True)
class ConsentDecision:
    granted: bool
    scope: tuple[str, ...] | None = None  # None grants everything requested


class InteractionEngine:
    """Owns Interaction records from start() until resolve() or expiry."""

    def __init__(
        self,
        store: KeyValueStore,
        verifier: CredentialVerifier,
        *,
        ttl: float = 600,
        max_login_attempts: int = 5,
        events: ProviderEvents | None = None,
        clock: Clock = time.time,
    ):
        self._store = store
        self._verifier = verifier
        self.ttl = ttl
        self._max_login_attempts = max_login_attempts
        self._events = events or ProviderEvents()
        self._clock = clock

    async def start(
        self,
        request: AuthorizationRequest,
        *,
        account_id: str | None = None,
        auth_time: float | None = None,
    ) -> Interaction:
        """Open an interaction for *request*.

        With *account_id* the user is already known (live session) and the
        interaction starts at the consent prompt.
        """
        now = self._clock()
        interaction = Interaction(
            uid=secrets.token_urlsafe(32),
            request=request,
            created_at=now,
            expires_at=now + self.ttl,
        )
        if account_id is not None:
            interaction.status = InteractionStatus.AWAITING_CONSENT
            interaction.result = InteractionResult(account_id=account_id, auth_time=auth_time)
        await self._save(interaction)
        self._events.emit(
            ev.INTERACTION_STARTED,
            uid=interaction.uid,
            client_id=request.client_id,
            prompt=interaction.prompt,
        )
        return interaction

    async def get(self, uid: str) -> Interaction:
        return await self._load(uid)

    async def submit(self, uid: str, outcome: LoginSubmission | ConsentDecision) -> Interaction:
        """Apply a login or consent outcome.

        Raises:
            InteractionNotFound: unknown or already resolved uid
            InteractionExpired: TTL elapsed
            InvalidInteractionState: outcome does not match the current prompt
        """
        async with self._store.lock(_PREFIX + uid):
            interaction = await self._load(uid)
            if isinstance(outcome, LoginSubmission):
                await self._apply_login(interaction, outcome)
            elif isinstance(outcome, ConsentDecision):
                self._apply_consent(interaction, outcome)
            else:
                raise TypeError(f"Unsupported interaction outcome: {type(outcome).__name__}")
            await self._save(interaction)

        if interaction.status == InteractionStatus.COMPLETED:
            self._events.emit(
                ev.INTERACTION_ENDED,
                uid=uid,
                client_id=interaction.request.client_id,
                granted=interaction.result.granted,
            )
        return interaction

    async def resolve(self, uid: str) -> Interaction:
        """Hand a completed interaction back to the authorization endpoint, once."""
        key = _PREFIX + uid
        async with self._store.lock(key):
            interaction = await self._load(uid)
            if interaction.status != InteractionStatus.COMPLETED:
                raise InvalidInteractionState(
                    f"interaction is {interaction.status.value}, not completed"
                )
            await self._store.delete(key)
        return interaction

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _apply_login(self, interaction: Interaction, outcome: LoginSubmission) -> None:
        if interaction.status != InteractionStatus.PENDING:
            raise InvalidInteractionState(f"interaction is {interaction.status.value}")

        account_id = await self._verifier.verify_credential(outcome.identifier, outcome.secret)
        if account_id is None:
            interaction.login_attempts += 1
            logger.info(
                "Failed login for interaction %s (attempt %d/%d)",
                interaction.uid,
                interaction.login_attempts,
                self._max_login_attempts,
            )
            if interaction.login_attempts >= self._max_login_attempts:
                interaction.status = InteractionStatus.COMPLETED
                interaction.result = InteractionResult(
                    granted=False,
                    error="access_denied",
                    error_description="too many failed login attempts",
                )
            return

        interaction.status = InteractionStatus.AWAITING_CONSENT
        interaction.result = InteractionResult(account_id=account_id, auth_time=self._clock())

    def _apply_consent(self, interaction: Interaction, outcome: ConsentDecision) -> None:
        if interaction.status != InteractionStatus.AWAITING_CONSENT:
            raise InvalidInteractionState(f"interaction is {interaction.status.value}")

        result = interaction.result
        interaction.status = InteractionStatus.COMPLETED
        if not outcome.granted:
            result.granted = False
            result.error = "access_denied"
            result.error_description = "end-user denied the request"
            return

        requested = interaction.request.scope
        if outcome.scope is None:
            granted = requested
        else:
            # Consent can narrow the request, never widen it
            granted = tuple(s for s in requested if s in set(outcome.scope))
        result.granted = True
        result.granted_scope = granted

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _save(self, interaction: Interaction) -> None:
        # Kept one extra TTL so late submissions read as expired, not unknown
        await self._store.put(
            _PREFIX + interaction.uid, interaction, interaction.expires_at + self.ttl
        )

    async def _load(self, uid: str) -> Interaction:
        interaction: Interaction | None = await self._store.get(_PREFIX + uid)
        if interaction is None:
            raise InteractionNotFound(uid)
        if interaction.status == InteractionStatus.EXPIRED:
            raise InteractionExpired(uid)
        if self._clock() >= interaction.expires_at:
            interaction.status = InteractionStatus.EXPIRED
            await self._save(interaction)
            raise InteractionExpired(uid)
        return interaction
