# Authorization endpoint.
# Created: 2026-10-12
#
# Validates /authorize requests in a fixed order, starts interactions when the
# user has to be asked something, and mints authorization codes once an
# interaction (or a live session) grants the request.

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.clients import ClientRegistry
from pocketoidc.oidc.errors import (
    AccessDenied,
    ConsentRequired,
    InvalidClient,
    InvalidRequest,
    InvalidScope,
    LoginRequired,
    OAuthError,
    UnsupportedResponseType,
)
from pocketoidc.oidc.events import ProviderEvents
from pocketoidc.oidc.grants import GrantStore
from pocketoidc.oidc.interactions import InteractionEngine
from pocketoidc.oidc.models import (
    AuthorizationCode,
    AuthorizationRequest,
    Client,
    Interaction,
    Session,
)
from pocketoidc.oidc.pkce import SUPPORTED_METHODS, is_valid_challenge
from pocketoidc.oidc.sessions import SessionStore
from pocketoidc.oidc.storage import Clock

if TYPE_CHECKING:
    from pocketoidc.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Redirect:
    """A 302 back to the client's registered redirect_uri."""

    redirect_uri: str
    params: dict[str, str] = field(default_factory=dict)

    @property
    def location(self) -> str:
        if not self.params:
            return self.redirect_uri
        sep = "&" if "?" in self.redirect_uri else "?"
        return f"{self.redirect_uri}{sep}{urlencode(self.params)}"


@dataclass(frozen=True)
class InteractionRequired:
    """The user agent has to be sent to the interaction UI."""

    interaction: Interaction

    @property
    def uid(self) -> str:
        return self.interaction.uid


class AuthorizationEndpoint:
    def __init__(
        self,
        settings: Settings,
        clients: ClientRegistry,
        grants: GrantStore,
        interactions: InteractionEngine,
        sessions: SessionStore,
        *,
        events: ProviderEvents | None = None,
        clock: Clock = time.time,
    ):
        self._settings = settings
        self._clients = clients
        self._grants = grants
        self._interactions = interactions
        self._sessions = sessions
        self._events = events or ProviderEvents()
        self._clock = clock
        self._supported_scopes = frozenset(settings.scopes)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, request: AuthorizationRequest) -> Client:
        """Run the ordered checks; the first failure wins.

        Errors about the client or redirect_uri are raised non-redirectable,
        since the redirect target itself is untrusted at that point.
        """
        client = self._clients.lookup(request.client_id)
        if client is None:
            raise InvalidClient("unknown client_id", redirectable=False)

        if not request.redirect_uri or not self._clients.validate_redirect_uri(
            client, request.redirect_uri
        ):
            raise InvalidRequest(
                "redirect_uri is not registered for this client", redirectable=False
            )

        if not request.response_type:
            raise InvalidRequest("response_type is required")
        if request.response_type not in client.response_types:
            raise UnsupportedResponseType(
                f"response_type {request.response_type!r} is not allowed for this client"
            )

        if not request.scope:
            raise InvalidScope("scope is required")
        allowed = client.scopes & self._supported_scopes
        unknown = [s for s in request.scope if s not in allowed]
        if unknown:
            raise InvalidScope(f"scope not allowed: {' '.join(unknown)}")

        if request.code_challenge or request.code_challenge_method:
            if request.code_challenge_method not in SUPPORTED_METHODS:
                raise InvalidRequest("code_challenge_method must be S256")
            if not request.code_challenge or not is_valid_challenge(request.code_challenge):
                raise InvalidRequest("code_challenge is malformed")
        elif client.is_public or client.require_pkce or self._settings.require_pkce:
            raise InvalidRequest("PKCE with code_challenge_method=S256 is required")

        return client

    # =========================================================================
    # Flow
    # =========================================================================

    async def authorize(
        self,
        request: AuthorizationRequest,
        session_id: str | None = None,
    ) -> Redirect | InteractionRequired:
        """Handle one authorization request.

        Raises:
            OAuthError: non-redirectable errors (unknown client, bad redirect_uri)
        """
        try:
            client = self.validate(request)
        except OAuthError as exc:
            self._events.emit(
                ev.AUTHORIZATION_ERROR, client_id=request.client_id or None, error=exc.error
            )
            if not exc.redirectable:
                raise
            return self.error_redirect(request, exc)

        self._events.emit(
            ev.AUTHORIZATION_VALIDATED, client_id=client.client_id, scope=request.scope_string
        )

        session = await self._sessions.get(session_id)
        if session is not None and self._session_satisfies(session, request, client):
            if "consent" not in request.prompt and session.has_consent(
                client.client_id, request.scope
            ):
                return await self._grant(
                    request, session.account_id, session.auth_time, request.scope
                )
            if "none" in request.prompt:
                return self.error_redirect(request, ConsentRequired("consent is required"))
            interaction = await self._interactions.start(
                request, account_id=session.account_id, auth_time=session.auth_time
            )
            return InteractionRequired(interaction)

        if "none" in request.prompt:
            return self.error_redirect(request, LoginRequired("end-user is not logged in"))

        interaction = await self._interactions.start(request)
        return InteractionRequired(interaction)

    async def complete(
        self, uid: str, session_id: str | None = None
    ) -> tuple[Redirect, Session | None]:
        """Finish the request behind a completed interaction.

        Returns the redirect to send and, when the user was granted access, the
        session to pin in the user agent.

        Raises:
            InteractionError: the interaction is unknown, expired or not completed
        """
        interaction = await self._interactions.resolve(uid)
        request = interaction.request
        result = interaction.result

        if not result.granted or result.account_id is None:
            denied = AccessDenied(result.error_description or "")
            self._events.emit(
                ev.AUTHORIZATION_ERROR, client_id=request.client_id, error=denied.error
            )
            return self.error_redirect(request, denied), None

        auth_time = result.auth_time if result.auth_time is not None else self._clock()
        session = await self._sessions.record_login(
            result.account_id,
            auth_time,
            client_id=request.client_id,
            scope=result.granted_scope,
            sid=session_id,
        )
        redirect = await self._grant(request, result.account_id, auth_time, result.granted_scope)
        return redirect, session

    def error_redirect(self, request: AuthorizationRequest, error: OAuthError) -> Redirect:
        params = error.to_dict()
        if request.state:
            params["state"] = request.state
        return Redirect(request.redirect_uri, params)

    def _session_satisfies(
        self, session: Session, request: AuthorizationRequest, client: Client
    ) -> bool:
        if "login" in request.prompt:
            return False
        max_age = request.max_age if request.max_age is not None else client.default_max_age
        if max_age is None:
            return True
        return self._clock() - session.auth_time <= max_age

    async def _grant(
        self,
        request: AuthorizationRequest,
        account_id: str,
        auth_time: float,
        scope: tuple[str, ...],
    ) -> Redirect:
        now = self._clock()
        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            grant_id=secrets.token_urlsafe(16),
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            scope=scope,
            account_id=account_id,
            issued_at=now,
            expires_at=now + self._settings.authorization_code_ttl,
            nonce=request.nonce,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            auth_time=auth_time,
        )
        await self._grants.put(code)
        self._events.emit(
            ev.AUTHORIZATION_SUCCESS,
            client_id=request.client_id,
            grant_id=code.grant_id,
            scope=" ".join(scope),
        )

        params = {"code": code.code}
        if request.state:
            params["state"] = request.state
        return Redirect(request.redirect_uri, params)
