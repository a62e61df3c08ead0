# RP-initiated logout (end_session_endpoint).
# Created: 2026-10-19
#
# Ends the browser session and, when the relying party names one, sends the
# user agent back to a registered post_logout_redirect_uri with its state.

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import jwt

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.authorize import Redirect
from pocketoidc.oidc.clients import ClientRegistry
from pocketoidc.oidc.errors import InvalidClient, InvalidRequest
from pocketoidc.oidc.events import ProviderEvents
from pocketoidc.oidc.keys import KeyManager
from pocketoidc.oidc.models import Client
from pocketoidc.oidc.sessions import SessionStore
from pocketoidc.oidc.token import ACCESS_TOKEN_TYPE

if TYPE_CHECKING:
    from pocketoidc.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogoutRequest:
    id_token_hint: str | None = None
    client_id: str | None = None
    post_logout_redirect_uri: str | None = None
    state: str | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> LogoutRequest:
        def _get(name: str) -> str | None:
            value = params.get(name)
            return str(value) if value else None

        return cls(
            id_token_hint=_get("id_token_hint"),
            client_id=_get("client_id"),
            post_logout_redirect_uri=_get("post_logout_redirect_uri"),
            state=_get("state"),
        )


@dataclass(frozen=True)
class LogoutResult:
    """``redirect`` is None when the user should see a signed-out page instead."""

    redirect: Redirect | None
    session_ended: bool


class EndSessionEndpoint:
    def __init__(
        self,
        settings: Settings,
        keys: KeyManager,
        clients: ClientRegistry,
        sessions: SessionStore,
        *,
        events: ProviderEvents | None = None,
    ):
        self._settings = settings
        self._keys = keys
        self._clients = clients
        self._sessions = sessions
        self._events = events or ProviderEvents()

    async def end_session(
        self, request: LogoutRequest, session_id: str | None = None
    ) -> LogoutResult:
        """End the session behind *session_id* and work out where to go next.

        Nothing is ended when the request is rejected.

        Raises:
            InvalidRequest: bad id_token_hint, or an unregistered post_logout_redirect_uri
            InvalidClient: client_id names no registered client
        """
        client = self._identify_client(request)

        redirect = None
        uri = request.post_logout_redirect_uri
        if uri is not None:
            if client is None:
                raise InvalidRequest(
                    "post_logout_redirect_uri requires id_token_hint or client_id",
                    redirectable=False,
                )
            if uri not in client.post_logout_redirect_uris:
                raise InvalidRequest(
                    "post_logout_redirect_uri is not registered for this client",
                    redirectable=False,
                )
            redirect = Redirect(uri, {"state": request.state} if request.state else {})

        ended = await self._sessions.end(session_id) if session_id else False
        self._events.emit(
            ev.SESSION_ENDED,
            client_id=client.client_id if client else None,
            session_ended=ended,
        )
        return LogoutResult(redirect, ended)

    def _identify_client(self, request: LogoutRequest) -> Client | None:
        hinted = None
        if request.id_token_hint is not None:
            hinted = self._hinted_client_id(request.id_token_hint)
            if request.client_id and request.client_id != hinted:
                raise InvalidRequest(
                    "client_id does not match id_token_hint", redirectable=False
                )

        client_id = request.client_id or hinted
        if client_id is None:
            return None
        client = self._clients.lookup(client_id)
        if client is None:
            raise InvalidClient("unknown client_id", redirectable=False)
        return client

    def _hinted_client_id(self, id_token_hint: str) -> str:
        try:
            header = jwt.get_unverified_header(id_token_hint)
            claims = self._keys.verify(
                id_token_hint, issuer=self._settings.issuer, verify_exp=False
            )
        except jwt.PyJWTError as exc:
            logger.debug("Rejected id_token_hint: %s", exc)
            raise InvalidRequest(
                "id_token_hint could not be validated", redirectable=False
            ) from exc

        if header.get("typ") == ACCESS_TOKEN_TYPE:
            raise InvalidRequest("id_token_hint is not an ID token", redirectable=False)
        audience = claims.get("aud")
        if isinstance(audience, list):
            audience = audience[0] if len(audience) == 1 else None
        if not isinstance(audience, str):
            raise InvalidRequest("id_token_hint has no single audience", redirectable=False)
        return audience
