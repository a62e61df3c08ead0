# Userinfo endpoint.
# Created: 2026-10-12

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import jwt

from pocketoidc.oidc.accounts import ClaimsProvider, filter_claims
from pocketoidc.oidc.errors import InsufficientScope, InvalidToken
from pocketoidc.oidc.grants import GrantStore
from pocketoidc.oidc.keys import KeyManager
from pocketoidc.oidc.models import split_scope
from pocketoidc.oidc.token import ACCESS_TOKEN_TYPE

if TYPE_CHECKING:
    from pocketoidc.config import Settings

logger = logging.getLogger(__name__)


class UserinfoEndpoint:
    """Returns the claims released by an access token's scope."""

    def __init__(
        self,
        settings: Settings,
        keys: KeyManager,
        grants: GrantStore,
        claims: ClaimsProvider,
    ):
        self._settings = settings
        self._keys = keys
        self._grants = grants
        self._claims = claims

    async def userinfo(self, access_token: str | None) -> dict[str, Any]:
        if not access_token:
            raise InvalidToken("access token is required")
        try:
            header = jwt.get_unverified_header(access_token)
            payload = self._keys.verify(access_token, issuer=self._settings.issuer)
        except jwt.PyJWTError as exc:
            logger.debug("Rejected access token: %s", exc)
            raise InvalidToken("access token is invalid or expired") from exc

        if header.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidToken("not an access token")
        grant_id = payload.get("gid")
        if grant_id and await self._grants.is_revoked(grant_id):
            raise InvalidToken("access token has been revoked")

        scope = split_scope(payload.get("scope"))
        if "openid" not in scope:
            raise InsufficientScope("openid scope is required")

        account_id = payload["sub"]
        claims = await self._claims.get_claims(account_id, scope, "userinfo")
        if claims is None:
            raise InvalidToken("account no longer exists")
        released = filter_claims(claims, scope, self._settings.claims)
        released["sub"] = account_id
        return released
