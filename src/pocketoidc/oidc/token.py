# Token endpoint.
# Created: 2026-10-12
#
# authorization_code: authenticate client -> consume the code (client binding,
# exact redirect_uri and PKCE are checked under the code's lock, before it is
# flagged) -> mint ID / access / refresh tokens.
#
# A consumed code never becomes usable again, even if minting fails afterwards.

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.accounts import ClaimsProvider, filter_claims
from pocketoidc.oidc.clients import ClientRegistry
from pocketoidc.oidc.errors import (
    GrantAlreadyConsumed,
    GrantExpired,
    GrantNotFound,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    OAuthError,
    SecurityViolation,
    ServerError,
    UnauthorizedClient,
    UnsupportedGrantType,
)
from pocketoidc.oidc.events import ProviderEvents
from pocketoidc.oidc.grants import GrantStore, hash_token
from pocketoidc.oidc.keys import KeyManager
from pocketoidc.oidc.models import (
    AuthorizationCode,
    Client,
    ClientAuth,
    RefreshGrant,
    TokenSet,
    split_scope,
)
from pocketoidc.oidc.pkce import verify_code_verifier
from pocketoidc.oidc.storage import Clock

if TYPE_CHECKING:
    from pocketoidc.config import Settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "at+jwt"


def token_hash(token: str) -> str:
    """at_hash: left half of the SHA-256 of the token, base64url.

    Every supported signing algorithm (RS256, PS256, ES256) uses SHA-256.
    """
    digest = hashlib.sha256(token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).decode("ascii").rstrip("=")


class TokenEndpoint:
    def __init__(
        self,
        settings: Settings,
        keys: KeyManager,
        clients: ClientRegistry,
        grants: GrantStore,
        claims: ClaimsProvider,
        *,
        events: ProviderEvents | None = None,
        clock: Clock = time.time,
    ):
        self._settings = settings
        self._keys = keys
        self._clients = clients
        self._grants = grants
        self._claims = claims
        self._events = events or ProviderEvents()
        self._clock = clock

    async def exchange(
        self,
        grant_type: str | None,
        params: Mapping[str, Any],
        client_auth: ClientAuth,
    ) -> TokenSet:
        """Run one token request.

        Raises:
            OAuthError: invalid_request, invalid_client, invalid_grant, ...
        """
        try:
            if grant_type == "authorization_code":
                tokens = await self._authorization_code(params, client_auth)
            elif grant_type == "refresh_token":
                tokens = await self._refresh_token(params, client_auth)
            elif not grant_type:
                raise InvalidRequest("grant_type is required")
            else:
                raise UnsupportedGrantType(f"grant_type {grant_type!r} is not supported")
        except SecurityViolation as exc:
            logger.warning(
                "Security violation %s at token endpoint (client %s)",
                exc.kind,
                client_auth.client_id,
            )
            self._events.emit(
                ev.SECURITY_VIOLATION,
                kind=exc.kind,
                client_id=client_auth.client_id,
                grant_type=grant_type,
                **exc.context,
            )
            self._events.emit(
                ev.GRANT_ERROR, client_id=client_auth.client_id, error=exc.error
            )
            raise
        except OAuthError as exc:
            self._events.emit(
                ev.GRANT_ERROR, client_id=client_auth.client_id, error=exc.error
            )
            raise

        self._events.emit(
            ev.GRANT_SUCCESS,
            client_id=client_auth.client_id,
            grant_type=grant_type,
            scope=tokens.scope,
        )
        return tokens

    # =========================================================================
    # Grants
    # =========================================================================

    def _authenticate(self, client_auth: ClientAuth, grant_type: str) -> Client:
        client = self._clients.authenticate_request(client_auth)
        if grant_type not in client.grant_types:
            raise UnauthorizedClient(f"client is not allowed to use {grant_type}")
        return client

    async def _authorization_code(
        self, params: Mapping[str, Any], client_auth: ClientAuth
    ) -> TokenSet:
        client = self._authenticate(client_auth, "authorization_code")

        code_value = params.get("code")
        if not code_value:
            raise InvalidRequest("code is required")
        redirect_uri = params.get("redirect_uri")
        code_verifier = params.get("code_verifier")

        def _verify(code: AuthorizationCode) -> None:
            if code.client_id != client.client_id:
                raise InvalidGrant("code was issued to another client")
            if redirect_uri != code.redirect_uri:
                raise SecurityViolation(
                    "redirect_uri_mismatch",
                    "redirect_uri does not match the authorization request",
                    grant_id=code.grant_id,
                )
            if code.code_challenge:
                if not verify_code_verifier(
                    code_verifier, code.code_challenge, code.code_challenge_method or "S256"
                ):
                    raise SecurityViolation(
                        "pkce_failure",
                        "code_verifier does not match code_challenge",
                        grant_id=code.grant_id,
                    )
            elif code_verifier:
                raise InvalidGrant("code_verifier sent for a code without code_challenge")

        try:
            code = await self._grants.consume_once(code_value, _verify)
        except GrantAlreadyConsumed as exc:
            await self._grants.revoke_grant(exc.grant_id)
            raise SecurityViolation(
                "code_replay",
                "authorization code has already been used",
                grant_id=exc.grant_id,
            ) from exc
        except (GrantNotFound, GrantExpired) as exc:
            raise InvalidGrant("authorization code is invalid or expired") from exc

        return await self._mint_after_redemption(
            client,
            account_id=code.account_id,
            scope=code.scope,
            grant_id=code.grant_id,
            auth_time=code.auth_time,
            nonce=code.nonce,
        )

    async def _refresh_token(self, params: Mapping[str, Any], client_auth: ClientAuth) -> TokenSet:
        client = self._authenticate(client_auth, "refresh_token")

        token = params.get("refresh_token")
        if not token:
            raise InvalidRequest("refresh_token is required")
        requested = split_scope(params.get("scope"))

        def _verify(grant: RefreshGrant) -> None:
            if grant.client_id != client.client_id:
                raise InvalidGrant("refresh token was issued to another client")
            if requested and not set(requested).issubset(grant.scope):
                raise InvalidScope("requested scope exceeds the original grant")

        rotate = self._settings.rotate_refresh_tokens
        try:
            grant = await self._grants.get_refresh(token)
            if await self._grants.is_revoked(grant.grant_id):
                raise InvalidGrant("grant has been revoked")
            if rotate:
                grant = await self._grants.rotate_refresh(token, _verify)
            else:
                _verify(grant)
        except GrantAlreadyConsumed as exc:
            await self._grants.revoke_grant(exc.grant_id)
            raise SecurityViolation(
                "refresh_replay",
                "refresh token has already been used",
                grant_id=exc.grant_id,
            ) from exc
        except (GrantNotFound, GrantExpired) as exc:
            raise InvalidGrant("refresh token is invalid or expired") from exc

        tokens = await self._mint_after_redemption(
            client,
            account_id=grant.account_id,
            scope=requested or grant.scope,
            grant_id=grant.grant_id,
            auth_time=grant.auth_time,
            rotated_from=grant.token_id if rotate else None,
            issue_refresh=rotate,
        )
        if not rotate:
            tokens.refresh_token = token
        return tokens

    # =========================================================================
    # Minting
    # =========================================================================

    async def _mint_after_redemption(self, client: Client, **kwargs: Any) -> TokenSet:
        try:
            return await self._mint(client, **kwargs)
        except OAuthError:
            raise
        except Exception as exc:
            logger.exception("Token minting failed for client %s", client.client_id)
            self._events.emit(ev.SERVER_ERROR, client_id=client.client_id, stage="mint")
            raise ServerError("failed to issue tokens") from exc

    async def _mint(
        self,
        client: Client,
        *,
        account_id: str,
        scope: tuple[str, ...],
        grant_id: str,
        auth_time: float | None = None,
        nonce: str | None = None,
        rotated_from: str | None = None,
        issue_refresh: bool = True,
    ) -> TokenSet:
        settings = self._settings
        now = int(self._clock())
        scope_string = " ".join(scope)

        access_claims: dict[str, Any] = {
            "iss": settings.issuer,
            "sub": account_id,
            "aud": client.client_id,
            "client_id": client.client_id,
            "scope": scope_string,
            "iat": now,
            "exp": now + settings.access_token_ttl,
            "jti": secrets.token_urlsafe(16),
            "gid": grant_id,
        }
        if auth_time is not None:
            access_claims["auth_time"] = int(auth_time)
        access_token = self._keys.sign(access_claims, {"typ": ACCESS_TOKEN_TYPE})

        id_token = None
        if "openid" in scope:
            claims = await self._claims.get_claims(account_id, scope, "id_token")
            if claims is None:
                raise InvalidGrant("account no longer exists")
            id_claims = filter_claims(claims, scope, settings.claims)
            id_claims.update(
                iss=settings.issuer,
                sub=account_id,
                aud=client.client_id,
                iat=now,
                exp=now + settings.id_token_ttl,
                at_hash=token_hash(access_token),
            )
            if auth_time is not None:
                id_claims["auth_time"] = int(auth_time)
            if nonce:
                id_claims["nonce"] = nonce
            id_token = self._keys.sign(id_claims)

        refresh_token = None
        if issue_refresh and self._issues_refresh(client, scope):
            refresh_token = secrets.token_urlsafe(32)
            await self._grants.put_refresh(
                RefreshGrant(
                    token_id=hash_token(refresh_token),
                    grant_id=grant_id,
                    client_id=client.client_id,
                    account_id=account_id,
                    scope=scope,
                    issued_at=now,
                    expires_at=now + settings.refresh_token_ttl,
                    auth_time=auth_time,
                    rotated_from=rotated_from,
                )
            )

        return TokenSet(
            access_token=access_token,
            expires_in=settings.access_token_ttl,
            scope=scope_string,
            id_token=id_token,
            refresh_token=refresh_token,
        )

    def _issues_refresh(self, client: Client, scope: tuple[str, ...]) -> bool:
        if "refresh_token" not in client.grant_types:
            return False
        return self._settings.issue_refresh_tokens or "offline_access" in scope
