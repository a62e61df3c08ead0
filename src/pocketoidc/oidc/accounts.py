# Account collaborators.
# Created: 2026-10-12
#
# The provider never stores account attributes. It holds account_id strings
# and asks a ClaimsProvider for claims when minting tokens, and a
# CredentialVerifier when a login form is submitted.

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ClaimsProvider(Protocol):
    async def get_claims(
        self, account_id: str, scope: Iterable[str], use: str
    ) -> Mapping[str, Any] | None:
        """Return claims for *account_id*, or None if the account is gone.

        *use* is ``"id_token"`` or ``"userinfo"``.
        """
        ...


class CredentialVerifier(Protocol):
    async def verify_credential(self, identifier: str, secret: str) -> str | None:
        """Return the account_id for valid credentials, None otherwise."""
        ...


def filter_claims(
    claims: Mapping[str, Any],
    scope: Iterable[str],
    scope_claims: Mapping[str, Iterable[str]],
) -> dict[str, Any]:
    """Keep only the claims released by the granted scopes. ``sub`` is always kept."""
    allowed = {"sub"}
    for s in scope:
        allowed.update(scope_claims.get(s, ()))
    return {k: v for k, v in claims.items() if k in allowed}


class DevAccountStore:
    """Config-driven accounts for development and tests.

    ``accounts`` maps a login identifier to ``{"password": ..., "claims": {...}}``.
    With ``accept_any`` every non-empty login succeeds without a password check,
    like a development interaction screen.
    """

    def __init__(
        self,
        accounts: Mapping[str, Mapping[str, Any]] | None = None,
        *,
        accept_any: bool = False,
    ):
        self._accounts = {k.lower(): dict(v) for k, v in (accounts or {}).items()}
        self._accept_any = accept_any
        if accept_any:
            logger.warning("Development logins enabled: any identifier is accepted")

    async def verify_credential(self, identifier: str, secret: str) -> str | None:
        identifier = identifier.strip().lower()
        if not identifier:
            return None
        account = self._accounts.get(identifier)
        if account is None:
            return identifier if self._accept_any else None
        expected = str(account.get("password", ""))
        if not expected or not hmac.compare_digest(secret.encode(), expected.encode()):
            return None
        return identifier

    async def get_claims(
        self, account_id: str, scope: Iterable[str], use: str
    ) -> Mapping[str, Any] | None:
        account = self._accounts.get(account_id)
        if account is None and not self._accept_any:
            return None
        claims: dict[str, Any] = {}
        if "@" in account_id:
            claims.update(email=account_id, email_verified=True)
        if account is not None:
            claims.update(account.get("claims") or {})
        claims["sub"] = account_id
        return claims
