# Provider metadata and JWKS publication.
# Created: 2026-10-12

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any

from pocketoidc.oidc.clients import AUTH_METHODS, SUPPORTED_GRANT_TYPES, SUPPORTED_RESPONSE_TYPES
from pocketoidc.oidc.keys import KeyManager
from pocketoidc.oidc.pkce import SUPPORTED_METHODS

if TYPE_CHECKING:
    from pocketoidc.config import Settings

AUTHORIZATION_PATH = "/authorize"
TOKEN_PATH = "/token"
USERINFO_PATH = "/userinfo"
JWKS_PATH = "/jwks"
END_SESSION_PATH = "/session/end"


class DiscoveryPublisher:
    """Read-only view of the provider for relying parties.

    Both documents are computed once; callers get copies.
    """

    def __init__(self, settings: Settings, keys: KeyManager):
        issuer = settings.issuer.rstrip("/")
        claims = {"sub", "iss", "aud", "exp", "iat", "auth_time", "nonce"}
        for names in settings.claims.values():
            claims.update(names)

        self._metadata: dict[str, Any] = {
            "issuer": settings.issuer,
            "authorization_endpoint": issuer + AUTHORIZATION_PATH,
            "token_endpoint": issuer + TOKEN_PATH,
            "userinfo_endpoint": issuer + USERINFO_PATH,
            "jwks_uri": issuer + JWKS_PATH,
            "end_session_endpoint": issuer + END_SESSION_PATH,
            "scopes_supported": list(settings.scopes),
            "response_types_supported": sorted(SUPPORTED_RESPONSE_TYPES),
            "response_modes_supported": ["query"],
            "grant_types_supported": sorted(SUPPORTED_GRANT_TYPES),
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": keys.algorithms,
            "token_endpoint_auth_methods_supported": sorted(AUTH_METHODS),
            "code_challenge_methods_supported": list(SUPPORTED_METHODS),
            "claims_supported": sorted(claims),
            "claims_parameter_supported": False,
            "request_parameter_supported": False,
            "request_uri_parameter_supported": False,
        }
        self._jwks = keys.public_jwks()

    def metadata(self) -> dict[str, Any]:
        return copy.deepcopy(self._metadata)

    def jwks(self) -> dict[str, Any]:
        return copy.deepcopy(self._jwks)
