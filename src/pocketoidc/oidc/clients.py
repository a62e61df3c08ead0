# Static client registry.
# Created: 2026-10-12
#
# Clients are validated once at load and immutable afterwards. Redirect URIs
# are matched by exact string comparison only.

from __future__ import annotations

import base64
import hmac
import logging
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import unquote, urlsplit

from pocketoidc.oidc.errors import FatalConfigError, InvalidClient
from pocketoidc.oidc.keys import SUPPORTED_ALGORITHMS
from pocketoidc.oidc.models import Client, ClientAuth, split_scope

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = frozenset({"authorization_code", "refresh_token"})
SUPPORTED_RESPONSE_TYPES = frozenset({"code"})
AUTH_METHODS = frozenset({"client_secret_basic", "client_secret_post", "none"})


def _check_redirect_uri(client_id: str, uri: str) -> None:
    parts = urlsplit(uri)
    if not parts.scheme or not (parts.netloc or parts.path):
        raise FatalConfigError(f"Client {client_id}: redirect_uri {uri!r} is not absolute")
    if parts.fragment:
        raise FatalConfigError(f"Client {client_id}: redirect_uri {uri!r} has a fragment")


def client_from_config(entry: Mapping[str, Any]) -> Client:
    """Validate one raw client mapping (config file format) into a Client."""
    client_id = str(entry.get("client_id") or "")
    if not client_id:
        raise FatalConfigError("Client entry without client_id")

    redirect_uris = list(entry.get("redirect_uris") or [])
    if not redirect_uris:
        raise FatalConfigError(f"Client {client_id}: at least one redirect_uri is required")
    for uri in redirect_uris:
        _check_redirect_uri(client_id, uri)
    post_logout_redirect_uris = list(entry.get("post_logout_redirect_uris") or [])
    for uri in post_logout_redirect_uris:
        _check_redirect_uri(client_id, uri)

    grant_types = tuple(entry.get("grant_types") or ("authorization_code",))
    unknown = set(grant_types) - SUPPORTED_GRANT_TYPES
    if unknown:
        raise FatalConfigError(f"Client {client_id}: unsupported grant_types {sorted(unknown)}")

    response_types = tuple(entry.get("response_types") or ("code",))
    unknown = set(response_types) - SUPPORTED_RESPONSE_TYPES
    if unknown:
        raise FatalConfigError(f"Client {client_id}: unsupported response_types {sorted(unknown)}")

    secret = entry.get("client_secret") or None
    method = entry.get("token_endpoint_auth_method") or (
        "client_secret_basic" if secret else "none"
    )
    if method not in AUTH_METHODS:
        raise FatalConfigError(f"Client {client_id}: unsupported auth method {method!r}")
    if (method == "none") != (secret is None):
        raise FatalConfigError(
            f"Client {client_id}: token_endpoint_auth_method 'none' is only valid without a secret"
        )

    alg = entry.get("id_token_signed_response_alg") or entry.get("id_token_signing_alg") or "RS256"
    if alg not in SUPPORTED_ALGORITHMS:
        raise FatalConfigError(f"Client {client_id}: unsupported id_token signing alg {alg!r}")

    scopes = split_scope(entry.get("scope") or entry.get("scopes") or "openid")
    default_max_age = entry.get("default_max_age")

    return Client(
        client_id=client_id,
        client_secret=secret,
        redirect_uris=frozenset(redirect_uris),
        post_logout_redirect_uris=frozenset(post_logout_redirect_uris),
        grant_types=grant_types,
        response_types=response_types,
        scopes=frozenset(scopes),
        token_endpoint_auth_method=method,
        id_token_signing_alg=alg,
        client_name=str(entry.get("client_name") or client_id),
        application_type=str(entry.get("application_type") or "web"),
        default_max_age=int(default_max_age) if default_max_age is not None else None,
        require_pkce=bool(entry.get("require_pkce", False)),
    )


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic`` header into (client_id, client_secret)."""
    if not header or not header.lower().startswith("basic "):
        return None
    try:
        raw = base64.b64decode(header.split(" ", 1)[1].strip(), validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    if ":" not in raw:
        return None
    client_id, secret = raw.split(":", 1)
    # RFC 6749 2.3.1: both parts are form-urlencoded before base64
    return unquote(client_id), unquote(secret)


class ClientRegistry:
    """Read-only lookup and authentication of registered clients."""

    def __init__(self, clients: Iterable[Client]):
        self._clients: dict[str, Client] = {}
        for client in clients:
            if client.client_id in self._clients:
                raise FatalConfigError(f"Duplicate client_id: {client.client_id}")
            self._clients[client.client_id] = client
        if not self._clients:
            raise FatalConfigError("No clients configured")

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, Any]]) -> ClientRegistry:
        registry = cls(client_from_config(e) for e in entries)
        logger.info("Loaded %d client(s)", len(registry))
        return registry

    def __len__(self) -> int:
        return len(self._clients)

    def __iter__(self):
        return iter(self._clients.values())

    def lookup(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)

    def validate_redirect_uri(self, client: Client, uri: str) -> bool:
        return uri in client.redirect_uris

    def authenticate(self, client_id: str, credential: str | None, method: str) -> bool:
        """Check token-endpoint credentials against the registered method."""
        client = self._clients.get(client_id)
        if client is None:
            return False
        if method != client.token_endpoint_auth_method:
            return False
        if method == "none":
            return client.is_public and not credential
        if not credential or client.client_secret is None:
            return False
        return hmac.compare_digest(credential.encode(), client.client_secret.encode())

    def authenticate_request(self, auth: ClientAuth) -> Client:
        """Authenticate *auth* or raise InvalidClient."""
        if not auth.client_id:
            raise InvalidClient("client authentication required")
        if not self.authenticate(auth.client_id, auth.client_secret, auth.method):
            raise InvalidClient("client authentication failed")
        return self._clients[auth.client_id]
