# OIDC data models.
# Created: 2026-10-12
#
# Times are POSIX seconds taken from an injectable clock.

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pocketoidc.oidc.errors import InvalidRequest

PROMPT_VALUES = frozenset({"none", "login", "consent", "select_account"})


def split_scope(scope: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split a space-delimited scope string, dropping duplicates but keeping order."""
    if not scope:
        return ()
    items = scope.split() if isinstance(scope, str) else list(scope)
    return tuple(dict.fromkeys(s for s in items if s))


@dataclass(frozen=True)
class Client:
    """Statically registered relying party."""

    client_id: str
    redirect_uris: frozenset[str]
    client_secret: str | None = None
    post_logout_redirect_uris: frozenset[str] = frozenset()
    grant_types: tuple[str, ...] = ("authorization_code",)
    response_types: tuple[str, ...] = ("code",)
    scopes: frozenset[str] = frozenset({"openid"})
    token_endpoint_auth_method: str = "client_secret_basic"
    id_token_signing_alg: str = "RS256"
    client_name: str = ""
    application_type: str = "web"
    default_max_age: int | None = None
    require_pkce: bool = False

    @property
    def is_public(self) -> bool:
        return not self.client_secret

    def __repr__(self) -> str:
        return f"Client(client_id={self.client_id!r}, public={self.is_public})"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Parameters of a single ``/authorize`` call."""

    client_id: str
    redirect_uri: str
    response_type: str = "code"
    scope: tuple[str, ...] = ()
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    max_age: int | None = None
    prompt: frozenset[str] = frozenset()

    @property
    def scope_string(self) -> str:
        return " ".join(self.scope)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> AuthorizationRequest:
        """Build a request from raw query parameters.

        Only structural problems are raised here; protocol validation is the
        authorization endpoint's job.
        """

        def _get(name: str) -> str | None:
            value = params.get(name)
            if value is None or value == "":
                return None
            return str(value)

        max_age = _get("max_age")
        if max_age is not None:
            try:
                parsed_max_age: int | None = int(max_age)
            except ValueError:
                raise InvalidRequest("max_age must be an integer") from None
            if parsed_max_age < 0:
                raise InvalidRequest("max_age must be non-negative")
        else:
            parsed_max_age = None

        prompt = frozenset((_get("prompt") or "").split())
        unknown = prompt - PROMPT_VALUES
        if unknown:
            raise InvalidRequest(f"unsupported prompt value: {' '.join(sorted(unknown))}")
        if "none" in prompt and len(prompt) > 1:
            raise InvalidRequest("prompt=none cannot be combined with other values")

        return cls(
            client_id=_get("client_id") or "",
            redirect_uri=_get("redirect_uri") or "",
            response_type=_get("response_type") or "",
            scope=split_scope(_get("scope")),
            state=_get("state"),
            nonce=_get("nonce"),
            code_challenge=_get("code_challenge"),
            code_challenge_method=_get("code_challenge_method"),
            max_age=parsed_max_age,
            prompt=prompt,
        )


class InteractionStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CONSENT = "awaiting_consent"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass
class InteractionResult:
    """Outcome of the login and consent prompts."""

    account_id: str | None = None
    auth_time: float | None = None
    granted: bool | None = None
    granted_scope: tuple[str, ...] = ()
    error: str | None = None
    error_description: str | None = None


@dataclass
class Interaction:
    uid: str
    request: AuthorizationRequest
    created_at: float
    expires_at: float
    status: InteractionStatus = InteractionStatus.PENDING
    result: InteractionResult = field(default_factory=InteractionResult)
    login_attempts: int = 0

    @property
    def prompt(self) -> str | None:
        """Name of the prompt the user has to answer next, if any."""
        if self.status == InteractionStatus.PENDING:
            return "login"
        if self.status == InteractionStatus.AWAITING_CONSENT:
            return "consent"
        return None


@dataclass
class AuthorizationCode:
    """Short-lived, single-use authorization code."""

    code: str
    grant_id: str
    client_id: str
    redirect_uri: str
    scope: tuple[str, ...]
    account_id: str
    issued_at: float
    expires_at: float
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    auth_time: float | None = None
    consumed: bool = False


@dataclass
class RefreshGrant:
    """Refresh token record. ``rotated_from`` points at the token it replaced."""

    token_id: str
    grant_id: str
    client_id: str
    account_id: str
    scope: tuple[str, ...]
    issued_at: float
    expires_at: float
    auth_time: float | None = None
    rotated_from: str | None = None
    consumed: bool = False


@dataclass
class Session:
    """Browser session established by a completed login."""

    sid: str
    account_id: str
    auth_time: float
    expires_at: float
    consents: dict[str, frozenset[str]] = field(default_factory=dict)

    def has_consent(self, client_id: str, scope: tuple[str, ...]) -> bool:
        granted = self.consents.get(client_id)
        return granted is not None and set(scope).issubset(granted)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    algorithm: str
    private_key: Any = field(repr=False)
    public_jwk: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ClientAuth:
    """Client credentials presented at the token endpoint."""

    client_id: str
    client_secret: str | None = None
    method: str = "none"


@dataclass
class TokenSet:
    access_token: str
    expires_in: int
    scope: str
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.id_token:
            body["id_token"] = self.id_token
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body
