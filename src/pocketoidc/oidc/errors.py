# OIDC error taxonomy.
# Created: 2026-10-12
#
# OAuthError subclasses map 1:1 to the OAuth2/OIDC error codes returned to
# callers. Store and interaction errors are internal and get translated by the
# endpoints before they leave the core.

from __future__ import annotations

from typing import Any


class OIDCError(Exception):
    """Base exception for everything raised by the provider core."""


# =========================================================================
# Client-facing OAuth2 errors
# =========================================================================


class OAuthError(OIDCError):
    """An error surfaced to the caller as ``{error, error_description}``.

    ``redirectable`` is False for errors that must never be delivered to the
    request's ``redirect_uri`` (unknown client, unregistered redirect URI).
    """

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str = "", *, redirectable: bool = True):
        super().__init__(description or self.error)
        self.description = description
        self.redirectable = redirectable

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class UnauthorizedClient(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class AccessDenied(OAuthError):
    error = "access_denied"
    status_code = 403


class LoginRequired(OAuthError):
    error = "login_required"


class ConsentRequired(OAuthError):
    error = "consent_required"


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


class SecurityViolation(InvalidGrant):
    """A replay, binding or proof failure.

    Callers only ever see ``invalid_grant``; ``kind`` is for audit sinks.
    """

    def __init__(self, kind: str, description: str = "", **context: Any):
        super().__init__(description)
        self.kind = kind
        self.context = context


# =========================================================================
# Infrastructure and configuration
# =========================================================================


class TransientInfraError(OIDCError):
    """Backing store unavailable. Safe for the caller to retry."""


class FatalConfigError(OIDCError):
    """The provider cannot start with the given configuration."""


class KeyUnavailable(FatalConfigError):
    """No valid signing key could be loaded."""


# =========================================================================
# Grant store
# =========================================================================


class GrantError(OIDCError):
    pass


class GrantNotFound(GrantError):
    pass


class GrantExpired(GrantError):
    pass


class GrantAlreadyConsumed(GrantError):
    """Raised on every redemption after the first.

    Carries the grant id so the caller can revoke tokens already issued from it.
    """

    def __init__(self, grant_id: str, client_id: str = ""):
        super().__init__(f"grant {grant_id} already consumed")
        self.grant_id = grant_id
        self.client_id = client_id


# =========================================================================
# Interactions
# =========================================================================


class InteractionError(OIDCError):
    pass


class InteractionNotFound(InteractionError):
    pass


class InteractionExpired(InteractionError):
    pass


class InvalidInteractionState(InteractionError):
    pass
