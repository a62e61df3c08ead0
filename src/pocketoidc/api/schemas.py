# OIDC wire schemas.
# Created: 2026-10-12

from __future__ import annotations

from pydantic import BaseModel


class TokenResponse(BaseModel):
    """Successful token endpoint response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    id_token: str | None = None
    refresh_token: str | None = None


class OAuthErrorResponse(BaseModel):
    """OAuth2 error body."""

    error: str
    error_description: str | None = None


class JWKSResponse(BaseModel):
    keys: list[dict]
