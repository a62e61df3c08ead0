# Provider configuration.
# Created: 2026-10-12
#
# One immutable Settings value is built at startup and handed to every
# component. Sources, highest precedence first: constructor kwargs,
# POCKETOIDC_* environment variables, <config dir>/config.json.

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"

DEFAULT_SCOPE_CLAIMS: dict[str, list[str]] = {
    "openid": ["sub"],
    "email": ["email", "email_verified"],
    "profile": ["name", "preferred_username", "updated_at"],
}


def get_config_dir() -> Path:
    """Directory holding config.json, keys/ and the audit log."""
    override = os.environ.get("POCKETOIDC_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".pocketoidc"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="POCKETOIDC_",
        extra="ignore",
        frozen=True,
    )

    # Server
    issuer: str = "http://localhost:3000"
    web_host: str = "127.0.0.1"
    web_port: int = 3000
    cors_allowed_origins: list[str] = Field(default_factory=list)
    log_level: str = "INFO"

    # Signing keys
    private_key: str | None = Field(default=None, repr=False)
    private_key_path: Path | None = None
    signing_key_id: str | None = None
    signing_alg: str | None = None

    # Clients, scopes and claims
    clients: list[dict[str, Any]] = Field(default_factory=list, repr=False)
    scopes: list[str] = Field(
        default_factory=lambda: ["openid", "email", "profile", "offline_access"]
    )
    claims: dict[str, list[str]] = Field(default_factory=lambda: dict(DEFAULT_SCOPE_CLAIMS))

    # Lifetimes (seconds)
    authorization_code_ttl: int = Field(default=600, gt=0)
    interaction_ttl: int = Field(default=600, gt=0)
    access_token_ttl: int = Field(default=3600, gt=0)
    id_token_ttl: int = Field(default=3600, gt=0)
    refresh_token_ttl: int = Field(default=14 * 24 * 3600, gt=0)
    session_ttl: int = Field(default=24 * 3600, gt=0)
    sweep_interval: float = Field(default=60.0, gt=0)

    # Storage
    store_max_entries: int | None = Field(default=None, ge=1)

    # Rate limits: token bucket per client IP (requests/second, burst)
    login_rate_limit: float = Field(default=1.0, gt=0)
    login_rate_burst: int = Field(default=5, ge=1)
    token_rate_limit: float = Field(default=10.0, gt=0)
    token_rate_burst: int = Field(default=30, ge=1)

    # Policy
    require_pkce: bool = False
    max_login_attempts: int = Field(default=5, ge=1)
    issue_refresh_tokens: bool = False
    rotate_refresh_tokens: bool = False

    # Sessions and interactions
    cookie_secret: str | None = Field(default=None, repr=False)
    cookie_secure: bool = True
    dev_interactions: bool = False
    dev_accounts: dict[str, dict[str, Any]] = Field(default_factory=dict, repr=False)

    # Audit
    audit_log_path: Path | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        json_settings = JsonConfigSettingsSource(
            settings_cls, json_file=get_config_dir() / CONFIG_FILE_NAME
        )
        return init_settings, env_settings, json_settings, file_secret_settings

    @field_validator("issuer")
    @classmethod
    def _check_issuer(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("issuer must be an absolute http(s) URL")
        if parts.query or parts.fragment:
            raise ValueError("issuer must not contain a query or fragment")
        return value.rstrip("/")

    @field_validator("scopes")
    @classmethod
    def _require_openid(cls, value: list[str]) -> list[str]:
        if "openid" not in value:
            raise ValueError("scopes must include openid")
        return value

    @classmethod
    def load(cls) -> Settings:
        settings = cls()
        path = get_config_dir() / CONFIG_FILE_NAME
        if path.exists():
            logger.debug("Loaded configuration from %s", path)
        return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.load()
