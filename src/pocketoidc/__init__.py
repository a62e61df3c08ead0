"""PocketOIDC - a small self-hosted OpenID Connect Provider."""

__version__ = "0.1.0"
