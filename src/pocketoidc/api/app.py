"""FastAPI application for the OpenID Provider.

``create_app`` wires the OIDC router onto a provider built from settings;
``run_server`` starts it under uvicorn for ``pocketoidc serve``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pocketoidc import __version__
from pocketoidc.api.routes import oauth_error_response, router
from pocketoidc.oidc.errors import OAuthError, TransientInfraError
from pocketoidc.oidc.provider import Provider, get_provider
from pocketoidc.security.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def create_app(provider: Provider | None = None) -> FastAPI:
    """Build the FastAPI application.

    Raises FatalConfigError (from the provider build) when the signing key or
    client configuration is unusable, so the process never starts half-configured.
    """
    provider = provider or get_provider()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await provider.start()
        try:
            yield
        finally:
            await provider.stop()

    app = FastAPI(
        title="PocketOIDC",
        description="Self-hosted OpenID Connect Provider.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.provider = provider

    # --- Rate limits ----------------------------------------------------
    settings = provider.settings
    app.state.login_limiter = RateLimiter(
        rate=settings.login_rate_limit, capacity=settings.login_rate_burst
    )
    app.state.token_limiter = RateLimiter(
        rate=settings.token_rate_limit, capacity=settings.token_rate_burst
    )

    # --- CORS -----------------------------------------------------------
    # Token, userinfo and discovery are called cross-origin by browser clients
    origins = settings.cors_allowed_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
        )

    @app.exception_handler(OAuthError)
    async def _oauth_error(request: Request, exc: OAuthError):
        return oauth_error_response(exc)

    @app.exception_handler(TransientInfraError)
    async def _transient_error(request: Request, exc: TransientInfraError):
        logger.error("Transient infrastructure failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"error": "temporarily_unavailable", "error_description": str(exc)},
            headers={"Retry-After": "1", "Cache-Control": "no-store"},
        )

    app.include_router(router)
    return app


def run_server(host: str = "127.0.0.1", port: int = 3000, dev: bool = False) -> None:
    """Start the provider under uvicorn."""
    import uvicorn

    issuer = get_provider().settings.issuer
    print("\n" + "=" * 50)
    print("POCKETOIDC PROVIDER")
    print("=" * 50)
    print(f"\nIssuer:    {issuer}")
    print(f"Discovery: {issuer}/.well-known/openid-configuration")
    print(f"Listening: http://{host}:{port}\n")

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "pocketoidc.api.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        uvicorn.run(create_app(), host=host, port=port)
