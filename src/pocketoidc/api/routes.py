# OIDC router: authorize, interaction, token, userinfo, logout, discovery.
# Created: 2026-10-12
#
# Thin HTTP layer over pocketoidc.oidc: parses requests, maps OAuthError to
# JSON or redirects, rate-limits the credential-bearing endpoints and keeps
# the session id and pending interaction in signed cookies.

from __future__ import annotations

import logging
from collections.abc import Iterable
from html import escape
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.datastructures import QueryParams

from pocketoidc.api.schemas import JWKSResponse, OAuthErrorResponse, TokenResponse
from pocketoidc.oidc.authorize import Redirect
from pocketoidc.oidc.clients import parse_basic_auth
from pocketoidc.oidc.errors import (
    InsufficientScope,
    InteractionError,
    InteractionExpired,
    InvalidClient,
    InvalidRequest,
    InvalidToken,
    OAuthError,
)
from pocketoidc.oidc.interactions import ConsentDecision, LoginSubmission
from pocketoidc.oidc.logout import LogoutRequest
from pocketoidc.oidc.models import AuthorizationRequest, ClientAuth, InteractionStatus
from pocketoidc.oidc.provider import Provider
from pocketoidc.security.rate_limiter import RateLimiter
from pocketoidc.security.session_tokens import sign_session_id, unsign_session_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OpenID Connect"])

SESSION_COOKIE = "_pocketoidc_session"
INTERACTION_COOKIE = "_pocketoidc_interaction"
_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
_ERROR_RESPONSES = {
    400: {"model": OAuthErrorResponse},
    401: {"model": OAuthErrorResponse},
    429: {"model": OAuthErrorResponse},
}

_PAGE_HTML = """<!DOCTYPE html>
<html><head><title>{title}</title>
<style>
body {{ font-family: system-ui; max-width: 480px; margin: 40px auto; padding: 20px; }}
.btn {{ padding: 10px 24px; border: none; border-radius: 6px; cursor: pointer; font-size: 16px; }}
.allow {{ background: #2563eb; color: white; }} .allow:hover {{ background: #1d4ed8; }}
.deny {{ background: #e5e7eb; color: #374151; margin-left: 12px; }}
input {{ display: block; width: 100%; padding: 8px; margin: 8px 0 16px; box-sizing: border-box; }}
.error {{ color: #b91c1c; }}
.scopes {{ background: #f3f4f6; padding: 12px; border-radius: 8px; margin: 16px 0; }}
.scope {{ display: inline-block; background: #dbeafe; padding: 4px 8px;
  border-radius: 4px; margin: 2px; font-size: 14px; }}
</style></head><body>
<h2>{title}</h2>
{body}
</body></html>"""

_LOGIN_FORM = """<p>Sign in to continue to <strong>{client_name}</strong>.</p>
{error}
<form method="POST" action="/interaction/{uid}" autocomplete="off">
<label>Email or username<input name="login" required autofocus></label>
<label>Password<input name="password" type="password"></label>
<button type="submit" name="action" value="login" class="btn allow">Sign in</button>
</form>"""

_CONSENT_FORM = """<p><strong>{client_name}</strong> wants to access your account.</p>
<div class="scopes"><strong>Requested permissions:</strong><br>{scope_badges}</div>
<form method="POST" action="/interaction/{uid}">
<button type="submit" name="action" value="allow" class="btn allow">Allow</button>
<button type="submit" name="action" value="deny" class="btn deny">Deny</button>
</form>"""


def _provider(request: Request) -> Provider:
    return request.app.state.provider


def _session_id(request: Request, provider: Provider) -> str | None:
    return unsign_session_id(request.cookies.get(SESSION_COOKIE), provider.cookie_secret)


def _interaction_path(uid: str) -> str:
    return f"/interaction/{uid}"


def _started_here(request: Request, provider: Provider, uid: str) -> bool:
    """True if this user agent is the one /authorize sent to the interaction."""
    cookie = request.cookies.get(INTERACTION_COOKIE)
    return unsign_session_id(cookie, provider.cookie_secret) == uid


def _set_cookie(
    response: Response, provider: Provider, name: str, value: str, max_age: int, path: str = "/"
) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path=path,
        httponly=True,
        secure=provider.settings.cookie_secure,
        samesite="lax",
    )


def _clear_cookie(response: Response, provider: Provider, name: str, path: str = "/") -> None:
    response.delete_cookie(
        name, path=path, httponly=True, secure=provider.settings.cookie_secure, samesite="lax"
    )


def _throttled(request: Request, limiter: RateLimiter) -> JSONResponse | None:
    """Consume a token for the caller's IP; a 429 response when none is left."""
    client_ip = request.client.host if request.client else "unknown"
    info = limiter.check(client_ip)
    if info.allowed:
        return None
    logger.warning("Rate limit exceeded for %s on %s", client_ip, request.url.path)
    return JSONResponse(
        status_code=429,
        content={"error": "temporarily_unavailable", "error_description": "too many requests"},
        headers={**_NO_STORE, **info.headers()},
    )


def _single_valued(items: Iterable[tuple[str, Any]]) -> dict[str, str]:
    """Collapse request parameters; RFC 6749 3.1 forbids repeating any of them."""
    params: dict[str, str] = {}
    for name, value in items:
        if name in params:
            raise InvalidRequest(f"parameter {name} is repeated")
        params[name] = str(value)
    return params


def _redirect_target(provider: Provider, params: QueryParams) -> AuthorizationRequest | None:
    """The request's own redirect target, if it is unambiguous and registered."""
    client_ids = params.getlist("client_id")
    redirect_uris = params.getlist("redirect_uri")
    if len(client_ids) != 1 or len(redirect_uris) != 1:
        return None
    client = provider.clients.lookup(client_ids[0])
    if client is None or not provider.clients.validate_redirect_uri(client, redirect_uris[0]):
        return None
    states = params.getlist("state")
    return AuthorizationRequest(
        client_id=client_ids[0],
        redirect_uri=redirect_uris[0],
        state=states[0] if len(states) == 1 and states[0] else None,
    )


def oauth_error_response(
    exc: OAuthError, *, basic_auth: bool = False, status_code: int | None = None
) -> JSONResponse:
    headers = dict(_NO_STORE)
    if isinstance(exc, InvalidClient) and basic_auth:
        headers["WWW-Authenticate"] = 'Basic realm="token"'
    elif isinstance(exc, (InvalidToken, InsufficientScope)):
        headers["WWW-Authenticate"] = f'Bearer error="{exc.error}"'
    return JSONResponse(
        status_code=status_code or exc.status_code, content=exc.to_dict(), headers=headers
    )


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(_PAGE_HTML.format(title=escape(title), body=body), status_code=status_code)


def _interaction_error_page(exc: InteractionError) -> HTMLResponse:
    if isinstance(exc, InteractionExpired):
        return _page("Session expired", "<p>This sign-in request has expired.</p>", 400)
    return _page("Invalid request", "<p>This sign-in request is no longer valid.</p>", 400)


def _foreign_interaction_page() -> HTMLResponse:
    return _page(
        "Invalid request",
        "<p>This sign-in request was started in another browser. "
        "Please return to the application and sign in again.</p>",
        400,
    )


# =========================================================================
# Authorization
# =========================================================================


@router.get("/authorize")
async def authorize(request: Request):
    """Validate the request and either redirect back or start an interaction."""
    provider = _provider(request)
    throttled = _throttled(request, request.app.state.login_limiter)
    if throttled is not None:
        return throttled

    params = request.query_params
    try:
        auth_request = AuthorizationRequest.from_params(_single_valued(params.multi_items()))
    except InvalidRequest as exc:
        fallback = _redirect_target(provider, params)
        if fallback is None:
            return oauth_error_response(InvalidRequest(exc.description, redirectable=False))
        redirect = provider.authorization.error_redirect(fallback, exc)
        return RedirectResponse(redirect.location, status_code=302)

    try:
        outcome = await provider.authorization.authorize(
            auth_request, session_id=_session_id(request, provider)
        )
    except OAuthError as exc:
        # Never redirected, and never an authentication challenge
        return oauth_error_response(exc, status_code=400)

    if isinstance(outcome, Redirect):
        return RedirectResponse(outcome.location, status_code=302)

    path = _interaction_path(outcome.uid)
    response = RedirectResponse(path, status_code=302)
    _set_cookie(
        response,
        provider,
        INTERACTION_COOKIE,
        sign_session_id(outcome.uid, provider.cookie_secret),
        max_age=provider.settings.interaction_ttl,
        path=path,
    )
    return response


@router.get("/interaction/{uid}")
async def interaction_page(request: Request, uid: str):
    """Render the login or consent prompt for an interaction."""
    provider = _provider(request)
    try:
        interaction = await provider.interactions.get(uid)
    except InteractionError as exc:
        return _interaction_error_page(exc)
    if not _started_here(request, provider, uid):
        return _foreign_interaction_page()

    client = provider.clients.lookup(interaction.request.client_id)
    name = client.client_name if client else interaction.request.client_id
    client_name = escape(name)

    if interaction.prompt == "login":
        error = ""
        if interaction.login_attempts:
            error = '<p class="error">Invalid email or password.</p>'
        body = _LOGIN_FORM.format(client_name=client_name, uid=escape(uid), error=error)
        return _page("Sign in", body)

    if interaction.prompt == "consent":
        scope_badges = " ".join(
            f'<span class="scope">{escape(s)}</span>' for s in interaction.request.scope
        )
        body = _CONSENT_FORM.format(
            client_name=client_name, uid=escape(uid), scope_badges=scope_badges
        )
        return _page(f"Authorize {name}", body)

    return _page("Please wait", "<p>This request has already been answered.</p>", 400)


@router.post("/interaction/{uid}")
async def interaction_submit(request: Request, uid: str):
    """Process a login or consent form submission."""
    provider = _provider(request)
    throttled = _throttled(request, request.app.state.login_limiter)
    if throttled is not None:
        return throttled

    form = await request.form()
    action = form.get("action", "")

    if action == "login":
        outcome: LoginSubmission | ConsentDecision = LoginSubmission(
            identifier=str(form.get("login", "")),
            secret=str(form.get("password", "")),
        )
    elif action == "allow":
        outcome = ConsentDecision(granted=True)
    elif action == "deny":
        outcome = ConsentDecision(granted=False)
    else:
        return _page("Invalid request", "<p>Unknown action.</p>", 400)

    path = _interaction_path(uid)
    try:
        await provider.interactions.get(uid)
        if not _started_here(request, provider, uid):
            logger.warning("Interaction %s submitted from a different user agent", uid)
            return _foreign_interaction_page()
        interaction = await provider.interactions.submit(uid, outcome)
        if interaction.status != InteractionStatus.COMPLETED:
            return RedirectResponse(path, status_code=303)
        redirect, session = await provider.authorization.complete(
            uid, session_id=_session_id(request, provider)
        )
    except InteractionError as exc:
        return _interaction_error_page(exc)

    response = RedirectResponse(redirect.location, status_code=303)
    _clear_cookie(response, provider, INTERACTION_COOKIE, path=path)
    if session is not None:
        _set_cookie(
            response,
            provider,
            SESSION_COOKIE,
            sign_session_id(session.sid, provider.cookie_secret),
            max_age=provider.settings.session_ttl,
        )
    return response


# =========================================================================
# Token and userinfo
# =========================================================================


@router.post(
    "/token",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
)
async def token(request: Request):
    """Exchange an authorization code or refresh token for tokens."""
    provider = _provider(request)
    throttled = _throttled(request, request.app.state.token_limiter)
    if throttled is not None:
        return throttled

    form = await request.form()
    try:
        params = _single_valued(form.multi_items())
    except InvalidRequest as exc:
        return oauth_error_response(exc)

    basic = parse_basic_auth(request.headers.get("authorization"))
    if basic is not None:
        client_id, secret = basic
        if params.get("client_secret"):
            return oauth_error_response(
                InvalidRequest("only one client authentication method may be used")
            )
        if params.get("client_id") and params["client_id"] != client_id:
            return oauth_error_response(InvalidRequest("client_id does not match credentials"))
        client_auth = ClientAuth(client_id, secret, "client_secret_basic")
    elif params.get("client_secret"):
        client_auth = ClientAuth(
            params.get("client_id", ""), params["client_secret"], "client_secret_post"
        )
    else:
        client_auth = ClientAuth(params.get("client_id", ""), None, "none")

    try:
        tokens = await provider.token.exchange(params.get("grant_type"), params, client_auth)
    except OAuthError as exc:
        return oauth_error_response(exc, basic_auth=basic is not None)

    body = TokenResponse(**tokens.to_dict()).model_dump(exclude_none=True)
    return JSONResponse(body, headers=_NO_STORE)


@router.api_route("/userinfo", methods=["GET", "POST"], responses=_ERROR_RESPONSES)
async def userinfo(request: Request):
    """Return the claims released to a bearer access token."""
    provider = _provider(request)
    access_token = None
    auth = request.headers.get("authorization", "")
    try:
        if auth.lower().startswith("bearer "):
            access_token = auth.split(" ", 1)[1].strip()
        elif request.method == "POST":
            form = await request.form()
            access_token = _single_valued(form.multi_items()).get("access_token") or None
        claims = await provider.userinfo.userinfo(access_token)
    except OAuthError as exc:
        return oauth_error_response(exc)
    return JSONResponse(claims, headers=_NO_STORE)


# =========================================================================
# Logout
# =========================================================================


@router.api_route("/session/end", methods=["GET", "POST"], responses=_ERROR_RESPONSES)
async def end_session(request: Request):
    """RP-initiated logout: end the session, then return to the relying party."""
    provider = _provider(request)
    if request.method == "POST":
        items = (await request.form()).multi_items()
    else:
        items = request.query_params.multi_items()

    try:
        logout = LogoutRequest.from_params(_single_valued(items))
        result = await provider.logout.end_session(
            logout, session_id=_session_id(request, provider)
        )
    except OAuthError as exc:
        # Never redirected to an unverified post_logout_redirect_uri
        return oauth_error_response(exc, status_code=400)

    if result.redirect is not None:
        response: Response = RedirectResponse(result.redirect.location, status_code=303)
    else:
        response = _page("Signed out", "<p>You have been signed out.</p>")
    _clear_cookie(response, provider, SESSION_COOKIE)
    return response


# =========================================================================
# Discovery
# =========================================================================


@router.get("/.well-known/openid-configuration")
async def openid_configuration(request: Request):
    return _provider(request).discovery.metadata()


@router.get("/jwks", response_model=JWKSResponse)
async def jwks(request: Request):
    return _provider(request).discovery.jwks()
