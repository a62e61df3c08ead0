# Tests for oidc/authorize.py
# Created: 2026-10-14

import secrets
from urllib.parse import parse_qs, urlsplit

import pytest

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.authorize import InteractionRequired, Redirect
from pocketoidc.oidc.errors import InvalidClient, InvalidRequest
from pocketoidc.oidc.interactions import ConsentDecision, LoginSubmission
from pocketoidc.oidc.pkce import s256_challenge

ALICE = "alice@example.com"


def _make_pkce_pair():
    verifier = secrets.token_urlsafe(32)
    return verifier, s256_challenge(verifier)


def _query(redirect: Redirect) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(redirect.location).query).items()}


# ===================== Validation =====================


class TestValidationOrder:
    @pytest.mark.asyncio
    async def test_unknown_client_is_not_redirected(self, provider, auth_request):
        with pytest.raises(InvalidClient) as exc_info:
            await provider.authorization.authorize(auth_request(client_id="ghost"))
        assert not exc_info.value.redirectable

    @pytest.mark.asyncio
    async def test_unregistered_redirect_uri_wins_over_later_errors(
        self, provider, auth_request
    ):
        request = auth_request(redirect_uri="https://evil.test/cb", scope="admin")
        with pytest.raises(InvalidRequest) as exc_info:
            await provider.authorization.authorize(request)
        assert not exc_info.value.redirectable

    @pytest.mark.asyncio
    async def test_missing_response_type(self, provider, auth_request):
        outcome = await provider.authorization.authorize(
            auth_request(response_type="", scope="admin", state="xyz")
        )
        assert isinstance(outcome, Redirect)
        assert outcome.redirect_uri == "https://a.test/cb"
        assert _query(outcome)["error"] == "invalid_request"
        assert _query(outcome)["state"] == "xyz"

    @pytest.mark.asyncio
    async def test_unsupported_response_type(self, provider, auth_request):
        outcome = await provider.authorization.authorize(auth_request(response_type="token"))
        assert _query(outcome)["error"] == "unsupported_response_type"

    @pytest.mark.asyncio
    async def test_scope_not_allowed_for_client(self, provider, auth_request):
        outcome = await provider.authorization.authorize(auth_request(scope="openid profile"))
        assert _query(outcome)["error"] == "invalid_scope"

    @pytest.mark.asyncio
    async def test_empty_scope(self, provider, auth_request):
        outcome = await provider.authorization.authorize(auth_request(scope=""))
        assert _query(outcome)["error"] == "invalid_scope"

    @pytest.mark.asyncio
    async def test_public_client_requires_pkce(self, provider, auth_request):
        outcome = await provider.authorization.authorize(
            auth_request(client_id="spa", redirect_uri="https://spa.test/cb")
        )
        assert _query(outcome)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_plain_pkce_rejected(self, provider, auth_request):
        verifier, _ = _make_pkce_pair()
        outcome = await provider.authorization.authorize(
            auth_request(code_challenge=verifier, code_challenge_method="plain")
        )
        assert _query(outcome)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_global_pkce_requirement(self, make_provider, auth_request):
        provider = make_provider(require_pkce=True)
        outcome = await provider.authorization.authorize(auth_request())
        assert _query(outcome)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_valid_request_starts_interaction(self, provider, auth_request):
        seen = []
        provider.events.subscribe(ev.AUTHORIZATION_VALIDATED, lambda n, p: seen.append(p))
        outcome = await provider.authorization.authorize(auth_request())
        assert isinstance(outcome, InteractionRequired)
        assert outcome.interaction.prompt == "login"
        assert seen == [{"client_id": "c1", "scope": "openid email"}]

    def test_malformed_max_age(self, auth_request):
        with pytest.raises(InvalidRequest):
            auth_request(max_age="soon")
        with pytest.raises(InvalidRequest):
            auth_request(max_age="-1")

    def test_prompt_none_is_exclusive(self, auth_request):
        with pytest.raises(InvalidRequest):
            auth_request(prompt="none login")


# ===================== Code issuance =====================


class TestCodeIssuance:
    @pytest.mark.asyncio
    async def test_code_is_bound_to_request(self, provider, auth_request, login_and_consent):
        verifier, challenge = _make_pkce_pair()
        request = auth_request(
            state="xyz", nonce="n-1", code_challenge=challenge, code_challenge_method="S256"
        )
        redirect, session = await login_and_consent(request)

        params = _query(redirect)
        assert redirect.location.startswith("https://a.test/cb?")
        assert params["state"] == "xyz"
        assert session.account_id == ALICE

        code = await provider.grants.consume_once(params["code"])
        assert code.redirect_uri == request.redirect_uri
        assert code.code_challenge == challenge
        assert code.code_challenge_method == "S256"
        assert code.nonce == "n-1"
        assert code.scope == ("openid", "email")
        assert code.account_id == ALICE
        assert code.expires_at - code.issued_at == provider.settings.authorization_code_ttl

    @pytest.mark.asyncio
    async def test_codes_are_unique(self, auth_request, login_and_consent):
        first, _ = await login_and_consent(auth_request())
        second, _ = await login_and_consent(auth_request())
        assert _query(first)["code"] != _query(second)["code"]

    @pytest.mark.asyncio
    async def test_redirect_uri_with_query(self, make_provider, auth_request, settings):
        clients = [dict(settings.clients[0], redirect_uris=["https://a.test/cb?tenant=1"])]
        provider = make_provider(clients=clients)
        outcome = await provider.authorization.authorize(
            auth_request(redirect_uri="https://a.test/cb?tenant=1", response_type="id_token")
        )
        assert outcome.location.startswith("https://a.test/cb?tenant=1&error=")

    @pytest.mark.asyncio
    async def test_denied_consent_redirects_with_error(self, provider, auth_request):
        outcome = await provider.authorization.authorize(auth_request(state="s-1"))
        await provider.interactions.submit(outcome.uid, LoginSubmission(ALICE, "wonderland"))
        await provider.interactions.submit(outcome.uid, ConsentDecision(granted=False))
        redirect, session = await provider.authorization.complete(outcome.uid)

        assert session is None
        assert _query(redirect)["error"] == "access_denied"
        assert _query(redirect)["error_description"] == "end-user denied the request"
        assert _query(redirect)["state"] == "s-1"
        assert "code" not in _query(redirect)


# ===================== Sessions and prompt =====================


class TestSessions:
    @pytest.mark.asyncio
    async def test_session_with_consent_skips_interaction(
        self, provider, auth_request, login_and_consent
    ):
        _, session = await login_and_consent(auth_request())
        outcome = await provider.authorization.authorize(
            auth_request(state="again"), session_id=session.sid
        )
        assert isinstance(outcome, Redirect)
        assert "code" in _query(outcome)
        assert _query(outcome)["state"] == "again"

    @pytest.mark.asyncio
    async def test_prompt_consent_asks_again(self, provider, auth_request, login_and_consent):
        _, session = await login_and_consent(auth_request())
        outcome = await provider.authorization.authorize(
            auth_request(prompt="consent"), session_id=session.sid
        )
        assert isinstance(outcome, InteractionRequired)
        assert outcome.interaction.prompt == "consent"

    @pytest.mark.asyncio
    async def test_prompt_login_forces_login(self, provider, auth_request, login_and_consent):
        _, session = await login_and_consent(auth_request())
        outcome = await provider.authorization.authorize(
            auth_request(prompt="login"), session_id=session.sid
        )
        assert outcome.interaction.prompt == "login"

    @pytest.mark.asyncio
    async def test_max_age_exceeded(self, provider, auth_request, login_and_consent, clock):
        _, session = await login_and_consent(auth_request())
        clock.advance(30)
        outcome = await provider.authorization.authorize(
            auth_request(max_age="10"), session_id=session.sid
        )
        assert outcome.interaction.prompt == "login"

    @pytest.mark.asyncio
    async def test_prompt_none_without_session(self, provider, auth_request):
        outcome = await provider.authorization.authorize(auth_request(prompt="none"))
        assert _query(outcome)["error"] == "login_required"

    @pytest.mark.asyncio
    async def test_prompt_none_without_consent(self, provider, auth_request, login_and_consent):
        _, session = await login_and_consent(auth_request(), scope=("openid",))
        outcome = await provider.authorization.authorize(
            auth_request(prompt="none"), session_id=session.sid
        )
        assert _query(outcome)["error"] == "consent_required"

    @pytest.mark.asyncio
    async def test_new_consent_extends_session(
        self, provider, auth_request, login_and_consent
    ):
        _, session = await login_and_consent(auth_request(), scope=("openid",))
        _, same = await login_and_consent(auth_request(), session_id=session.sid)
        assert same.sid == session.sid
        assert same.has_consent("c1", ("openid", "email"))
