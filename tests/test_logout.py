# Tests for oidc/logout.py
# Created: 2026-10-19

from urllib.parse import parse_qs, urlsplit

import pytest

from pocketoidc.oidc import events as ev
from pocketoidc.oidc.errors import InvalidClient, InvalidRequest
from pocketoidc.oidc.keys import KeyManager, generate_key_pair
from pocketoidc.oidc.logout import LogoutRequest
from pocketoidc.oidc.models import ClientAuth
from pocketoidc.oidc.token import ACCESS_TOKEN_TYPE

C1 = ClientAuth("c1", "s3cret", "client_secret_basic")
SIGNED_OUT = "https://a.test/signed-out"


def _hint(provider, clock, aud="c1", ttl=3600, **claims):
    now = int(clock())
    payload = {"iss": "https://op.test", "sub": "alice@example.com", "aud": aud}
    payload.update(iat=now, exp=now + ttl)
    payload.update(claims)
    return provider.keys.sign(payload)


@pytest.fixture
def session_id(provider, clock):
    async def _start():
        session = await provider.sessions.record_login(
            "alice@example.com", clock(), client_id="c1", scope=("openid",)
        )
        return session.sid

    return _start


@pytest.fixture
def issue_id_token(provider, auth_request, login_and_consent):
    async def _issue():
        redirect, session = await login_and_consent(auth_request())
        code = parse_qs(urlsplit(redirect.location).query)["code"][0]
        tokens = await provider.token.exchange(
            "authorization_code", {"code": code, "redirect_uri": "https://a.test/cb"}, C1
        )
        return tokens, session

    return _issue


class TestEndSession:
    @pytest.mark.asyncio
    async def test_redirects_to_registered_uri_with_state(self, provider, issue_id_token):
        tokens, session = await issue_id_token()
        request = LogoutRequest(
            id_token_hint=tokens.id_token, post_logout_redirect_uri=SIGNED_OUT, state="xyz"
        )

        result = await provider.logout.end_session(request, session.sid)

        assert result.session_ended
        assert result.redirect.location == SIGNED_OUT + "?state=xyz"
        assert await provider.sessions.get(session.sid) is None

    @pytest.mark.asyncio
    async def test_expired_hint_is_accepted(self, provider, clock, session_id):
        sid = await session_id()
        hint = _hint(provider, clock, iat=int(clock()) - 7200, exp=int(clock()) - 3600)
        request = LogoutRequest(id_token_hint=hint, post_logout_redirect_uri=SIGNED_OUT)

        result = await provider.logout.end_session(request, sid)

        assert result.redirect.location == SIGNED_OUT
        assert result.session_ended

    @pytest.mark.asyncio
    async def test_client_id_alone_allows_redirect(self, provider, session_id):
        sid = await session_id()
        request = LogoutRequest(client_id="c1", post_logout_redirect_uri=SIGNED_OUT)
        result = await provider.logout.end_session(request, sid)
        assert result.redirect.location == SIGNED_OUT

    @pytest.mark.asyncio
    async def test_without_parameters_only_ends_session(self, provider, session_id):
        sid = await session_id()
        result = await provider.logout.end_session(LogoutRequest(), sid)
        assert result.redirect is None
        assert result.session_ended

    @pytest.mark.asyncio
    async def test_no_session(self, provider):
        result = await provider.logout.end_session(LogoutRequest())
        assert not result.session_ended

    @pytest.mark.asyncio
    async def test_emits_event(self, provider, session_id):
        seen = []
        provider.events.subscribe(ev.SESSION_ENDED, lambda name, payload: seen.append(payload))
        sid = await session_id()
        await provider.logout.end_session(LogoutRequest(client_id="c1"), sid)
        assert seen == [{"client_id": "c1", "session_ended": True}]


class TestRejectedLogout:
    @pytest.mark.asyncio
    async def test_unregistered_post_logout_uri(self, provider, clock, session_id):
        sid = await session_id()
        request = LogoutRequest(
            id_token_hint=_hint(provider, clock),
            post_logout_redirect_uri="https://evil.test/",
        )

        with pytest.raises(InvalidRequest, match="not registered") as exc_info:
            await provider.logout.end_session(request, sid)

        assert not exc_info.value.redirectable
        assert await provider.sessions.get(sid) is not None

    @pytest.mark.asyncio
    async def test_redirect_uri_of_another_kind_is_not_enough(self, provider, session_id):
        sid = await session_id()
        request = LogoutRequest(client_id="c1", post_logout_redirect_uri="https://a.test/cb")
        with pytest.raises(InvalidRequest):
            await provider.logout.end_session(request, sid)

    @pytest.mark.asyncio
    async def test_post_logout_uri_needs_a_client(self, provider, session_id):
        sid = await session_id()
        request = LogoutRequest(post_logout_redirect_uri=SIGNED_OUT)
        with pytest.raises(InvalidRequest):
            await provider.logout.end_session(request, sid)
        assert await provider.sessions.get(sid) is not None

    @pytest.mark.asyncio
    async def test_tampered_hint(self, provider, clock, session_id):
        sid = await session_id()
        header, _, signature = _hint(provider, clock, aud="c1").split(".")
        _, payload, _ = _hint(provider, clock, aud="c2").split(".")
        request = LogoutRequest(
            id_token_hint=f"{header}.{payload}.{signature}", post_logout_redirect_uri=SIGNED_OUT
        )

        with pytest.raises(InvalidRequest, match="id_token_hint"):
            await provider.logout.end_session(request, sid)
        assert await provider.sessions.get(sid) is not None

    @pytest.mark.asyncio
    async def test_hint_from_foreign_key(self, provider, clock):
        foreign = KeyManager.from_pem(generate_key_pair()[0])
        now = int(clock())
        hint = foreign.sign(
            {"iss": "https://op.test", "sub": "alice", "aud": "c1", "iat": now, "exp": now + 60}
        )
        with pytest.raises(InvalidRequest):
            await provider.logout.end_session(LogoutRequest(id_token_hint=hint))

    @pytest.mark.asyncio
    async def test_hint_from_another_issuer(self, provider, clock):
        hint = _hint(provider, clock, iss="https://other.test")
        with pytest.raises(InvalidRequest):
            await provider.logout.end_session(LogoutRequest(id_token_hint=hint))

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_hint(self, provider, clock):
        now = int(clock())
        access_token = provider.keys.sign(
            {"iss": "https://op.test", "sub": "alice", "aud": "c1", "iat": now, "exp": now + 60},
            {"typ": ACCESS_TOKEN_TYPE},
        )
        with pytest.raises(InvalidRequest, match="not an ID token"):
            await provider.logout.end_session(LogoutRequest(id_token_hint=access_token))

    @pytest.mark.asyncio
    async def test_client_id_must_match_hint(self, provider, clock):
        request = LogoutRequest(id_token_hint=_hint(provider, clock), client_id="c2")
        with pytest.raises(InvalidRequest, match="does not match"):
            await provider.logout.end_session(request)

    @pytest.mark.asyncio
    async def test_unknown_client(self, provider):
        with pytest.raises(InvalidClient):
            await provider.logout.end_session(LogoutRequest(client_id="nobody"))


class TestLogoutRequest:
    def test_from_params_drops_empty_values(self):
        request = LogoutRequest.from_params({"client_id": "c1", "state": ""})
        assert request == LogoutRequest(client_id="c1")
