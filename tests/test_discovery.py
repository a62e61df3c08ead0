# Tests for oidc/discovery.py
# Created: 2026-10-14


class TestMetadata:
    def test_endpoints_hang_off_issuer(self, provider):
        meta = provider.discovery.metadata()
        assert meta["issuer"] == "https://op.test"
        assert meta["authorization_endpoint"] == "https://op.test/authorize"
        assert meta["token_endpoint"] == "https://op.test/token"
        assert meta["userinfo_endpoint"] == "https://op.test/userinfo"
        assert meta["jwks_uri"] == "https://op.test/jwks"
        assert meta["end_session_endpoint"] == "https://op.test/session/end"

    def test_capabilities(self, provider):
        meta = provider.discovery.metadata()
        assert meta["response_types_supported"] == ["code"]
        assert meta["code_challenge_methods_supported"] == ["S256"]
        assert meta["id_token_signing_alg_values_supported"] == ["RS256"]
        assert meta["subject_types_supported"] == ["public"]
        assert set(meta["grant_types_supported"]) == {"authorization_code", "refresh_token"}
        assert "openid" in meta["scopes_supported"]
        assert {"sub", "email", "name"} <= set(meta["claims_supported"])

    def test_returns_copies(self, provider):
        provider.discovery.metadata()["scopes_supported"].append("admin")
        provider.discovery.jwks()["keys"].clear()
        assert "admin" not in provider.discovery.metadata()["scopes_supported"]
        assert len(provider.discovery.jwks()["keys"]) == 1


class TestJWKS:
    def test_public_only(self, provider):
        (jwk,) = provider.discovery.jwks()["keys"]
        assert jwk["kty"] == "RSA"
        assert jwk["kid"] == provider.keys.signing_key.kid
        assert not {"d", "p", "q", "dp", "dq", "qi"} & set(jwk)
