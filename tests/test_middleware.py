"""Tests for the CORS negotiator and access guard."""

import pytest
from fastapi.testclient import TestClient

from failover_gateway.main import create_app
from failover_gateway.middleware import AccessGuardMiddleware, cors_headers, origin_allowed

from conftest import MockUpstream, make_config, upstream_response

APP_ORIGIN = "https://app.example"


class TestOriginAllowed:
    """Tests for the origin policy check."""

    def test_empty_policy_allows_all(self):
        assert origin_allowed((), "https://anything.example")
        assert origin_allowed((), None)

    def test_listed_origin(self):
        assert origin_allowed((APP_ORIGIN,), APP_ORIGIN)

    def test_unlisted_origin(self):
        assert not origin_allowed((APP_ORIGIN,), "https://evil.example")

    def test_missing_origin_allowed(self):
        """Same-origin and non-browser callers send no Origin header."""
        assert origin_allowed((APP_ORIGIN,), None)
        assert origin_allowed((APP_ORIGIN,), "")


class TestCorsHeaders:
    """Tests for CORS header construction."""

    def test_with_origin(self):
        headers = cors_headers(APP_ORIGIN, "x-proxy-token")
        assert headers["Access-Control-Allow-Origin"] == APP_ORIGIN
        assert headers["Vary"] == "Origin"
        assert headers["Access-Control-Allow-Headers"] == "Content-Type, x-proxy-token"
        assert headers["Access-Control-Allow-Methods"] == "GET,POST,OPTIONS"

    def test_without_origin(self):
        headers = cors_headers(None, "x-proxy-token")
        assert "Access-Control-Allow-Origin" not in headers
        assert "Vary" not in headers
        assert "Access-Control-Allow-Methods" in headers


class TestAccessGuard:
    """Tests for shared-secret comparison."""

    def test_no_secret_allows_all(self):
        guard = AccessGuardMiddleware(app=None)
        assert guard.is_authorized(None)
        assert guard.is_authorized("anything")

    def test_exact_match(self):
        guard = AccessGuardMiddleware(app=None, shared_secret="s3cret")
        assert guard.is_authorized("s3cret")
        assert not guard.is_authorized("s3cret ")
        assert not guard.is_authorized("S3CRET")
        assert not guard.is_authorized("")
        assert not guard.is_authorized(None)


class TestPolicyEnforcement:
    """Policy errors are answered before any upstream contact."""

    @pytest.fixture
    def upstream(self):
        return MockUpstream({
            "K1": upstream_response(200, b'{"ok":true}'),
            "K2": upstream_response(200),
        })

    @pytest.fixture
    def client(self, upstream):
        config = make_config(
            ("K1", "K2"),
            shared_secret="s3cret",
            allowed_origins=(APP_ORIGIN,),
        )
        with TestClient(create_app(config, transport=upstream.transport)) as client:
            yield client

    def test_disallowed_origin(self, client, upstream):
        response = client.post(
            "/v1beta/models/m:generateContent",
            json={},
            headers={"Origin": "https://evil.example", "x-proxy-token": "s3cret"},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Origin not allowed"}
        assert "access-control-allow-origin" not in response.headers
        assert upstream.requests == []

    def test_disallowed_origin_preflight(self, client, upstream):
        response = client.options("/v1beta/models", headers={"Origin": "https://evil.example"})
        assert response.status_code == 403

    def test_missing_token(self, client, upstream):
        response = client.get("/v1beta/models", headers={"Origin": APP_ORIGIN})
        assert response.status_code == 401
        assert response.json() == {"error": "Missing or invalid x-proxy-token"}
        assert upstream.requests == []

    def test_wrong_token(self, client, upstream):
        response = client.get("/v1beta/models", headers={"x-proxy-token": "guess"})
        assert response.status_code == 401
        assert upstream.requests == []

    def test_auth_rejection_carries_cors_headers(self, client):
        """The browser must be able to read the 401 body."""
        response = client.get("/v1beta/models", headers={"Origin": APP_ORIGIN})
        assert response.headers["access-control-allow-origin"] == APP_ORIGIN

    def test_valid_token_and_origin(self, client, upstream):
        response = client.get("/v1beta/models", headers={"Origin": APP_ORIGIN, "x-proxy-token": "s3cret"})
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == APP_ORIGIN
        assert response.headers["vary"] == "Origin"
        assert upstream.keys_tried == ["K1"]

    def test_no_origin_header_allowed(self, client, upstream):
        response = client.get("/v1beta/models", headers={"x-proxy-token": "s3cret"})
        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers

    def test_preflight_skips_guard(self, client, upstream):
        """Preflight gets 204 without the shared secret."""
        response = client.options(
            "/v1beta/models/m:generateContent",
            headers={"Origin": APP_ORIGIN, "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == APP_ORIGIN
        assert response.headers["access-control-allow-methods"] == "GET,POST,OPTIONS"
        assert response.headers["access-control-allow-headers"] == "Content-Type, x-proxy-token"
        assert upstream.requests == []

    def test_health_requires_token(self, client, upstream):
        """The shared secret guards every non-preflight request, health included."""
        response = client.get("/healthz")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing or invalid x-proxy-token"}

    def test_health_with_token(self, client, upstream):
        response = client.get("/healthz", headers={"x-proxy-token": "s3cret"})
        assert response.status_code == 200
        assert response.text == "ok"
        assert upstream.requests == []


class TestPublicHealth:
    """Opting in to an unauthenticated health endpoint."""

    def test_public_health_skips_guard(self):
        upstream = MockUpstream({"K1": upstream_response(200)})
        config = make_config(("K1",), shared_secret="s3cret", public_health=True)
        with TestClient(create_app(config, transport=upstream.transport)) as client:
            health = client.get("/healthz")
            proxied = client.get("/v1beta/models")

        assert health.status_code == 200
        assert health.text == "ok"
        assert proxied.status_code == 401
        assert upstream.requests == []


class TestOpenDeployment:
    """Without a secret or allow-list every caller is admitted."""

    def test_no_secret_no_policy(self):
        upstream = MockUpstream({"K1": upstream_response(200, b"{}")})
        with TestClient(create_app(make_config(("K1",)), transport=upstream.transport)) as client:
            response = client.get("/v1beta/models", headers={"Origin": "https://anywhere.example"})

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://anywhere.example"
