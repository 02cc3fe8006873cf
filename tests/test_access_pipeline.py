"""End-to-end tests for the request pipeline through the FastAPI app."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from tenantgate.app import app
from tenantgate.service.access import (
    get_client_ip,
    reject_cross_origin,
    resolve_api_policy,
)
from tenantgate.service.context import SESSION_COOKIE_NAME, RequestContext
from tenantgate.service.rate_limit import current_time_ms, window_start_for
from tenantgate.service.runtime import get_runtime
from tenantgate.storage.models import ClientDatabaseRoute

ORIGIN = "http://localhost"
PASSWORD = "CorrectHorse9!"


def _client(**headers) -> TestClient:
    default_headers = {"Origin": ORIGIN}
    default_headers.update(headers)
    return TestClient(app, base_url=ORIGIN, headers=default_headers)


def _seed_member(email="member@example.com", role="admin"):
    runtime = get_runtime()

    async def _seed():
        client = await runtime.auth.ensure_default_client()
        user = await runtime.store.create_user(
            email, runtime.passwords.hash(PASSWORD), client_id=client.id
        )
        await runtime.store.ensure_membership(user.id, client.id, role=role, is_default=True)
        return user

    return asyncio.run(_seed())


def _login(client: TestClient, email="member@example.com", password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _scope_request(method="POST", headers=None, client=("198.51.100.7", 5000)):
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": method,
        "path": "/api/auth/login",
        "raw_path": b"/api/auth/login",
        "query_string": b"",
        "headers": raw_headers,
        "scheme": "https",
        "server": ("app.example.com", 443),
        "client": client,
    }
    return Request(scope)


class TestRequestHelpers:
    def test_same_origin_mutation_is_allowed(self):
        request = _scope_request(headers={"Origin": "https://app.example.com"})
        assert reject_cross_origin(request) is False

    @pytest.mark.parametrize("origin", [None, "null", "https://evil.example.com", "http://app.example.com"])
    def test_foreign_or_missing_origin_is_rejected(self, origin):
        headers = {"Origin": origin} if origin else {}
        assert reject_cross_origin(_scope_request(headers=headers)) is True

    def test_safe_methods_skip_origin_check(self):
        assert reject_cross_origin(_scope_request(method="GET")) is False

    def test_forwarded_ip_only_from_trusted_proxy(self):
        headers = {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        request = _scope_request(headers=headers, client=("10.0.0.1", 1234))
        assert get_client_ip(request, ["10.0.0.1"]) == "203.0.113.5"
        assert get_client_ip(request, []) == "10.0.0.1"

    def test_cloudflare_header_wins(self):
        headers = {"CF-Connecting-IP": "203.0.113.9", "X-Forwarded-For": "203.0.113.5"}
        request = _scope_request(headers=headers, client=("10.0.0.1", 1234))
        assert get_client_ip(request, ["10.0.0.1"]) == "203.0.113.9"

    def test_policy_map(self):
        assert resolve_api_policy("/api/auth/login").public
        assert not resolve_api_policy("/api/auth/session").public
        assert resolve_api_policy("/api/themes/ocean").roles == frozenset({"admin", "manager"})
        assert resolve_api_policy("/api/admin/users") is None
        assert resolve_api_policy("/api/tenant/route").tenant_data
        assert not resolve_api_policy("/api/auth/logout").tenant_data
        assert not resolve_api_policy("/api/auth/logout-all").public


class TestOriginAndPolicy:
    def test_cross_origin_post_is_rejected_before_anything_else(self):
        response = _client(Origin="https://evil.example.com").post(
            "/api/auth/login", json={"email": "a@example.com", "password": "x"}
        )
        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "CSRF_INVALID_ORIGIN"
        assert body["requestId"] == response.headers["x-request-id"]

    def test_missing_origin_is_rejected(self):
        client = TestClient(app, base_url=ORIGIN)
        response = client.post("/api/auth/logout")
        assert response.status_code == 403
        assert response.json()["code"] == "CSRF_INVALID_ORIGIN"

    def test_unlisted_api_path_is_forbidden(self):
        response = _client().get("/api/admin/users")
        assert response.status_code == 403
        assert response.json()["code"] == "API_FORBIDDEN"

    def test_protected_path_requires_session(self):
        response = _client().get("/api/auth/session")
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": "Authentication is required.",
            "code": "AUTH_REQUIRED",
            "requestId": response.headers["x-request-id"],
        }

    def test_role_gated_path_rejects_player(self):
        _seed_member(role="player")
        client = _client()
        assert _login(client).status_code == 200

        response = client.get("/api/tenant/route")

        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_FORBIDDEN"

    def test_unknown_non_api_path_uses_envelope(self):
        response = _client().get("/nowhere")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestSecurityHeaders:
    def test_api_responses_carry_security_headers(self):
        response = _client().get("/api/auth/session", headers={"X-Request-ID": "trace-abc"})

        assert response.headers["x-request-id"] == "trace-abc"
        assert response.json()["requestId"] == "trace-abc"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["cache-control"] == "no-store"
        assert "default-src 'none'" in response.headers["content-security-policy"]
        assert response.headers["strict-transport-security"].startswith("max-age=31536000")

    def test_oversized_request_id_is_replaced(self):
        response = _client().get("/healthz", headers={"X-Request-ID": "x" * 500})
        assert len(response.headers["x-request-id"]) == 36


class TestAuthFlows:
    def test_login_sets_http_only_cookie(self):
        user = _seed_member()
        client = _client()

        response = _login(client, email=" Member@Example.com ")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["user"]["id"] == user.id
        assert "passwordHash" not in body["data"]["user"]
        set_cookie = response.headers["set-cookie"].lower()
        assert f"{SESSION_COOKIE_NAME}=" in set_cookie
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "max-age=86400" in set_cookie
        # Plain http outside production
        assert "secure" not in set_cookie

    def test_invalid_credentials_envelope(self):
        _seed_member()
        response = _login(_client(), password="not-the-password")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_INVALID_CREDENTIALS"
        assert response.json()["error"] == "Invalid email or password."

    def test_register_then_session(self):
        client = _client()
        response = client.post(
            "/api/auth/register",
            json={
                "email": "founder@example.com",
                "password": PASSWORD,
                "inviteKey": "test-invite-key",
                "firstName": "Ada",
            },
        )
        assert response.status_code == 200

        session = client.get("/api/auth/session")

        assert session.status_code == 200
        data = session.json()["data"]
        assert data["user"]["email"] == "founder@example.com"
        assert data["user"]["role"] == "admin"
        assert len(data["memberships"]) == 1

    def test_register_rejects_wrong_invite_key(self):
        response = _client().post(
            "/api/auth/register",
            json={"email": "x@example.com", "password": PASSWORD, "inviteKey": "wrong"},
        )
        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_INVALID_INVITE_KEY"

    def test_register_validation_error(self):
        response = _client().post(
            "/api/auth/register",
            json={"email": "x@example.com", "password": "short", "inviteKey": "test-invite-key"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["error"] == "Invalid request payload."

    def test_logout_clears_cookie_and_session(self):
        _seed_member()
        client = _client()
        _login(client)

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"loggedOut": True}
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert client.get("/api/auth/session").status_code == 401

    def test_tenant_route_for_admin(self):
        _seed_member()
        client = _client()
        _login(client)

        response = client.get("/api/tenant/route")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["clientId"] == get_runtime().settings.default_client_id
        assert data["routeMode"] == "central_shared"
        assert data["status"] == "active"

    def test_switch_client(self):
        user = _seed_member()
        runtime = get_runtime()

        async def _second_client():
            await runtime.store.ensure_client("club-b", "Club B", "club-b")
            await runtime.store.ensure_membership(user.id, "club-b", role="manager")

        asyncio.run(_second_client())
        client = _client()
        _login(client)

        response = client.post("/api/auth/switch-client", json={"clientId": "club-b"})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["clientId"] == "club-b"
        session = client.get("/api/auth/session").json()["data"]
        assert session["session"]["clientId"] == "club-b"
        assert session["user"]["role"] == "manager"

    def test_switch_to_foreign_client_is_denied(self):
        _seed_member()
        client = _client()
        _login(client)

        response = client.post("/api/auth/switch-client", json={"clientId": "club-z"})

        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_CLIENT_ACCESS_DENIED"

    def test_password_change_signs_out_other_sessions(self):
        _seed_member()
        laptop, phone = _client(), _client()
        _login(laptop)
        _login(phone)

        response = laptop.post(
            "/api/auth/password",
            json={"currentPassword": PASSWORD, "newPassword": "BrandNewPass42!"},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"passwordChanged": True, "revokedSessions": 1}
        assert laptop.get("/api/auth/session").status_code == 200
        revoked = phone.get("/api/auth/session")
        assert revoked.status_code == 401
        assert "max-age=0" in revoked.headers["set-cookie"].lower()


def _set_tenant_route(client_id, **fields):
    route = ClientDatabaseRoute(client_id=client_id, **fields)
    asyncio.run(get_runtime().store.upsert_client_route(route))


def _replay(token):
    return {"Cookie": f"{SESSION_COOKIE_NAME}={token}"}


class TestOfflineTenant:
    """Session management keeps working when the current tenant's database is unavailable."""

    def test_tenant_data_route_reports_inactive(self):
        _seed_member()
        client = _client()
        _login(client)
        _set_tenant_route(get_runtime().settings.default_client_id, status="inactive")

        response = client.get("/api/tenant/route")

        assert response.status_code == 503
        assert response.json()["code"] == "TENANT_ROUTE_INACTIVE"

    def test_logout_while_tenant_inactive(self):
        _seed_member()
        client = _client()
        _login(client)
        token = client.cookies.get(SESSION_COOKIE_NAME)
        _set_tenant_route(get_runtime().settings.default_client_id, status="inactive")

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"loggedOut": True}
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert _client().get("/api/auth/session", headers=_replay(token)).status_code == 401

    def test_switch_away_from_missing_binding(self):
        user = _seed_member()
        runtime = get_runtime()

        async def _second_client():
            await runtime.store.ensure_client("club-b", "Club B", "club-b")
            await runtime.store.ensure_membership(user.id, "club-b", role="admin")

        asyncio.run(_second_client())
        client = _client()
        _login(client)
        _set_tenant_route(
            runtime.settings.default_client_id,
            route_mode="dedicated_binding",
            binding_name="tenant_db_missing",
        )
        broken = client.get("/api/tenant/route")
        assert broken.status_code == 500
        assert broken.json()["code"] == "TENANT_DB_BINDING_NOT_FOUND"

        assert client.get("/api/auth/session").status_code == 200
        switched = client.post("/api/auth/switch-client", json={"clientId": "club-b"})

        assert switched.status_code == 200
        assert switched.json()["data"]["user"]["clientId"] == "club-b"
        route = client.get("/api/tenant/route")
        assert route.status_code == 200
        assert route.json()["data"]["clientId"] == "club-b"


class TestSignOutEverywhere:
    def test_logout_all_revokes_every_device(self):
        _seed_member()
        laptop, phone = _client(), _client()
        _login(laptop)
        _login(phone)

        response = laptop.post("/api/auth/logout-all")

        assert response.status_code == 200
        assert response.json()["data"] == {"loggedOut": True, "revokedSessions": 2}
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert laptop.get("/api/auth/session").status_code == 401
        assert phone.get("/api/auth/session").status_code == 401

    def test_logout_all_requires_a_session(self):
        response = _client().post("/api/auth/logout-all")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"


class TestLoginLifecycle:
    def test_login_limit_then_revoke_all(self):
        _seed_member()
        runtime = get_runtime()
        fixed_now = window_start_for(current_time_ms(), 60_000) + 45_000
        runtime.rate_limiter._clock_ms = lambda: fixed_now
        client = _client()

        assert _login(client).status_code == 200
        old_token = client.cookies.get(SESSION_COOKIE_NAME)
        session = client.get("/api/auth/session").json()["data"]
        assert session["session"]["clientId"] == runtime.settings.default_client_id

        attempts = [_login(_client(), password="wrong-password").status_code for _ in range(11)]
        limited = _login(_client())

        assert attempts == [401] * 11
        assert limited.status_code == 429
        assert limited.headers["retry-after"] == "15"

        assert client.post("/api/auth/logout-all").status_code == 200

        response = _client().get("/api/auth/session", headers=_replay(old_token))
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"
        assert "max-age=0" in response.headers["set-cookie"].lower()
        ctx = RequestContext(request_id="req-replay")
        assert asyncio.run(runtime.sessions.resolve(ctx, old_token)) is None


class TestHydrationFailure:
    def test_store_failure_is_auth_unavailable(self):
        _seed_member()
        client = _client()
        _login(client)
        get_runtime().sessions.resolve = AsyncMock(side_effect=RuntimeError("db down"))

        response = client.get("/api/auth/session")

        assert response.status_code == 500
        assert response.json()["code"] == "AUTH_UNAVAILABLE"
        assert "db down" not in response.text
        assert "max-age=0" in response.headers["set-cookie"].lower()

    def test_public_routes_still_work(self):
        _seed_member()
        client = _client()
        _login(client)
        get_runtime().sessions.resolve = AsyncMock(side_effect=RuntimeError("db down"))

        response = _login(client, password="wrong-password")

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_INVALID_CREDENTIALS"


class TestRateLimiting:
    def test_thirteenth_login_attempt_is_limited(self):
        _seed_member()
        fixed_now = window_start_for(current_time_ms(), 60_000) + 30_000
        get_runtime().rate_limiter._clock_ms = lambda: fixed_now
        client = _client()

        statuses = [_login(client, password="wrong-password").status_code for _ in range(12)]
        limited = _login(client, password="wrong-password")

        assert statuses == [401] * 12
        assert limited.status_code == 429
        assert limited.headers["retry-after"] == "30"
        assert limited.json()["code"] == "RATE_LIMITED"
        assert limited.json()["success"] is False
        # The correct password does not bypass the limit
        assert _login(client).status_code == 429

    def test_unlimited_paths_are_not_counted(self):
        _seed_member()
        client = _client()
        _login(client)
        for _ in range(5):
            assert client.get("/api/tenant/route").status_code == 200


class TestHealth:
    def test_healthz_reports_components(self):
        response = _client().get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "ok"}
        assert body["checks"]["rate_limit"] == {"status": "ok"}
        assert "redis" not in body["checks"]
        assert "x-request-id" in response.headers
