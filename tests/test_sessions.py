"""Tests for cookie session lifecycle: create, resolve, renew, revoke, switch tenant."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantgate.service.context import RequestContext
from tenantgate.service.errors import ConfigMissingError, ForbiddenError
from tenantgate.service.sessions import SessionManager, SessionPolicy
from tenantgate.service.tokens import hash_token
from tenantgate.storage.memory import MemoryStore

SECRET = "session-secret"
START = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _ctx() -> RequestContext:
    return RequestContext(request_id="req-test", hostname="localhost", production=False)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store, clock):
    return SessionManager(store, SECRET, policy=SessionPolicy(), clock=clock)


async def _seed(store: MemoryStore, role: str = "admin"):
    await store.ensure_client("client-a", "Client A", "client-a")
    await store.ensure_client("client-b", "Client B", "client-b")
    user = await store.create_user("user@example.com", "unused-hash", client_id="client-a")
    membership = await store.ensure_membership(
        user.id, "client-a", role=role, is_default=True
    )
    return user, membership


async def _login(manager: SessionManager, store: MemoryStore):
    user, membership = await _seed(store)
    ctx = _ctx()
    identity = await manager.create(ctx, user, membership)
    return user, identity, ctx.cookie.value


class TestCreate:
    async def test_create_sets_cookie_and_stores_only_the_hash(self, manager, store):
        user, membership = await _seed(store)
        ctx = _ctx()

        identity = await manager.create(ctx, user, membership)

        assert ctx.cookie.action == "set"
        assert ctx.cookie.max_age == 24 * 60 * 60
        assert ctx.cookie.secure is False  # plain http outside production
        token = ctx.cookie.value
        stored = await store.get_session(identity.session_id)
        assert stored.token_hash == hash_token(token, SECRET)
        assert stored.token_hash != token
        assert stored.expires_at == START + timedelta(hours=24)
        assert identity.client_id == "client-a"
        assert identity.role == "admin"
        assert "password_hash" not in identity.user
        assert "passwordHash" not in identity.user

    async def test_create_requires_secret(self, store, clock):
        user, membership = await _seed(store)
        manager = SessionManager(store, None, clock=clock)
        with pytest.raises(ConfigMissingError):
            await manager.create(_ctx(), user, membership)


class TestSecureCookieFlag:
    """Secure comes from the deployment environment and scheme, never the Host header."""

    @pytest.mark.parametrize(
        "hostname,scheme,development,production,expected",
        [
            ("localhost", "http", False, True, True),
            ("app.localhost", "https", False, True, True),
            ("127.0.0.1", "http", True, False, False),
            ("app.example.com", "http", True, False, False),
            ("app.example.com", "https", False, False, True),
            ("localhost", "http", False, False, False),
        ],
    )
    def test_secure_flag(self, hostname, scheme, development, production, expected):
        ctx = RequestContext(
            request_id="req-cookie",
            hostname=hostname,
            scheme=scheme,
            development=development,
            production=production,
        )
        ctx.set_session_cookie("token", 60)
        assert ctx.cookie.secure is expected


class TestResolve:
    async def test_round_trip_returns_identity_in_default_tenant(self, manager, store):
        user, _, token = await _login(manager, store)
        ctx = _ctx()

        identity = await manager.resolve(ctx, token)

        assert identity is not None
        assert identity.user_id == user.id
        assert identity.client_id == "client-a"
        assert ctx.identity is identity
        # Plenty of sliding window left: no write, no cookie
        assert ctx.cookie is None

    async def test_resolve_touches_last_active(self, manager, store, clock):
        user, _, token = await _login(manager, store)
        clock.advance(minutes=5)

        await manager.resolve(_ctx(), token)

        refreshed = await store.get_user(user.id)
        assert refreshed.last_active_at == START + timedelta(minutes=5)

    async def test_unknown_token_clears_cookie(self, manager, store):
        await _login(manager, store)
        ctx = _ctx()

        assert await manager.resolve(ctx, "not-a-real-token") is None
        assert ctx.cookie.action == "clear"

    async def test_missing_token_is_anonymous(self, manager):
        ctx = _ctx()
        assert await manager.resolve(ctx, None) is None
        assert ctx.cookie is None

    async def test_revoked_session_is_invalid(self, manager, store):
        _, identity, token = await _login(manager, store)
        await manager.revoke(identity.session_id)

        assert await manager.resolve(_ctx(), token) is None

    async def test_expired_session_is_invalid(self, manager, store, clock):
        _, _, token = await _login(manager, store)
        clock.advance(hours=24, seconds=1)

        assert await manager.resolve(_ctx(), token) is None

    async def test_absolute_ttl_wins_over_expires_at(self, manager, store, clock):
        _, identity, token = await _login(manager, store)
        await store.extend_session(identity.session_id, START + timedelta(days=60), START)
        clock.advance(days=30, minutes=1)
        ctx = _ctx()

        assert await manager.resolve(ctx, token) is None
        assert ctx.cookie.action == "clear"
        stored = await store.get_session(identity.session_id)
        assert stored.revoked_at is not None

    async def test_inactive_user_fails_closed(self, manager, store):
        user, identity, token = await _login(manager, store)
        await store.set_user_status(user.id, "inactive")
        ctx = _ctx()

        assert await manager.resolve(ctx, token) is None
        assert ctx.cookie.action == "clear"
        assert (await store.get_session(identity.session_id)).revoked_at is not None

    async def test_inactive_membership_fails_closed(self, manager, store):
        user, identity, token = await _login(manager, store)
        await store.ensure_membership(user.id, "client-a", role="admin", status="inactive")

        assert await manager.resolve(_ctx(), token) is None
        assert (await store.get_session(identity.session_id)).revoked_at is not None

    async def test_role_comes_from_membership(self, manager, store):
        user, _, token = await _login(manager, store)
        await store.ensure_membership(user.id, "client-a", role="Manager", is_default=True)

        identity = await manager.resolve(_ctx(), token)

        assert identity.role == "manager"


class TestRenewal:
    async def test_renews_inside_window(self, manager, store, clock):
        _, identity, token = await _login(manager, store)
        clock.advance(hours=19)  # 5h left, renewal window is 6h
        ctx = _ctx()

        renewed = await manager.resolve(ctx, token)

        assert renewed.expires_at == clock.now + timedelta(hours=24)
        assert ctx.cookie.action == "set"
        assert ctx.cookie.value == token
        assert ctx.cookie.max_age == 24 * 60 * 60
        stored = await store.get_session(identity.session_id)
        assert stored.expires_at == clock.now + timedelta(hours=24)
        assert stored.last_seen_at == clock.now

    async def test_no_renewal_outside_window(self, manager, store, clock):
        _, identity, token = await _login(manager, store)
        clock.advance(hours=1)
        ctx = _ctx()

        await manager.resolve(ctx, token)

        stored = await store.get_session(identity.session_id)
        assert stored.expires_at == START + timedelta(hours=24)
        assert ctx.cookie is None

    async def test_renewal_never_passes_absolute_ttl(self, manager, store, clock):
        _, identity, token = await _login(manager, store)
        ceiling = START + timedelta(days=30)
        await store.extend_session(
            identity.session_id, ceiling - timedelta(hours=1), START
        )
        clock.now = ceiling - timedelta(hours=4)

        renewed = await manager.resolve(_ctx(), token)

        assert renewed.expires_at == ceiling
        stored = await store.get_session(identity.session_id)
        assert stored.expires_at == ceiling


class TestRevocation:
    async def test_revoke_current_clears_cookie(self, manager, store):
        _, _, token = await _login(manager, store)
        ctx = _ctx()
        await manager.resolve(ctx, token)

        assert await manager.revoke_current(ctx) is True
        assert ctx.identity is None
        assert ctx.cookie.action == "clear"
        assert await manager.resolve(_ctx(), token) is None

    async def test_revoke_all_except_keeps_current(self, manager, store):
        user, membership = await _seed(store)
        keep_ctx, other_ctx = _ctx(), _ctx()
        keep = await manager.create(keep_ctx, user, membership)
        await manager.create(other_ctx, user, membership)

        revoked = await manager.revoke_all_except(user.id, "client-a", keep.session_id)

        assert revoked == 1
        assert await manager.resolve(_ctx(), keep_ctx.cookie.value) is not None
        assert await manager.resolve(_ctx(), other_ctx.cookie.value) is None
        assert await manager.count_active(user.id, "client-a") == 1

    async def test_revoke_all_for_user(self, manager, store):
        user, membership = await _seed(store)
        await store.ensure_membership(user.id, "client-b", role="manager")
        tokens = []
        for _ in range(3):
            ctx = _ctx()
            await manager.create(ctx, user, membership)
            tokens.append(ctx.cookie.value)
        switched_ctx = _ctx()
        switched = await manager.create(switched_ctx, user, membership)
        await manager.switch_tenant(switched_ctx, switched, "client-b")
        tokens.append(switched_ctx.cookie.value)

        assert await manager.revoke_all_for_user(user.id) == 4
        assert await manager.list_active(user.id, None) == []
        for token in tokens:
            ctx = _ctx()
            assert await manager.resolve(ctx, token) is None
            assert ctx.cookie.action == "clear"


class TestSwitchTenant:
    async def test_inactive_target_membership_fails_without_mutation(self, manager, store):
        user, identity, token = await _login(manager, store)
        await store.ensure_membership(user.id, "client-b", role="admin", status="inactive")

        with pytest.raises(ForbiddenError) as excinfo:
            await manager.switch_tenant(_ctx(), identity, "client-b")

        assert excinfo.value.error_code == "AUTH_CLIENT_ACCESS_DENIED"
        stored = await store.get_session(identity.session_id)
        assert stored.client_id == "client-a"

    async def test_switch_is_visible_to_next_resolve(self, manager, store):
        user, identity, token = await _login(manager, store)
        await store.ensure_membership(user.id, "client-b", role="manager")

        switched = await manager.switch_tenant(_ctx(), identity, "client-b")

        assert switched.client_id == "client-b"
        assert switched.role == "manager"
        resolved = await manager.resolve(_ctx(), token)
        assert resolved.client_id == "client-b"
        assert resolved.session_id == identity.session_id
        default = await store.get_default_active_membership(user.id)
        assert default.client_id == "client-b"

    async def test_switch_preserves_session_age(self, manager, store, clock):
        user, identity, _ = await _login(manager, store)
        await store.ensure_membership(user.id, "client-b", role="admin")
        clock.advance(hours=2)

        await manager.switch_tenant(_ctx(), identity, "client-b")

        stored = await store.get_session(identity.session_id)
        assert stored.created_at == START
