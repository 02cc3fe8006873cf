from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.context import AuthIdentity, RequestContext
from tenantgate.service.errors import (
    AccountUnassignedError,
    ConfigMissingError,
    ForbiddenError,
    ServerError,
)
from tenantgate.service.rbac import normalize_role
from tenantgate.service.tokens import generate_token, hash_token
from tenantgate.storage.models import Membership, Session, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    async def create_session(self, session: Session) -> Session: ...

    async def find_valid_session_by_token_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]: ...

    async def extend_session(
        self, session_id: str, expires_at: datetime, last_seen_at: datetime
    ) -> bool: ...

    async def update_session_client(
        self, session_id: str, client_id: str, now: datetime
    ) -> Optional[Session]: ...

    async def revoke_session(self, session_id: str, now: datetime) -> bool: ...

    async def revoke_user_sessions(
        self,
        user_id: str,
        client_id: Optional[str],
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int: ...

    async def list_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> List[Session]: ...

    async def count_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> int: ...

    async def get_active_membership(
        self, user_id: str, client_id: str
    ) -> Optional[Membership]: ...

    async def set_default_membership(self, user_id: str, client_id: str) -> bool: ...

    async def touch_last_active(self, user_id: str, now: datetime) -> None: ...


@dataclass(frozen=True)
class SessionPolicy:
    ttl: timedelta = timedelta(hours=24)
    renew_window: timedelta = timedelta(hours=6)
    absolute_ttl: timedelta = timedelta(days=30)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionPolicy":
        return cls(
            ttl=timedelta(hours=max(1, settings.session_ttl_hours)),
            renew_window=timedelta(hours=max(0, settings.session_renew_window_hours)),
            absolute_ttl=timedelta(days=max(1, settings.session_absolute_ttl_days)),
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())


class SessionManager:
    """Creates, resolves, renews and revokes cookie sessions.

    Sessions are looked up by the keyed hash of the cookie token only. Every
    resolve re-checks the user's status and the membership for the session's
    tenant, so a deactivated account or revoked membership takes effect on the
    next request.
    """

    def __init__(
        self,
        store: SessionStore,
        secret: Optional[str],
        *,
        policy: Optional[SessionPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.secret = secret
        self.policy = policy or SessionPolicy()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _require_secret(self) -> str:
        if not self.secret:
            logger.error("session_secret_missing")
            raise ConfigMissingError()
        return self.secret

    def _identity(
        self, session: Session, user: User, role: Optional[str]
    ) -> AuthIdentity:
        resolved_role = normalize_role(role)
        user_view = user.safe_view()
        user_view["clientId"] = session.client_id
        user_view["role"] = resolved_role
        session_view = session.safe_view()
        session_view["role"] = resolved_role
        return AuthIdentity(
            user_id=user.id,
            email=user.email,
            role=resolved_role,
            client_id=session.client_id or "",
            session_id=session.id,
            expires_at=session.expires_at,
            user=user_view,
            session=session_view,
        )

    async def create(
        self, ctx: RequestContext, user: User, membership: Membership
    ) -> AuthIdentity:
        """Persist a new session for ``user`` in the membership's tenant and set the cookie."""
        if not membership.client_id or not membership.is_active:
            raise AccountUnassignedError(detail={"user_id": user.id})
        secret = self._require_secret()
        token = generate_token()
        now = self._now()
        session = Session.new(
            user.id,
            membership.client_id,
            hash_token(token, secret),
            self.policy.ttl,
            now=now,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
        )
        stored = await self.store.create_session(session)
        ctx.set_session_cookie(token, self.policy.ttl_seconds)
        identity = self._identity(stored, user, membership.role)
        ctx.identity = identity
        logger.info(
            "session_created",
            session_id=stored.id,
            user_id=user.id,
            client_id=membership.client_id,
        )
        return identity

    async def _fail_closed(self, ctx: RequestContext, session: Session, reason: str) -> None:
        logger.info(
            "session_rejected",
            session_id=session.id,
            user_id=session.user_id,
            client_id=session.client_id,
            reason=reason,
        )
        await self.store.revoke_session(session.id, self._now())
        ctx.clear_session_cookie()

    async def resolve(self, ctx: RequestContext, token: Optional[str]) -> Optional[AuthIdentity]:
        """Return the identity behind ``token`` or None; invalid sessions clear the cookie."""
        if not token:
            return None
        secret = self._require_secret()
        now = self._now()
        found = await self.store.find_valid_session_by_token_hash(
            hash_token(token, secret), now
        )
        if found is None:
            ctx.clear_session_cookie()
            return None
        session, user = found

        absolute_expiry = session.created_at + self.policy.absolute_ttl
        membership: Optional[Membership] = None
        if not session.client_id:
            reason = "tenant_missing"
        elif not user.is_active:
            reason = "user_inactive"
        elif now >= absolute_expiry:
            reason = "absolute_ttl_exceeded"
        else:
            membership = await self.store.get_active_membership(user.id, session.client_id)
            reason = "" if membership else "membership_inactive"
        if reason:
            await self._fail_closed(ctx, session, reason)
            return None

        if session.expires_at - now <= self.policy.renew_window:
            renewed_expiry = min(now + self.policy.ttl, absolute_expiry)
            if renewed_expiry > session.expires_at:
                if await self.store.extend_session(session.id, renewed_expiry, now):
                    session = replace(session, expires_at=renewed_expiry, last_seen_at=now)
                    ctx.set_session_cookie(token, self.policy.ttl_seconds)
                    logger.debug(
                        "session_renewed",
                        session_id=session.id,
                        expires_at=renewed_expiry.isoformat(),
                    )

        await self.store.touch_last_active(user.id, now)
        identity = self._identity(session, user, membership.role)
        ctx.identity = identity
        return identity

    async def revoke(self, session_id: str) -> bool:
        revoked = await self.store.revoke_session(session_id, self._now())
        logger.info("session_revoked", session_id=session_id, revoked=revoked)
        return revoked

    async def revoke_current(self, ctx: RequestContext) -> bool:
        revoked = False
        if ctx.identity is not None:
            revoked = await self.revoke(ctx.identity.session_id)
            ctx.identity = None
        ctx.clear_session_cookie()
        return revoked

    async def revoke_all_for_user(self, user_id: str, client_id: Optional[str] = None) -> int:
        """Revoke every session for ``user_id``; ``client_id=None`` spans all tenants."""
        count = await self.store.revoke_user_sessions(user_id, client_id, self._now())
        logger.info(
            "user_sessions_revoked", user_id=user_id, client_id=client_id, count=count
        )
        return count

    async def revoke_all_except(
        self, user_id: str, client_id: Optional[str], keep_session_id: str
    ) -> int:
        count = await self.store.revoke_user_sessions(
            user_id, client_id, self._now(), except_session_id=keep_session_id
        )
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            client_id=client_id,
            kept_session_id=keep_session_id,
            count=count,
        )
        return count

    async def switch_tenant(
        self, ctx: RequestContext, identity: AuthIdentity, client_id: str
    ) -> AuthIdentity:
        """Point the current session at ``client_id`` without resetting its age."""
        membership = await self.store.get_active_membership(identity.user_id, client_id)
        if membership is None:
            raise ForbiddenError(
                "You do not have access to that organization.",
                error_code="AUTH_CLIENT_ACCESS_DENIED",
                detail={"user_id": identity.user_id, "client_id": client_id},
            )
        updated = await self.store.update_session_client(
            identity.session_id, client_id, self._now()
        )
        if updated is None:
            raise ServerError(
                "Failed to switch client context.",
                error_code="AUTH_SWITCH_FAILED",
                detail={"session_id": identity.session_id},
            )
        await self.store.set_default_membership(identity.user_id, client_id)
        role = normalize_role(membership.role)
        user_view = dict(identity.user, clientId=client_id, role=role)
        session_view = updated.safe_view()
        session_view["role"] = role
        switched = replace(
            identity,
            client_id=client_id,
            role=role,
            expires_at=updated.expires_at,
            user=user_view,
            session=session_view,
        )
        ctx.identity = switched
        logger.info(
            "session_tenant_switched",
            session_id=identity.session_id,
            user_id=identity.user_id,
            from_client_id=identity.client_id,
            to_client_id=client_id,
        )
        return switched

    async def count_active(self, user_id: str, client_id: Optional[str]) -> int:
        return await self.store.count_active_sessions(user_id, client_id, self._now())

    async def list_active(self, user_id: str, client_id: Optional[str]) -> List[Session]:
        return await self.store.list_active_sessions(user_id, client_id, self._now())
