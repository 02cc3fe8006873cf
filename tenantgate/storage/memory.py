from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    STATUS_ACTIVE,
    Client,
    ClientDatabaseRoute,
    Membership,
    RateLimitBucket,
    Session,
    User,
    normalize_status,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Mirrors the Postgres store's contract: every method is awaitable and
    returns detached copies, so callers cannot mutate stored rows in place.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.clients: Dict[str, Client] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}
        self.sessions: Dict[str, Session] = {}
        self.routes: Dict[str, ClientDatabaseRoute] = {}
        self.rate_limits: Dict[Tuple[str, int], RateLimitBucket] = {}
        # RLock for all data operations; check-then-write sequences hold it throughout
        self._data_lock = threading.RLock()

    async def open(self, *, verify_schema: bool = True) -> None:
        return None

    async def verify_connection(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # users
    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    async def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        client_id: Optional[str] = None,
        role: str = "player",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: str = STATUS_ACTIVE,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                status=status,
                client_id=client_id,
            )
            self.users[user.id] = user
            return replace(user)

    async def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return True

    async def set_user_status(self, user_id: str, status: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.status = status
            user.updated_at = utcnow()
            return True

    async def mark_login_success(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = now
                user.last_active_at = now

    async def touch_last_active(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_active_at = now

    # clients
    async def get_client(self, client_id: str) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return replace(client) if client else None

    async def get_client_by_slug(self, slug: str) -> Optional[Client]:
        with self._data_lock:
            for client in self.clients.values():
                if client.slug == slug:
                    return replace(client)
        return None

    async def ensure_client(
        self,
        client_id: str,
        name: str,
        slug: Optional[str] = None,
        *,
        self_join_enabled: bool = False,
        status: str = STATUS_ACTIVE,
    ) -> Client:
        with self._data_lock:
            client = self.clients.get(client_id)
            if client is None:
                client = Client(
                    id=client_id,
                    name=name,
                    slug=slug,
                    status=status,
                    self_join_enabled=self_join_enabled,
                )
                self.clients[client_id] = client
            return replace(client)

    # memberships
    async def get_membership(self, user_id: str, client_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get((user_id, client_id))
            return replace(membership) if membership else None

    async def get_active_membership(
        self, user_id: str, client_id: str
    ) -> Optional[Membership]:
        membership = await self.get_membership(user_id, client_id)
        if membership and membership.is_active:
            return membership
        return None

    def _active_for_user(self, user_id: str) -> List[Membership]:
        rows = [
            m for (uid, _), m in self.memberships.items() if uid == user_id and m.is_active
        ]
        rows.sort(key=lambda m: m.created_at)
        return rows

    async def get_default_active_membership(self, user_id: str) -> Optional[Membership]:
        with self._data_lock:
            for membership in self._active_for_user(user_id):
                if membership.is_default:
                    return replace(membership)
        return None

    async def get_first_active_membership(self, user_id: str) -> Optional[Membership]:
        with self._data_lock:
            rows = self._active_for_user(user_id)
            return replace(rows[0]) if rows else None

    async def list_active_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            return [replace(m) for m in self._active_for_user(user_id)]

    def _clear_defaults(self, user_id: str, keep_client_id: str, now: datetime) -> None:
        for (uid, cid), membership in self.memberships.items():
            if uid == user_id and cid != keep_client_id and membership.is_default:
                membership.is_default = False
                membership.updated_at = now

    async def ensure_membership(
        self,
        user_id: str,
        client_id: str,
        *,
        role: str = "player",
        status: str = STATUS_ACTIVE,
        is_default: bool = False,
        actor_id: Optional[str] = None,
    ) -> Membership:
        now = utcnow()
        status = normalize_status(status)
        make_default = is_default and status == STATUS_ACTIVE
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if client_id not in self.clients:
                raise ConstraintViolation("client does not exist", {"client_id": client_id})
            membership = self.memberships.get((user_id, client_id))
            if membership is None:
                membership = Membership(
                    user_id=user_id,
                    client_id=client_id,
                    role=role,
                    status=status,
                    is_default=make_default,
                    created_at=now,
                    updated_at=now,
                    created_user=actor_id,
                    updated_user=actor_id,
                )
                self.memberships[(user_id, client_id)] = membership
            else:
                membership.role = role
                membership.status = status
                membership.is_default = make_default or (
                    membership.is_default and status == STATUS_ACTIVE
                )
                membership.updated_at = now
                membership.updated_user = actor_id
            if make_default:
                self._clear_defaults(user_id, client_id, now)
            return replace(membership)

    async def set_default_membership(self, user_id: str, client_id: str) -> bool:
        now = utcnow()
        with self._data_lock:
            target = self.memberships.get((user_id, client_id))
            if target is None or not target.is_active:
                return False
            target.is_default = True
            target.updated_at = now
            self._clear_defaults(user_id, client_id, now)
            return True

    # sessions
    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    async def find_valid_session_by_token_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash != token_hash:
                    continue
                if session.revoked_at is not None or session.expires_at <= now:
                    return None
                user = self.users.get(session.user_id)
                if user is None:
                    return None
                return replace(session), replace(user)
        return None

    async def extend_session(
        self, session_id: str, expires_at: datetime, last_seen_at: datetime
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return False
            session.expires_at = expires_at
            session.last_seen_at = last_seen_at
            return True

    async def update_session_client(
        self, session_id: str, client_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return None
            session.client_id = client_id
            session.last_seen_at = now
            return replace(session)

    async def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return False
            session.revoked_at = now
            return True

    def _matching_sessions(
        self,
        user_id: str,
        client_id: Optional[str],
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[Session]:
        return [
            s
            for s in self.sessions.values()
            if s.user_id == user_id
            and (client_id is None or s.client_id == client_id)
            and s.revoked_at is None
            and s.expires_at > now
            and s.id != except_session_id
        ]

    async def revoke_user_sessions(
        self,
        user_id: str,
        client_id: Optional[str],
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            stale = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and (client_id is None or s.client_id == client_id)
                and s.revoked_at is None
                and s.id != except_session_id
            ]
            for session in stale:
                session.revoked_at = now
            return len(stale)

    async def list_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> List[Session]:
        with self._data_lock:
            rows = self._matching_sessions(user_id, client_id, now)
            rows.sort(key=lambda s: s.created_at, reverse=True)
            return [replace(s) for s in rows]

    async def count_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> int:
        with self._data_lock:
            return len(self._matching_sessions(user_id, client_id, now))

    # tenant routes
    async def get_client_route(self, client_id: str) -> Optional[ClientDatabaseRoute]:
        with self._data_lock:
            route = self.routes.get(client_id)
            return replace(route) if route else None

    async def create_client_route_if_missing(self, route: ClientDatabaseRoute) -> None:
        with self._data_lock:
            self.routes.setdefault(route.client_id, replace(route))

    async def upsert_client_route(self, route: ClientDatabaseRoute) -> ClientDatabaseRoute:
        with self._data_lock:
            existing = self.routes.get(route.client_id)
            stored = replace(route, updated_at=utcnow())
            if existing:
                stored.created_at = existing.created_at
            self.routes[route.client_id] = stored
            return replace(stored)

    # rate limits
    async def consume_rate_limit(
        self, key: str, window_ms: int, window_start_ms: int, now: datetime
    ) -> RateLimitBucket:
        with self._data_lock:
            bucket = self.rate_limits.get((key, window_ms))
            if bucket is None or bucket.window_start_ms != window_start_ms:
                bucket = RateLimitBucket(
                    key=key,
                    window_ms=window_ms,
                    window_start_ms=window_start_ms,
                    count=1,
                    updated_at=now,
                )
                self.rate_limits[(key, window_ms)] = bucket
            else:
                bucket.count += 1
                bucket.updated_at = now
            return replace(bucket)

    async def purge_rate_limits(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [k for k, bucket in self.rate_limits.items() if bucket.updated_at < cutoff]
            for k in stale:
                self.rate_limits.pop(k, None)
            return len(stale)
