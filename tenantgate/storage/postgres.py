from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation, MissingTableError
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

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT UNIQUE,
        status TEXT NOT NULL DEFAULT 'active',
        self_join_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'player',
        status TEXT NOT NULL DEFAULT 'active',
        client_id TEXT REFERENCES clients(id),
        last_login_at TIMESTAMPTZ,
        last_active_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_clients (
        user_id TEXT NOT NULL REFERENCES users(id),
        client_id TEXT NOT NULL REFERENCES clients(id),
        role TEXT NOT NULL DEFAULT 'player',
        status TEXT NOT NULL DEFAULT 'active',
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_user TEXT,
        updated_user TEXT,
        PRIMARY KEY (user_id, client_id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_clients_one_default
        ON user_clients (user_id) WHERE is_default AND status = 'active'
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        client_id TEXT REFERENCES clients(id),
        token_hash TEXT NOT NULL UNIQUE,
        auth_provider TEXT NOT NULL DEFAULT 'password',
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_client ON sessions (user_id, client_id)",
    """
    CREATE TABLE IF NOT EXISTS client_database_routes (
        client_id TEXT PRIMARY KEY REFERENCES clients(id),
        route_mode TEXT NOT NULL DEFAULT 'central_shared',
        binding_name TEXT,
        database_id TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_rate_limits (
        key TEXT NOT NULL,
        window_ms BIGINT NOT NULL,
        window_start_ms BIGINT NOT NULL,
        count INTEGER NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (key, window_ms)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_rate_limits_updated ON auth_rate_limits (updated_at)",
)

# client_database_routes is optional: older databases are served through the central route
REQUIRED_TABLES = ("users", "clients", "user_clients", "sessions", "auth_rate_limits")

_SESSION_COLUMNS = (
    "s.id, s.user_id, s.client_id, s.token_hash, s.auth_provider, s.created_at, "
    "s.expires_at, s.last_seen_at, s.revoked_at, s.ip_address, s.user_agent"
)
_USER_COLUMNS = (
    "u.email AS u_email, u.password_hash AS u_password_hash, u.first_name AS u_first_name, "
    "u.last_name AS u_last_name, u.role AS u_role, u.status AS u_status, "
    "u.client_id AS u_client_id, u.last_login_at AS u_last_login_at, "
    "u.last_active_at AS u_last_active_at, u.created_at AS u_created_at, "
    "u.updated_at AS u_updated_at"
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row.get("password_hash"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        role=row.get("role") or "player",
        status=row.get("status") or STATUS_ACTIVE,
        client_id=row.get("client_id"),
        last_login_at=row.get("last_login_at"),
        last_active_at=row.get("last_active_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _client_from_row(row: Dict[str, Any]) -> Client:
    return Client(
        id=row["id"],
        name=row["name"],
        slug=row.get("slug"),
        status=row.get("status") or STATUS_ACTIVE,
        self_join_enabled=bool(row.get("self_join_enabled")),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _membership_from_row(row: Dict[str, Any]) -> Membership:
    return Membership(
        user_id=row["user_id"],
        client_id=row["client_id"],
        role=row.get("role") or "player",
        status=row.get("status") or STATUS_ACTIVE,
        is_default=bool(row.get("is_default")),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        created_user=row.get("created_user"),
        updated_user=row.get("updated_user"),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        client_id=row.get("client_id"),
        token_hash=row["token_hash"],
        auth_provider=row.get("auth_provider") or "password",
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        last_seen_at=row.get("last_seen_at") or row["created_at"],
        revoked_at=row.get("revoked_at"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
    )


def _route_from_row(row: Dict[str, Any]) -> ClientDatabaseRoute:
    metadata = row.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata) if metadata else None
    return ClientDatabaseRoute(
        client_id=row["client_id"],
        route_mode=row.get("route_mode") or "central_shared",
        binding_name=row.get("binding_name"),
        database_id=row.get("database_id"),
        status=row.get("status") or STATUS_ACTIVE,
        metadata=metadata,
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed store over an async psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    def _connect(self):
        return self.pool.connection()

    async def open(self, *, verify_schema: bool = True) -> None:
        await self.pool.open()
        if verify_schema:
            await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def ensure_schema(self) -> None:
        """Create every table this service owns if it is missing."""

        async with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def _verify_required_schema(self) -> None:
        missing: List[str] = []
        async with self._connect() as conn:
            for table in REQUIRED_TABLES:
                cur = await conn.execute("SELECT to_regclass(%s) AS oid", (table,))
                row = await cur.fetchone()
                if not row or row.get("oid") is None:
                    missing.append(table)
            cur = await conn.execute(
                "SELECT to_regclass(%s) AS oid", ("client_database_routes",)
            )
            row = await cur.fetchone()
            if not row or row.get("oid") is None:
                self.logger.warning("client_database_routes_missing")
        if missing:
            self.logger.error("schema_tables_missing", tables=missing)
            raise RuntimeError(
                "Database schema is missing required tables: " + ", ".join(missing)
            )

    async def _fetchone(self, sql: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            return await cur.fetchone()

    async def _fetchall(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            return await cur.fetchall()

    async def _execute(self, sql: str, params: Tuple = ()) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            return cur.rowcount

    # users
    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE id = %s", (user_id,))
        return _user_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE email = %s", (email,))
        return _user_from_row(row) if row else None

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
        now = utcnow()
        try:
            row = await self._fetchone(
                """
                INSERT INTO users (id, email, password_hash, first_name, last_name, role,
                                   status, client_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    email,
                    password_hash,
                    first_name,
                    last_name,
                    role,
                    status,
                    client_id,
                    now,
                    now,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("client does not exist", {"client_id": client_id}) from exc
        return _user_from_row(row)

    async def update_password(self, user_id: str, password_hash: str) -> bool:
        updated = await self._execute(
            "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s",
            (password_hash, utcnow(), user_id),
        )
        return updated > 0

    async def set_user_status(self, user_id: str, status: str) -> bool:
        updated = await self._execute(
            "UPDATE users SET status = %s, updated_at = %s WHERE id = %s",
            (status, utcnow(), user_id),
        )
        return updated > 0

    async def mark_login_success(self, user_id: str, now: datetime) -> None:
        await self._execute(
            "UPDATE users SET last_login_at = %s, last_active_at = %s WHERE id = %s",
            (now, now, user_id),
        )

    async def touch_last_active(self, user_id: str, now: datetime) -> None:
        await self._execute(
            "UPDATE users SET last_active_at = %s WHERE id = %s", (now, user_id)
        )

    # clients
    async def get_client(self, client_id: str) -> Optional[Client]:
        row = await self._fetchone("SELECT * FROM clients WHERE id = %s", (client_id,))
        return _client_from_row(row) if row else None

    async def get_client_by_slug(self, slug: str) -> Optional[Client]:
        row = await self._fetchone("SELECT * FROM clients WHERE slug = %s", (slug,))
        return _client_from_row(row) if row else None

    async def ensure_client(
        self,
        client_id: str,
        name: str,
        slug: Optional[str] = None,
        *,
        self_join_enabled: bool = False,
        status: str = STATUS_ACTIVE,
    ) -> Client:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO clients (id, name, slug, status, self_join_enabled)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (client_id, name, slug, status, self_join_enabled),
            )
            cur = await conn.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
            row = await cur.fetchone()
        if row is None:
            raise ConstraintViolation("client slug already exists", {"slug": slug})
        return _client_from_row(row)

    # memberships
    async def get_membership(self, user_id: str, client_id: str) -> Optional[Membership]:
        row = await self._fetchone(
            "SELECT * FROM user_clients WHERE user_id = %s AND client_id = %s",
            (user_id, client_id),
        )
        return _membership_from_row(row) if row else None

    async def get_active_membership(
        self, user_id: str, client_id: str
    ) -> Optional[Membership]:
        row = await self._fetchone(
            """
            SELECT * FROM user_clients
            WHERE user_id = %s AND client_id = %s AND status = 'active'
            """,
            (user_id, client_id),
        )
        return _membership_from_row(row) if row else None

    async def get_default_active_membership(self, user_id: str) -> Optional[Membership]:
        row = await self._fetchone(
            """
            SELECT * FROM user_clients
            WHERE user_id = %s AND status = 'active' AND is_default
            LIMIT 1
            """,
            (user_id,),
        )
        return _membership_from_row(row) if row else None

    async def get_first_active_membership(self, user_id: str) -> Optional[Membership]:
        row = await self._fetchone(
            """
            SELECT * FROM user_clients
            WHERE user_id = %s AND status = 'active'
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id,),
        )
        return _membership_from_row(row) if row else None

    async def list_active_memberships(self, user_id: str) -> List[Membership]:
        rows = await self._fetchall(
            """
            SELECT * FROM user_clients
            WHERE user_id = %s AND status = 'active'
            ORDER BY created_at ASC
            """,
            (user_id,),
        )
        return [_membership_from_row(row) for row in rows]

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
        try:
            async with self._connect() as conn:
                if make_default:
                    # Clear first so the one-default index never sees two rows
                    await conn.execute(
                        """
                        UPDATE user_clients SET is_default = FALSE, updated_at = %s
                        WHERE user_id = %s AND client_id <> %s AND is_default
                        """,
                        (now, user_id, client_id),
                    )
                cur = await conn.execute(
                    """
                    INSERT INTO user_clients (user_id, client_id, role, status, is_default,
                                              created_at, updated_at, created_user, updated_user)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, client_id) DO UPDATE SET
                        role = EXCLUDED.role,
                        status = EXCLUDED.status,
                        is_default = CASE
                            WHEN EXCLUDED.status = 'active'
                                THEN user_clients.is_default OR EXCLUDED.is_default
                            ELSE FALSE
                        END,
                        updated_at = EXCLUDED.updated_at,
                        updated_user = EXCLUDED.updated_user
                    RETURNING *
                    """,
                    (user_id, client_id, role, status, make_default, now, now, actor_id, actor_id),
                )
                row = await cur.fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "membership references missing user or client",
                {"user_id": user_id, "client_id": client_id},
            ) from exc
        return _membership_from_row(row)

    async def set_default_membership(self, user_id: str, client_id: str) -> bool:
        now = utcnow()
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT status FROM user_clients
                WHERE user_id = %s AND client_id = %s
                FOR UPDATE
                """,
                (user_id, client_id),
            )
            row = await cur.fetchone()
            if not row or normalize_status(row.get("status")) != STATUS_ACTIVE:
                return False
            await conn.execute(
                """
                UPDATE user_clients SET is_default = FALSE, updated_at = %s
                WHERE user_id = %s AND client_id <> %s AND is_default
                """,
                (now, user_id, client_id),
            )
            await conn.execute(
                """
                UPDATE user_clients SET is_default = TRUE, updated_at = %s
                WHERE user_id = %s AND client_id = %s
                """,
                (now, user_id, client_id),
            )
        return True

    # sessions
    async def create_session(self, session: Session) -> Session:
        try:
            row = await self._fetchone(
                """
                INSERT INTO sessions (id, user_id, client_id, token_hash, auth_provider,
                                      created_at, expires_at, last_seen_at, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    session.id,
                    session.user_id,
                    session.client_id,
                    session.token_hash,
                    session.auth_provider,
                    session.created_at,
                    session.expires_at,
                    session.last_seen_at,
                    session.ip_address,
                    session.user_agent,
                ),
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id}) from exc
        return _session_from_row(row)

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = %s", (session_id,))
        return _session_from_row(row) if row else None

    async def find_valid_session_by_token_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]:
        row = await self._fetchone(
            f"""
            SELECT {_SESSION_COLUMNS}, {_USER_COLUMNS}
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token_hash = %s AND s.revoked_at IS NULL AND s.expires_at > %s
            LIMIT 1
            """,
            (token_hash, now),
        )
        if not row:
            return None
        user_row = {
            key[2:]: value for key, value in row.items() if key.startswith("u_")
        }
        user_row["id"] = row["user_id"]
        return _session_from_row(row), _user_from_row(user_row)

    async def extend_session(
        self, session_id: str, expires_at: datetime, last_seen_at: datetime
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE sessions SET expires_at = %s, last_seen_at = %s
            WHERE id = %s AND revoked_at IS NULL
            """,
            (expires_at, last_seen_at, session_id),
        )
        return updated > 0

    async def update_session_client(
        self, session_id: str, client_id: str, now: datetime
    ) -> Optional[Session]:
        row = await self._fetchone(
            """
            UPDATE sessions SET client_id = %s, last_seen_at = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING *
            """,
            (client_id, now, session_id),
        )
        return _session_from_row(row) if row else None

    async def revoke_session(self, session_id: str, now: datetime) -> bool:
        updated = await self._execute(
            "UPDATE sessions SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
            (now, session_id),
        )
        return updated > 0

    async def revoke_user_sessions(
        self,
        user_id: str,
        client_id: Optional[str],
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        sql = "UPDATE sessions SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL"
        params: List[Any] = [now, user_id]
        if client_id is not None:
            sql += " AND client_id = %s"
            params.append(client_id)
        if except_session_id is not None:
            sql += " AND id <> %s"
            params.append(except_session_id)
        return await self._execute(sql, tuple(params))

    async def list_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> List[Session]:
        sql = (
            "SELECT * FROM sessions WHERE user_id = %s AND revoked_at IS NULL "
            "AND expires_at > %s"
        )
        params: List[Any] = [user_id, now]
        if client_id is not None:
            sql += " AND client_id = %s"
            params.append(client_id)
        sql += " ORDER BY created_at DESC"
        rows = await self._fetchall(sql, tuple(params))
        return [_session_from_row(row) for row in rows]

    async def count_active_sessions(
        self, user_id: str, client_id: Optional[str], now: datetime
    ) -> int:
        sql = (
            "SELECT COUNT(*) AS total FROM sessions WHERE user_id = %s "
            "AND revoked_at IS NULL AND expires_at > %s"
        )
        params: List[Any] = [user_id, now]
        if client_id is not None:
            sql += " AND client_id = %s"
            params.append(client_id)
        row = await self._fetchone(sql, tuple(params))
        return int(row["total"]) if row else 0

    # tenant routes
    async def get_client_route(self, client_id: str) -> Optional[ClientDatabaseRoute]:
        try:
            row = await self._fetchone(
                "SELECT * FROM client_database_routes WHERE client_id = %s", (client_id,)
            )
        except errors.UndefinedTable as exc:
            raise MissingTableError("client_database_routes") from exc
        return _route_from_row(row) if row else None

    async def create_client_route_if_missing(self, route: ClientDatabaseRoute) -> None:
        try:
            await self._execute(
                """
                INSERT INTO client_database_routes (client_id, route_mode, binding_name,
                                                    database_id, status, metadata,
                                                    created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (client_id) DO NOTHING
                """,
                (
                    route.client_id,
                    route.route_mode,
                    route.binding_name,
                    route.database_id,
                    route.status,
                    json.dumps(route.metadata) if route.metadata is not None else None,
                    route.created_at,
                    route.updated_at,
                ),
            )
        except errors.UndefinedTable as exc:
            raise MissingTableError("client_database_routes") from exc

    async def upsert_client_route(self, route: ClientDatabaseRoute) -> ClientDatabaseRoute:
        now = utcnow()
        try:
            row = await self._fetchone(
                """
                INSERT INTO client_database_routes (client_id, route_mode, binding_name,
                                                    database_id, status, metadata,
                                                    created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (client_id) DO UPDATE SET
                    route_mode = EXCLUDED.route_mode,
                    binding_name = EXCLUDED.binding_name,
                    database_id = EXCLUDED.database_id,
                    status = EXCLUDED.status,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    route.client_id,
                    route.route_mode,
                    route.binding_name,
                    route.database_id,
                    route.status,
                    json.dumps(route.metadata) if route.metadata is not None else None,
                    now,
                    now,
                ),
            )
        except errors.UndefinedTable as exc:
            raise MissingTableError("client_database_routes") from exc
        return _route_from_row(row)

    # rate limits
    async def consume_rate_limit(
        self, key: str, window_ms: int, window_start_ms: int, now: datetime
    ) -> RateLimitBucket:
        # Single conditional upsert: concurrent callers serialize on the row lock
        row = await self._fetchone(
            """
            INSERT INTO auth_rate_limits (key, window_ms, window_start_ms, count, updated_at)
            VALUES (%s, %s, %s, 1, %s)
            ON CONFLICT (key, window_ms) DO UPDATE SET
                count = CASE
                    WHEN auth_rate_limits.window_start_ms = EXCLUDED.window_start_ms
                        THEN auth_rate_limits.count + 1
                    ELSE 1
                END,
                window_start_ms = EXCLUDED.window_start_ms,
                updated_at = EXCLUDED.updated_at
            RETURNING key, window_ms, window_start_ms, count, updated_at
            """,
            (key, window_ms, window_start_ms, now),
        )
        return RateLimitBucket(
            key=row["key"],
            window_ms=int(row["window_ms"]),
            window_start_ms=int(row["window_start_ms"]),
            count=int(row["count"]),
            updated_at=row["updated_at"],
        )

    async def purge_rate_limits(self, cutoff: datetime) -> int:
        return await self._execute(
            "DELETE FROM auth_rate_limits WHERE updated_at < %s", (cutoff,)
        )
