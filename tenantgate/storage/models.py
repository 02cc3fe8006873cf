from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

ROUTE_MODE_CENTRAL_SHARED = "central_shared"
ROUTE_MODE_DEDICATED_BINDING = "dedicated_binding"
ROUTE_MODES = frozenset({ROUTE_MODE_CENTRAL_SHARED, ROUTE_MODE_DEDICATED_BINDING})

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

AUTH_PROVIDER_PASSWORD = "password"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_status(value: Optional[str]) -> str:
    """Missing status means active; anything else is compared case-insensitively."""
    return (value or STATUS_ACTIVE).strip().lower() or STATUS_ACTIVE


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "player"
    status: str = STATUS_ACTIVE
    client_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return normalize_status(self.status) == STATUS_ACTIVE

    def safe_view(self) -> Dict:
        """Client-facing projection: no password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "status": self.status,
        }


@dataclass
class Client:
    id: str
    name: str
    slug: Optional[str] = None
    status: str = STATUS_ACTIVE
    self_join_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return normalize_status(self.status) == STATUS_ACTIVE


@dataclass
class Membership:
    user_id: str
    client_id: str
    role: str = "player"
    status: str = STATUS_ACTIVE
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_user: Optional[str] = None
    updated_user: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return normalize_status(self.status) == STATUS_ACTIVE


@dataclass
class Session:
    id: str
    user_id: str
    client_id: Optional[str]
    token_hash: str
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    auth_provider: str = AUTH_PROVIDER_PASSWORD
    revoked_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        client_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        auth_provider: str = AUTH_PROVIDER_PASSWORD,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            client_id=client_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + ttl,
            last_seen_at=now,
            auth_provider=auth_provider,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def safe_view(self) -> Dict:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "activeClientId": self.client_id,
            "authProvider": self.auth_provider,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "lastSeenAt": self.last_seen_at.isoformat(),
        }


@dataclass
class ClientDatabaseRoute:
    client_id: str
    route_mode: str = ROUTE_MODE_CENTRAL_SHARED
    binding_name: Optional[str] = None
    database_id: Optional[str] = None
    status: str = STATUS_ACTIVE
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitBucket:
    key: str
    window_ms: int
    window_start_ms: int
    count: int
    updated_at: datetime = field(default_factory=utcnow)
