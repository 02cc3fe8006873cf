from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tenantgate.storage.models import ClientDatabaseRoute

SESSION_COOKIE_NAME = "tenantgate_session"


@dataclass
class AuthIdentity:
    """Who is calling and in which tenant, as resolved from the session cookie."""

    user_id: str
    email: str
    role: str
    client_id: str
    session_id: str
    expires_at: Any = None
    user: Dict[str, Any] = field(default_factory=dict)
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CookieInstruction:
    action: str  # "set" or "clear"
    value: str = ""
    max_age: int = 0
    secure: bool = True


@dataclass
class RequestScope:
    """Memo for tenant lookups; lives exactly as long as one request."""

    routes: Dict[str, ClientDatabaseRoute] = field(default_factory=dict)
    handles: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RequestContext:
    """Per-request state created at entry and passed explicitly down the chain."""

    request_id: str
    client_ip: str = "unknown"
    user_agent: Optional[str] = None
    hostname: str = ""
    scheme: str = "http"
    development: bool = False
    production: bool = True
    identity: Optional[AuthIdentity] = None
    hydration_error: Optional[BaseException] = None
    tenant_route: Optional[ClientDatabaseRoute] = None
    tenant_handle: Any = None
    scope: RequestScope = field(default_factory=RequestScope)
    cookie: Optional[CookieInstruction] = None

    @property
    def secure_cookies(self) -> bool:
        """Decided by deployment settings and scheme; the Host header is never trusted here."""
        if self.development:
            return False
        return self.scheme == "https" or self.production

    def set_session_cookie(self, token: str, max_age: int) -> None:
        self.cookie = CookieInstruction(
            action="set", value=token, max_age=max_age, secure=self.secure_cookies
        )

    def clear_session_cookie(self) -> None:
        self.cookie = CookieInstruction(action="clear", secure=self.secure_cookies)

    def apply_cookie(self, response: Any) -> None:
        """Write the pending cookie change, if any, onto a Starlette response."""
        if self.cookie is None:
            return
        if self.cookie.action == "set":
            response.set_cookie(
                SESSION_COOKIE_NAME,
                self.cookie.value,
                max_age=self.cookie.max_age,
                path="/",
                secure=self.cookie.secure,
                httponly=True,
                samesite="lax",
            )
        else:
            response.delete_cookie(
                SESSION_COOKIE_NAME,
                path="/",
                secure=self.cookie.secure,
                httponly=True,
                samesite="lax",
            )
