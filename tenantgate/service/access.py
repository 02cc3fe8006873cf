from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from tenantgate.config import AppEnv, Settings
from tenantgate.logging import get_logger, set_request_id
from tenantgate.service.context import SESSION_COOKIE_NAME, AuthIdentity, RequestContext
from tenantgate.service.errors import RateLimitedError, ServiceError
from tenantgate.service.rate_limit import (
    LOGIN_RATE_LIMIT,
    REGISTER_RATE_LIMIT,
    RateLimitDecision,
    RateLimiter,
    resolve_rate_limit_rule,
)
from tenantgate.service.rbac import DASHBOARD_ALLOWED_ROLES, has_any_role
from tenantgate.service.sessions import SessionManager
from tenantgate.service.tenant_routes import TenantRouteResolver

logger = get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

API_CONTENT_SECURITY_POLICY = (
    "default-src 'none'; frame-ancestors 'none'; base-uri 'none'; form-action 'none'"
)
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

POLICY_PUBLIC = "public"
POLICY_AUTHENTICATED = "authenticated"
POLICY_ROLE = "role"


@dataclass(frozen=True)
class ApiPolicy:
    kind: str
    roles: frozenset = frozenset()
    # Reads or writes tenant data, so the tenant database must be routable
    tenant_data: bool = False

    @property
    def public(self) -> bool:
        return self.kind == POLICY_PUBLIC


_PUBLIC = ApiPolicy(POLICY_PUBLIC)
_AUTHENTICATED = ApiPolicy(POLICY_AUTHENTICATED)
_DASHBOARD = ApiPolicy(POLICY_ROLE, DASHBOARD_ALLOWED_ROLES, tenant_data=True)

# Anything under /api that is not listed here is refused
API_ROUTE_POLICIES: List[Tuple[re.Pattern, ApiPolicy]] = [
    (re.compile(r"^/api/auth/login$"), _PUBLIC),
    (re.compile(r"^/api/auth/register$"), _PUBLIC),
    (re.compile(r"^/api/auth/logout$"), _AUTHENTICATED),
    (re.compile(r"^/api/auth/logout-all$"), _AUTHENTICATED),
    (re.compile(r"^/api/auth/session$"), _AUTHENTICATED),
    (re.compile(r"^/api/auth/switch-client$"), _AUTHENTICATED),
    (re.compile(r"^/api/auth/join-client$"), _AUTHENTICATED),
    (re.compile(r"^/api/auth/password$"), _AUTHENTICATED),
    (re.compile(r"^/api/address-suggest$"), _DASHBOARD),
    (re.compile(r"^/api/themes$"), _DASHBOARD),
    (re.compile(r"^/api/themes/current$"), _DASHBOARD),
    (re.compile(r"^/api/themes/[^/]+$"), _DASHBOARD),
    (re.compile(r"^/api/intramural-sports/offerings$"), _DASHBOARD),
    (re.compile(r"^/api/tenant/route$"), _DASHBOARD),
]

_ACCOUNT_KEYED_RULES = frozenset({LOGIN_RATE_LIMIT.name, REGISTER_RATE_LIMIT.name})


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


def resolve_api_policy(path: str) -> Optional[ApiPolicy]:
    for pattern, policy in API_ROUTE_POLICIES:
        if pattern.match(path):
            return policy
    return None


def get_client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Peer address, or the forwarded client when the peer is a trusted proxy."""
    peer = request.client.host if request.client else None
    if peer and peer in set(trusted_proxies):
        forwarded = request.headers.get("cf-connecting-ip", "").strip()
        if not forwarded:
            forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return peer or "unknown"


def serving_origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


def reject_cross_origin(request: Request) -> bool:
    """True for a mutating request whose Origin is missing or foreign."""
    if request.method.upper() not in MUTATING_METHODS:
        return False
    origin = (request.headers.get("origin") or "").strip().rstrip("/")
    if not origin or origin == "null":
        return True
    return origin.lower() != serving_origin(request).lower()


def error_envelope(message: str, code: str, request_id: Optional[str]) -> Dict[str, Any]:
    return {"success": False, "error": message, "code": code, "requestId": request_id}


def error_response(
    status_code: int,
    message: str,
    code: str,
    request_id: Optional[str],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=error_envelope(message, code, request_id),
        headers=headers,
    )
    response.headers["Cache-Control"] = "no-store"
    return response


def apply_security_headers(
    response: Response, *, request_id: str, api: bool, hsts: bool
) -> None:
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    if hsts:
        response.headers["Strict-Transport-Security"] = HSTS_VALUE
    if api:
        response.headers.setdefault("Content-Security-Policy", API_CONTENT_SECURITY_POLICY)
        response.headers.setdefault("Cache-Control", "no-store")


async def read_account_identifier(request: Request) -> Optional[str]:
    """The ``email`` field of a JSON body, if there is one."""
    if "json" not in request.headers.get("content-type", "").lower():
        return None
    try:
        payload = await request.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    email = payload.get("email")
    if not isinstance(email, str) or not email.strip():
        return None
    return email.strip().lower()


class AccessControlPipeline:
    """Decides, per request, who is calling, in which tenant, and whether to admit them.

    The order is fixed: request id, session hydration, origin check, route
    policy, authentication and role checks, tenant routing for routes that
    touch tenant data, rate limiting, then dispatch. Every response leaves with the security headers and any
    pending session cookie change.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        tenant_routes: TenantRouteResolver,
        rate_limiter: RateLimiter,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.tenant_routes = tenant_routes
        self.rate_limiter = rate_limiter

    @property
    def hsts_enabled(self) -> bool:
        return self.settings.enable_hsts and not self.settings.is_development

    def build_context(self, request: Request) -> RequestContext:
        request_id = set_request_id(request.headers.get("x-request-id"))
        return RequestContext(
            request_id=request_id,
            client_ip=get_client_ip(request, self.settings.trusted_proxy_ips),
            user_agent=request.headers.get("user-agent"),
            hostname=request.url.hostname or "",
            scheme=request.url.scheme,
            development=self.settings.is_development,
            production=self.settings.app_env == AppEnv.PRODUCTION,
        )

    async def authenticate(
        self, ctx: RequestContext, request: Request
    ) -> Optional[AuthIdentity]:
        """Resolve the session cookie into an identity; failures leave the caller anonymous."""
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            return None
        try:
            return await self.sessions.resolve(ctx, token)
        except Exception as exc:
            logger.error(
                "session_hydration_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            ctx.identity = None
            ctx.hydration_error = exc
            ctx.clear_session_cookie()
            return None

    async def attach_tenant(self, ctx: RequestContext) -> None:
        if ctx.identity is None:
            return
        client_id = ctx.identity.client_id
        ctx.tenant_route = await self.tenant_routes.resolve(ctx.scope, client_id)
        ctx.tenant_handle = await self.tenant_routes.get_database_handle(ctx.scope, client_id)

    async def check_rate_limit(
        self, ctx: RequestContext, request: Request
    ) -> Optional[RateLimitDecision]:
        path = request.url.path
        rule = resolve_rate_limit_rule(path)
        if rule is None:
            return None
        account: Optional[str] = None
        if rule.name in _ACCOUNT_KEYED_RULES:
            account = await read_account_identifier(request)
        elif ctx.identity is not None:
            account = ctx.identity.email
        return await self.rate_limiter.check(
            rule, ip=ctx.client_ip, path=path, method=request.method, account=account
        )

    def _finish(self, ctx: RequestContext, request: Request, response: Response) -> Response:
        ctx.apply_cookie(response)
        apply_security_headers(
            response,
            request_id=ctx.request_id,
            api=is_api_path(request.url.path),
            hsts=self.hsts_enabled,
        )
        return response

    def _reject(
        self,
        ctx: RequestContext,
        request: Request,
        status_code: int,
        message: str,
        code: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Response:
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=code,
        )
        response = error_response(status_code, message, code, ctx.request_id, headers)
        return self._finish(ctx, request, response)

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        ctx = self.build_context(request)
        request.state.ctx = ctx
        path = request.url.path
        policy: Optional[ApiPolicy] = None

        await self.authenticate(ctx, request)

        if reject_cross_origin(request):
            return self._reject(
                ctx, request, 403, "Invalid request origin.", "CSRF_INVALID_ORIGIN"
            )

        if is_api_path(path):
            policy = resolve_api_policy(path)
            if policy is None:
                return self._reject(
                    ctx, request, 403, "This API endpoint is not available.", "API_FORBIDDEN"
                )
            if not policy.public:
                if ctx.hydration_error is not None:
                    return self._reject(
                        ctx,
                        request,
                        500,
                        "Authentication is temporarily unavailable.",
                        "AUTH_UNAVAILABLE",
                    )
                if ctx.identity is None:
                    return self._reject(
                        ctx, request, 401, "Authentication is required.", "AUTH_REQUIRED"
                    )
                if policy.roles and not has_any_role(ctx.identity.role, policy.roles):
                    return self._reject(
                        ctx,
                        request,
                        403,
                        "You do not have permission to access this resource.",
                        "AUTH_FORBIDDEN",
                    )

        try:
            if policy is not None and policy.tenant_data:
                await self.attach_tenant(ctx)
            decision = await self.check_rate_limit(ctx, request)
        except ServiceError as exc:
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "service_error",
                path=path,
                method=request.method,
                status_code=exc.status_code,
                error_code=exc.error_code,
                message=exc.message,
                detail=exc.detail,
            )
            response = error_response(
                exc.status_code, exc.message, exc.error_code, ctx.request_id, exc.headers
            )
            return self._finish(ctx, request, response)

        if decision is not None and not decision.allowed:
            limited = RateLimitedError(decision.retry_after_seconds)
            return self._reject(
                ctx, request, 429, limited.message, limited.error_code, limited.headers
            )

        response = await call_next(request)
        return self._finish(ctx, request, response)
