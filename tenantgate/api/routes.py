from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from tenantgate.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    JoinClientRequest,
    LoginRequest,
    RegisterRequest,
    SwitchClientRequest,
)
from tenantgate.service.context import AuthIdentity, RequestContext
from tenantgate.service.errors import AuthenticationError, ServerError
from tenantgate.service.runtime import get_runtime

router = APIRouter(prefix="/api")


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        raise ServerError("Request context is unavailable.")
    return ctx


def get_identity(ctx: RequestContext = Depends(get_request_context)) -> AuthIdentity:
    if ctx.identity is None:
        raise AuthenticationError("Authentication is required.")
    return ctx.identity


def _auth_payload(identity: AuthIdentity) -> dict:
    return {"user": identity.user, "session": identity.session}


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(get_request_context)):
    """Authenticate with email and password and issue the session cookie.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive or has no active organization
    """
    runtime = get_runtime()
    identity = await runtime.auth.login(ctx, body.email, body.password)
    return Envelope(data=_auth_payload(identity))


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, ctx: RequestContext = Depends(get_request_context)):
    """Create an admin account in the default organization, gated by the invite key."""
    runtime = get_runtime()
    identity = await runtime.auth.register(
        ctx,
        email=body.email,
        password=body.password,
        invite_key=body.invite_key,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(data=_auth_payload(identity))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx)
    return Envelope(data={"loggedOut": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    ctx: RequestContext = Depends(get_request_context),
    identity: AuthIdentity = Depends(get_identity),
):
    """Sign out of every session on every device and organization."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_everywhere(ctx, identity)
    return Envelope(data={"loggedOut": True, "revokedSessions": revoked})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session(identity: AuthIdentity = Depends(get_identity)):
    runtime = get_runtime()
    return Envelope(data=await runtime.auth.session_summary(identity))


@router.post("/auth/switch-client", response_model=Envelope, tags=["auth"])
async def switch_client(
    body: SwitchClientRequest,
    ctx: RequestContext = Depends(get_request_context),
    identity: AuthIdentity = Depends(get_identity),
):
    runtime = get_runtime()
    switched = await runtime.sessions.switch_tenant(ctx, identity, body.client_id)
    return Envelope(data=_auth_payload(switched))


@router.post("/auth/join-client", response_model=Envelope, tags=["auth"])
async def join_client(
    body: JoinClientRequest,
    ctx: RequestContext = Depends(get_request_context),
    identity: AuthIdentity = Depends(get_identity),
):
    runtime = get_runtime()
    joined = await runtime.auth.join_client(
        ctx, identity, client_id=body.client_id, client_slug=body.client_slug
    )
    return Envelope(data=joined)


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    ctx: RequestContext = Depends(get_request_context),
    identity: AuthIdentity = Depends(get_identity),
):
    """Change the password and sign out every other session in this organization."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        ctx, identity, body.current_password, body.new_password
    )
    return Envelope(data={"passwordChanged": True, "revokedSessions": revoked})


@router.get("/tenant/route", response_model=Envelope, tags=["tenant"])
async def tenant_route(
    ctx: RequestContext = Depends(get_request_context),
    identity: AuthIdentity = Depends(get_identity),
):
    route = ctx.tenant_route
    if route is None:
        route = await get_runtime().tenant_routes.resolve(ctx.scope, identity.client_id)
    return Envelope(
        data={
            "clientId": route.client_id,
            "routeMode": route.route_mode,
            "bindingName": route.binding_name,
            "databaseId": route.database_id,
            "status": route.status,
        }
    )
