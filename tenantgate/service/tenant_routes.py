from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.context import RequestScope
from tenantgate.service.errors import (
    ServiceUnavailableError,
    TenantRouteError,
    ValidationError,
)
from tenantgate.storage.errors import MissingTableError
from tenantgate.storage.models import (
    ROUTE_MODE_CENTRAL_SHARED,
    ROUTE_MODES,
    STATUS_ACTIVE,
    ClientDatabaseRoute,
    normalize_status,
)

logger = get_logger(__name__)


class RouteStore(Protocol):
    async def get_client_route(self, client_id: str) -> Optional[ClientDatabaseRoute]: ...

    async def create_client_route_if_missing(self, route: ClientDatabaseRoute) -> None: ...


class DatabaseBindings:
    """The shared database handle plus any dedicated handles the deployment binds by name."""

    def __init__(self, central: Any, named: Optional[Dict[str, Any]] = None) -> None:
        self.central = central
        self._named: Dict[str, Any] = dict(named or {})

    def get(self, name: str) -> Optional[Any]:
        return self._named.get(name)

    def names(self) -> list[str]:
        return sorted(self._named)

    def dedicated(self) -> list[Any]:
        return list(self._named.values())


def _central_route(client_id: str) -> ClientDatabaseRoute:
    return ClientDatabaseRoute(client_id=client_id, route_mode=ROUTE_MODE_CENTRAL_SHARED)


def _normalize_route(client_id: str, route: ClientDatabaseRoute) -> ClientDatabaseRoute:
    mode = (route.route_mode or "").strip().lower()
    if mode not in ROUTE_MODES:
        raise TenantRouteError(
            "Tenant database routing is misconfigured.",
            error_code="TENANT_ROUTE_INVALID_MODE",
            detail={"client_id": client_id, "route_mode": route.route_mode},
        )
    return replace(
        route,
        client_id=client_id,
        route_mode=mode,
        binding_name=(route.binding_name or "").strip() or None,
        database_id=(route.database_id or "").strip() or None,
        status=normalize_status(route.status),
    )


class TenantRouteResolver:
    """Maps a tenant to the database it lives in.

    Lookups are memoized in the caller's ``RequestScope`` only; nothing is
    cached across requests, so provisioning changes apply on the next request.
    """

    def __init__(self, store: RouteStore, bindings: DatabaseBindings) -> None:
        self.store = store
        self.bindings = bindings
        self._missing_table_logged = False
        self._log_lock = threading.Lock()

    def _log_missing_table(self, client_id: str) -> None:
        with self._log_lock:
            first = not self._missing_table_logged
            self._missing_table_logged = True
        if first:
            logger.warning(
                "client_database_routes_table_missing",
                client_id=client_id,
                message="Serving tenants from the central database until the routing table exists",
            )

    async def resolve(self, scope: RequestScope, client_id: Optional[str]) -> ClientDatabaseRoute:
        trimmed = (client_id or "").strip()
        if not trimmed:
            raise ValidationError(
                "Tenant database route requires a client ID.",
                error_code="TENANT_ROUTE_CLIENT_REQUIRED",
            )
        cached = scope.routes.get(trimmed)
        if cached is not None:
            return cached

        try:
            route = await self.store.get_client_route(trimmed)
            if route is None:
                await self.store.create_client_route_if_missing(_central_route(trimmed))
                route = await self.store.get_client_route(trimmed)
        except MissingTableError:
            self._log_missing_table(trimmed)
            fallback = _central_route(trimmed)
            scope.routes[trimmed] = fallback
            return fallback

        resolved = _normalize_route(trimmed, route) if route else _central_route(trimmed)
        if resolved.status != STATUS_ACTIVE:
            raise ServiceUnavailableError(
                "This organization's data is temporarily unavailable.",
                error_code="TENANT_ROUTE_INACTIVE",
                detail={"client_id": trimmed, "status": resolved.status},
            )
        scope.routes[trimmed] = resolved
        return resolved

    async def get_database_handle(self, scope: RequestScope, client_id: Optional[str]) -> Any:
        trimmed = (client_id or "").strip()
        cached = scope.handles.get(trimmed)
        if cached is not None:
            return cached

        route = await self.resolve(scope, trimmed)
        if route.route_mode == ROUTE_MODE_CENTRAL_SHARED:
            handle = self.bindings.central
        else:
            handle = self._dedicated_handle(route)
        scope.handles[trimmed] = handle
        return handle

    def _dedicated_handle(self, route: ClientDatabaseRoute) -> Any:
        if not route.binding_name:
            raise TenantRouteError(
                "Tenant database routing is misconfigured.",
                error_code="TENANT_ROUTE_BINDING_REQUIRED",
                detail={"client_id": route.client_id},
            )
        handle = self.bindings.get(route.binding_name)
        if handle is None:
            raise TenantRouteError(
                "Tenant database routing is misconfigured.",
                error_code="TENANT_DB_BINDING_NOT_FOUND",
                detail={"client_id": route.client_id, "binding_name": route.binding_name},
            )
        return handle
