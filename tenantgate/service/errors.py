from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` returned to clients in the ``code`` field. The message is
    client-facing; anything operator-only belongs in ``detail``, which is logged
    and never rendered.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "AUTH_REQUIRED"


class InvalidCredentialsError(AuthenticationError):
    """Wrong email or password; one message for both."""
    error_code = "AUTH_INVALID_CREDENTIALS"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__("Invalid email or password.", detail=detail)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "AUTH_FORBIDDEN"


class AccountInactiveError(ForbiddenError):
    error_code = "AUTH_ACCOUNT_INACTIVE"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__("This account is inactive.", detail=detail)


class AccountUnassignedError(ForbiddenError):
    """The user has no active organization membership."""
    error_code = "AUTH_ACCOUNT_UNASSIGNED"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            "This account is not assigned to an active organization.", detail=detail
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            "Too many requests. Please try again later.",
            detail=detail,
            headers={"Retry-After": str(retry_after_seconds)},
        )
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ConfigMissingError(ServerError):
    """A required secret is absent. Never names which one."""
    error_code = "AUTH_CONFIG_MISSING"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__("Authentication is not configured.", detail=detail)


class TenantRouteError(ServerError):
    """Tenant data-plane misconfiguration; operator-facing."""
    error_code = "TENANT_ROUTE_ERROR"


class ServiceUnavailableError(ServiceError):
    """Dependency intentionally offline (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "AccountInactiveError",
    "AccountUnassignedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigMissingError",
    "TenantRouteError",
    "ServiceUnavailableError",
]
