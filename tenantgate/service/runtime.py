from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Set, Union
from urllib.parse import urlparse, urlunparse

from tenantgate.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessControlPipeline
from tenantgate.service.auth import AuthService, build_password_service
from tenantgate.service.rate_limit import (
    FallbackRateLimitStore,
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
    StoreRateLimitStore,
)
from tenantgate.service.sessions import SessionManager, SessionPolicy
from tenantgate.service.tenant_routes import DatabaseBindings, TenantRouteResolver
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.postgres import PostgresStore
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_store(settings: Settings, dsn: str) -> Store:
    if settings.use_memory_store:
        return MemoryStore()
    return PostgresStore(dsn)


class Runtime:
    """Holds the process-wide service instances for the FastAPI app.

    Construction wires everything together; ``start()`` opens connection pools
    and ``close()`` releases them.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            rate_limit_backend=self.settings.rate_limit_backend.value,
        )

        try:
            self.store: Store = _build_store(self.settings, self.settings.database_url)
            dedicated: Dict[str, Store] = {
                name: _build_store(self.settings, dsn)
                for name, dsn in self.settings.tenant_db_bindings.items()
            }
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                dedicated_bindings=sorted(dedicated),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.bindings = DatabaseBindings(self.store, dedicated)

        self.cache: Optional[RedisCache] = None
        if self.settings.rate_limit_backend == RateLimitBackend.REDIS:
            self.cache = self._connect_redis()

        persisted: RateLimitStore = (
            RedisRateLimitStore(self.cache) if self.cache else StoreRateLimitStore(self.store)
        )
        self.rate_limit_store = FallbackRateLimitStore(persisted, MemoryRateLimitStore())
        self.rate_limiter = RateLimiter(
            self.rate_limit_store,
            retention_ms=self.settings.rate_limit_retention_hours * 60 * 60 * 1000,
            cleanup_interval_ms=self.settings.rate_limit_cleanup_interval_seconds * 1000,
        )

        self.passwords = build_password_service(self.settings)
        self.sessions = SessionManager(
            self.store,
            self.settings.session_secret,
            policy=SessionPolicy.from_settings(self.settings),
        )
        self.auth = AuthService(self.store, self.sessions, self.passwords, self.settings)
        self.tenant_routes = TenantRouteResolver(self.store, self.bindings)
        self.pipeline = AccessControlPipeline(
            self.settings, self.sessions, self.tenant_routes, self.rate_limiter
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            auth_configured=self.passwords is not None,
        )

    def _connect_redis(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "RATE_LIMIT_BACKEND=redis requires a reachable REDIS_URL; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to keep counters in the store."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; rate limits use the store.",
            mode=fallback_mode,
        )
        return None

    async def start(self) -> None:
        await self.store.open()
        for name in self.bindings.names():
            # Dedicated databases hold tenant data, not the auth tables
            await self.bindings.get(name).open(verify_schema=False)
        if self.passwords is not None:
            await self.passwords.warm_up_async()
        logger.info("runtime_started")

    async def close(self) -> None:
        for handle in self.bindings.dedicated():
            await handle.close()
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_pending_closes: Set[asyncio.Task] = set()


def _close_finished(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "runtime_cache_close_failed", error_type=type(exc).__name__, error=str(exc)
        )


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is None:
                asyncio.run(runtime.cache.close())
            else:
                task = loop.create_task(runtime.cache.close())
                _pending_closes.add(task)
                task.add_done_callback(_close_finished)
        runtime = Runtime(settings)
        return runtime
