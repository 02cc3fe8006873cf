from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantgate.api.error_handling import register_exception_handlers
from tenantgate.api.routes import router
from tenantgate.logging import get_logger
from tenantgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the runtime's pools on startup and release them on shutdown."""
    runtime = get_runtime()
    await runtime.start()
    try:
        yield
    finally:
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


async def _run_bounded(label: str, probe: Callable[[], Awaitable[Any]]) -> bool:
    try:
        await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


async def health() -> JSONResponse:
    """Probe the store and the rate-limit backend."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "ok" if db_ok else "error"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping)
        checks["redis"] = {"status": "ok" if redis_ok else "error"}

    checks["rate_limit"] = {
        "status": "degraded" if runtime.rate_limit_store.degraded else "ok"
    }

    healthy = all(check["status"] == "ok" for check in checks.values())
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )


def create_app() -> FastAPI:
    app = FastAPI(title="tenantgate", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def access_control(request: Request, call_next):
        return await get_runtime().pipeline.dispatch(request, call_next)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
