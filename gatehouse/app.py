from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gatehouse.api.cookies import CookiePolicy
from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.config import Settings
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    await runtime.startup()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.shutdown()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _health_check(label: str, coro) -> bool:
    try:
        return bool(await asyncio.wait_for(coro, HEALTH_CHECK_TIMEOUT_SECONDS))
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


def create_app(
    settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application; run with ``uvicorn gatehouse.app:create_app --factory``."""
    if runtime is None:
        runtime = Runtime(settings or Settings.from_env())
    settings = runtime.settings

    app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.cookie_policy = CookiePolicy(settings)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    # Registered last so it runs first and the id covers every log line
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with X-Request-ID, taken from the client or generated."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Any:
        checks: Dict[str, Dict[str, Any]] = {}
        db_ok = await _health_check("database", runtime.store.ping())
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
        redis_ok = await _health_check("redis", runtime.cache.ping())
        checks["redis"] = {
            "status": "healthy" if redis_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        }
        healthy = db_ok and redis_ok
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
            },
        )

    logger.info("app_created", environment=settings.environment.value)
    return app
