from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aegisid.api.error_handling import register_exception_handlers
from aegisid.api.routes import router
from aegisid.config import get_settings
from aegisid.logging import bind_request, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and run the cleanup loop for the app's lifetime."""
    from aegisid.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.cleanup.start()
    yield
    try:
        await runtime.close()
        logger.info("runtime_shutdown_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="AegisID", version=__version__, lifespan=lifespan)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            expose_headers=["X-Request-ID", "Retry-After"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of the request with X-Request-ID and echo it back."""
        correlation_id = bind_request(
            request.headers.get("X-Request-ID"),
            client_ip=request.client.host if request.client else None,
            path=request.url.path,
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from aegisid.service.runtime import get_runtime

        runtime = get_runtime()
        try:
            db_ok = await asyncio.wait_for(
                asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            db_ok = False
        return {
            "status": "healthy" if db_ok else "unhealthy",
            "checks": {"database": {"status": "healthy" if db_ok else "unhealthy"}},
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app
