from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from studyauth.api.error_handling import register_exception_handlers
from studyauth.api.routes import router
from studyauth.logging import get_logger, set_correlation_id
from studyauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API. A runtime passed in is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or Runtime()
        logger.info("app_started", owned_runtime=owned)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
                logger.info("runtime_cleanup_complete")

    app = FastAPI(title="StudyAuth", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    register_exception_handlers(app)
    app.include_router(router)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with the client's X-Request-ID, or a fresh id, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        store_ping = getattr(rt.store, "ping", None)
        if callable(store_ping):
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(store_ping), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                checks["store"] = {"status": "ok"}
            except Exception as exc:
                logger.error("health_check_store_failed", error_type=type(exc).__name__)
                checks["store"] = {"status": "error"}
        else:
            checks["store"] = {"status": "ok", "mode": "memory"}

        if rt.cache:
            try:
                await asyncio.wait_for(rt.cache.client.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
                checks["redis"] = {"status": "ok"}
            except Exception as exc:
                logger.error("health_check_redis_failed", error_type=type(exc).__name__)
                checks["redis"] = {"status": "error"}
        else:
            checks["redis"] = {"status": "disabled"}

        healthy = all(c["status"] != "error" for c in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app
