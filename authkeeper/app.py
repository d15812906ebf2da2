from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authkeeper.api.error_handling import register_exception_handlers
from authkeeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    await runtime.store.close()
    logger.info("runtime_cleanup_complete")


def create_app() -> FastAPI:
    """Application shell for services that mount authkeeper.

    Callers add their own routers and protect them with
    ``Depends(get_auth_context)``.
    """
    app = FastAPI(title="authkeeper", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health() -> JSONResponse:
        from authkeeper.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Any] = {}
        try:
            store_ok = await asyncio.wait_for(
                runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_store_failed", error_type=type(exc).__name__)
            store_ok = False
        checks["session_store"] = {"status": "healthy" if store_ok else "unhealthy"}
        status = "healthy" if store_ok else "unhealthy"
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content={"status": status, "version": __version__, "checks": checks},
        )

    return app
