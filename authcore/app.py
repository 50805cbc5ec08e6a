from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweeper on startup and stop it on shutdown."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("authcore_started", version=__version__)
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Propagate X-Request-ID into the logging context and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    store_status = "ok"
    verify = getattr(runtime.store, "verify_connection", None)
    if verify is not None:
        try:
            verify()
        except Exception as exc:
            logger.error("health_store_check_failed", error=str(exc))
            store_status = "error"
    return {
        "status": "healthy" if store_status == "ok" else "degraded",
        "version": __version__,
        "store": store_status,
        "active_sessions": runtime.sessions.active_count(),
    }
