from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from deviceauth.api.error_handling import register_exception_handlers
from deviceauth.api.routes import router
from deviceauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store pool on shutdown."""
    from deviceauth.service.runtime import get_runtime

    get_runtime()
    logger.info("runtime_ready")

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Device Sessions", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Attach a correlation ID to each request.

    Taken from the client's X-Request-ID header when present, otherwise
    generated, and echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    # Shared through the ASGI scope with handlers that run outside this context
    request.state.request_id = correlation_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/"):
        # Token-bearing responses must never be cached by proxies
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


register_exception_handlers(app)
app.include_router(router)
