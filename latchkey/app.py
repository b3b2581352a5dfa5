from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from latchkey.api.error_handling import register_exception_handlers
from latchkey.api.routes import router
from latchkey.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup and close it on shutdown."""
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    logger.info("app_started", providers=runtime.auth.provider_types)

    yield

    try:
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Latchkey", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request's logs with X-Request-ID (or a fresh UUID) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
