"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from drip_engine.errors import (
    AccessDenied,
    Conflict,
    DependencyUnavailable,
    DripEngineError,
    NotFound,
    ValidationFailure,
)
from drip_engine.routers import participants, sequences, webhooks

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    NotFound: 404,
    AccessDenied: 403,
    Conflict: 409,
    ValidationFailure: 422,
    DependencyUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    try:
        from drip_engine.scheduler import scheduler
        scheduler.start()
        logger.info("Scheduler started: purging expired events")
    except Exception as e:
        logger.warning("Scheduler failed to start: %s", e)

    yield

    from drip_engine.scheduler import scheduler
    if scheduler.running:
        scheduler.shutdown(wait=False)


async def engine_error_handler(request: Request, exc: DripEngineError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    app = FastAPI(
        title="Drip Engine",
        description=(
            "Drip-content progression and attribution engine: gated funnel "
            "steps and challenge days, streaks and points, and conversion analytics."
        ),
        version="1.0.0",
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )

    app.add_exception_handler(DripEngineError, engine_error_handler)

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    for r in [sequences, participants]:
        app.include_router(r.router)

    # Webhooks (event ingestion) are hidden from API docs
    app.include_router(webhooks.router, include_in_schema=False)

    return app
