"""
Croutons Graph Service - FastAPI Application

Run with:
    uvicorn croutons.main:app --host 0.0.0.0 --port 8080
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from croutons import __version__
from croutons.config import Settings, configure_logging, get_settings
from croutons.core.errors import CroutonsError
from croutons.core.logging import get_logger
from croutons.db import close_db_pool, init_db_pool
from croutons.routers.health import router as health_router
from croutons.routers.ingest import router as ingest_router
from croutons.routers.outbox import router as outbox_router

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory.

    Startup halts when the database is unreachable: the lifespan re-raises
    the PersistenceError from init_db_pool() and the server never accepts
    traffic.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        active = settings or get_settings()
        configure_logging(active)
        logger.info(f"Starting Croutons Graph Service v{__version__} ({active.ENVIRONMENT})")

        try:
            await init_db_pool(active)
        except CroutonsError as e:
            logger.critical(f"Startup halted: {e.detail}", extra={"error_code": e.slug})
            raise

        yield

        logger.info("Shutting down Croutons Graph Service")
        await close_db_pool()

    app = FastAPI(
        title="Croutons Graph Service",
        description="Signed NDJSON ingestion of facts and triples with a transactional outbox.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(CroutonsError)
    async def croutons_error_handler(request: Request, exc: CroutonsError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(
                f"{exc.error_code.code} on {request.method} {request.url.path}: {exc.detail}",
                extra={"error_code": exc.slug},
            )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "http_error", "message": str(exc.detail)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_request", "message": str(exc.errors())[:500]},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    app.include_router(health_router)
    app.include_router(ingest_router)
    app.include_router(outbox_router)

    return app


app = create_app()
