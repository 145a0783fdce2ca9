"""
Croutons Graph Service - Health Check Router

- GET /healthz - Liveness probe: 200 "ok" while the process is up
- GET /readyz  - Readiness probe: 200 only if the database answers SELECT 1
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from croutons import __version__
from croutons.core.logging import get_logger
from croutons.db import check_db_ready, get_pool_health

READINESS_DB_TIMEOUT = 2.0

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    ready: bool
    database: str
    timestamp: str
    version: str
    pool_init_attempts: int


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> str:
    return "ok"


@router.get("/readyz", response_model=ReadinessResponse)
async def readyz() -> JSONResponse:
    """
    Readiness probe for load balancers.

    Returns 503 when the pool is missing or the ping fails or times out.
    """
    ready, status = await check_db_ready(timeout=READINESS_DB_TIMEOUT)
    body = ReadinessResponse(
        ready=ready,
        database=status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        pool_init_attempts=get_pool_health().init_attempts,
    )
    if not ready:
        logger.warning(f"Readiness check failed: {status}")
    return JSONResponse(status_code=200 if ready else 503, content=body.model_dump())
