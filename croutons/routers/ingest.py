"""
Croutons Graph Service - Ingestion Router

POST /import accepts a raw NDJSON body signed with X-Signature. The body is
read as bytes and never re-serialized before verification.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from croutons.config import Settings, get_settings
from croutons.core.errors import ERR_BODY_TOO_LARGE, BatchValidationError
from croutons.core.models import IngestResult
from croutons.db import get_pool
from croutons.ingest.coordinator import IngestionCoordinator
from croutons.store.facts import PostgresFactStore

router = APIRouter(tags=["Ingest"])


def get_coordinator(settings: Settings = Depends(get_settings)) -> IngestionCoordinator:
    """Coordinator bound to the process-wide pool."""
    return IngestionCoordinator(PostgresFactStore(get_pool()), settings)


def _check_content_length(request: Request, limit: int) -> None:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise BatchValidationError(
            f"body of {declared} bytes exceeds limit of {limit}",
            error_code=ERR_BODY_TOO_LARGE,
        )


@router.post(
    "/import",
    response_model=IngestResult,
    response_model_exclude_none=True,
)
async def import_batch(
    request: Request,
    upsert: bool = Query(default=False, description="Update rows addressed by natural_id"),
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> IngestResult:
    """
    Ingest one NDJSON batch atomically.

    Responds {accepted, skipped, total, updated, triples_inserted}, plus
    rejected under the lenient batch policy.
    """
    _check_content_length(request, coordinator.settings.MAX_BODY_BYTES)
    raw_body = await request.body()
    return await coordinator.ingest(raw_body, x_signature, upsert=upsert)
