"""
Croutons Graph Service - Outbox Admin Router

Inspection and requeue of outbox events. Every route requires X-API-Key
equal to ADMIN_API_KEY; with no key configured the routes answer 503.
"""

import secrets
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel

from croutons.config import Settings, get_settings
from croutons.core.errors import ERR_ADMIN_DISABLED, ERR_ADMIN_KEY_INVALID, AuthenticationError
from croutons.core.logging import get_logger
from croutons.core.models import OutboxEvent, OutboxStatus
from croutons.db import get_pool
from croutons.store.outbox import OutboxRepository

logger = get_logger(__name__)


def require_admin_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Fail closed: no configured key disables the routes."""
    configured = settings.ADMIN_API_KEY
    if not configured:
        raise AuthenticationError(error_code=ERR_ADMIN_DISABLED)
    if not x_api_key or not secrets.compare_digest(x_api_key, configured):
        logger.warning("Rejected admin request: bad X-API-Key")
        raise AuthenticationError(error_code=ERR_ADMIN_KEY_INVALID)


def get_outbox_repository() -> OutboxRepository:
    return OutboxRepository(get_pool())


router = APIRouter(
    prefix="/v1/outbox",
    tags=["Outbox"],
    dependencies=[Depends(require_admin_key)],
)


class RequeueRequest(BaseModel):
    """Body of POST /v1/outbox/requeue. No ids means every failed event."""

    event_ids: Optional[List[int]] = None
    include_dead: bool = False


class RequeueResponse(BaseModel):
    requeued: int


class EventListResponse(BaseModel):
    events: List[OutboxEvent]
    count: int


@router.get("/stats")
async def outbox_stats(
    repository: OutboxRepository = Depends(get_outbox_repository),
) -> dict[str, Any]:
    """Counts per status and age of the oldest pending event."""
    return await repository.stats()


@router.get("/events", response_model=EventListResponse)
async def list_outbox_events(
    status: Optional[OutboxStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    repository: OutboxRepository = Depends(get_outbox_repository),
) -> EventListResponse:
    events = await repository.list_events(status=status, limit=limit)
    return EventListResponse(events=events, count=len(events))


@router.post("/requeue", response_model=RequeueResponse)
async def requeue_outbox_events(
    request: RequeueRequest,
    repository: OutboxRepository = Depends(get_outbox_repository),
) -> RequeueResponse:
    """Reset failed (and optionally dead) events to pending with attempts=0."""
    count = await repository.requeue(request.event_ids, include_dead=request.include_dead)
    return RequeueResponse(requeued=count)
