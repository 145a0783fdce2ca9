"""
Outbox repository: the store side of the drain protocol.

State machine:
    pending --claim--> processing --ack--> done
                       processing --nack/reap--> failed --retry_due--> pending
                       processing --nack/reap at max_attempts--> dead
    failed|dead --requeue (admin)--> pending, attempts reset

Every transition is a single UPDATE guarded by the current status (and by
claimed_by for ack/nack), so a late ack from a worker whose claim was reaped
changes nothing.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from croutons.core.errors import ERR_PERSISTENCE_FAILURE, PersistenceError
from croutons.core.logging import get_logger
from croutons.core.models import OutboxEvent, OutboxStatus

logger = get_logger(__name__)

ERROR_MAX_CHARS = 500


_CLAIM = """
    WITH next_events AS (
        SELECT id
        FROM outbox_events
        WHERE status = 'pending'
          AND available_at <= now()
          AND (%(event_types)s::text[] IS NULL OR event_type = ANY(%(event_types)s::text[]))
        ORDER BY id
        LIMIT %(batch_size)s
        FOR UPDATE SKIP LOCKED
    )
    UPDATE outbox_events e
    SET status = 'processing',
        claimed_by = %(worker_id)s,
        claimed_at = now()
    FROM next_events
    WHERE e.id = next_events.id
    RETURNING e.*
"""

_ACK = """
    UPDATE outbox_events
    SET status = 'done', error = NULL
    WHERE id = %(id)s AND status = 'processing' AND claimed_by = %(worker_id)s
    RETURNING id
"""

_NACK = """
    UPDATE outbox_events
    SET attempts = attempts + 1,
        error = %(error)s,
        status = CASE WHEN attempts + 1 >= %(max_attempts)s THEN 'dead' ELSE 'failed' END,
        available_at = now() + make_interval(secs => %(delay)s::double precision)
    WHERE id = %(id)s AND status = 'processing' AND claimed_by = %(worker_id)s
    RETURNING status, attempts
"""

_RETRY_DUE = """
    UPDATE outbox_events
    SET status = 'pending'
    WHERE status = 'failed'
      AND attempts < %(max_attempts)s
      AND available_at <= now()
"""

_REQUEUE = """
    UPDATE outbox_events
    SET status = 'pending',
        attempts = 0,
        error = NULL,
        claimed_by = NULL,
        claimed_at = NULL,
        available_at = now()
    WHERE status = ANY(%(statuses)s::text[])
      AND (%(ids)s::bigint[] IS NULL OR id = ANY(%(ids)s::bigint[]))
"""

_REAP_STUCK = """
    UPDATE outbox_events
    SET attempts = attempts + 1,
        error = 'processing timeout (claimed by ' || COALESCE(claimed_by, 'unknown') || ')',
        status = CASE WHEN attempts + 1 >= %(max_attempts)s THEN 'dead' ELSE 'failed' END,
        available_at = now()
    WHERE status = 'processing'
      AND claimed_at < now() - make_interval(secs => %(timeout)s::double precision)
    RETURNING id, status
"""

_STATUS_COUNTS = "SELECT status, count(*) AS n FROM outbox_events GROUP BY status"

_OLDEST_PENDING = """
    SELECT EXTRACT(EPOCH FROM now() - min(occurred_at))::float AS age
    FROM outbox_events
    WHERE status = 'pending'
"""


class OutboxRepository:
    """Claim/ack/nack and maintenance transitions over outbox_events."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            raise PersistenceError(
                f"outbox query failed: {type(exc).__name__}: {exc}",
                error_code=ERR_PERSISTENCE_FAILURE,
            ) from exc

    async def claim(
        self,
        worker_id: str,
        batch_size: int,
        event_types: Optional[Sequence[str]] = None,
    ) -> list[OutboxEvent]:
        """
        Lock and mark up to batch_size pending events as processing.

        Rows locked by another claimer are skipped, not waited on.
        Returned events are ordered by id.
        """
        params = {
            "worker_id": worker_id,
            "batch_size": batch_size,
            "event_types": list(event_types) if event_types else None,
        }
        async with self._connection() as conn:
            cur = await conn.execute(_CLAIM, params)
            rows = await cur.fetchall()

        events = [OutboxEvent.model_validate(row) for row in rows]
        events.sort(key=lambda e: e.id)
        return events

    async def ack(self, event_id: int, worker_id: str) -> bool:
        """Mark a claimed event done. False if the claim was lost."""
        async with self._connection() as conn:
            cur = await conn.execute(_ACK, {"id": event_id, "worker_id": worker_id})
            row = await cur.fetchone()
        return row is not None

    async def nack(
        self,
        event_id: int,
        worker_id: str,
        error: str,
        *,
        max_attempts: int,
        delay_seconds: float,
    ) -> Optional[OutboxStatus]:
        """
        Record a failed apply.

        Returns:
            FAILED or DEAD, or None if the claim was lost
        """
        params = {
            "id": event_id,
            "worker_id": worker_id,
            "error": error[:ERROR_MAX_CHARS],
            "max_attempts": max_attempts,
            "delay": float(delay_seconds),
        }
        async with self._connection() as conn:
            cur = await conn.execute(_NACK, params)
            row = await cur.fetchone()

        if row is None:
            return None
        return OutboxStatus(row["status"])

    async def retry_due(self, max_attempts: int) -> int:
        """Move failed events whose backoff elapsed back to pending. Attempts are kept."""
        async with self._connection() as conn:
            cur = await conn.execute(_RETRY_DUE, {"max_attempts": max_attempts})
            return cur.rowcount

    async def requeue(
        self,
        event_ids: Optional[Sequence[int]] = None,
        include_dead: bool = False,
    ) -> int:
        """Administrative reset of failed (and optionally dead) events."""
        statuses = [OutboxStatus.FAILED.value]
        if include_dead:
            statuses.append(OutboxStatus.DEAD.value)
        params = {
            "statuses": statuses,
            "ids": list(event_ids) if event_ids else None,
        }
        async with self._connection() as conn:
            cur = await conn.execute(_REQUEUE, params)
            count = cur.rowcount

        logger.info(f"Requeued {count} outbox events", extra={"count": count})
        return count

    async def reap_stuck(self, timeout_seconds: float, max_attempts: int) -> int:
        """Fail (or quarantine) events stuck in processing past the timeout."""
        params = {"timeout": float(timeout_seconds), "max_attempts": max_attempts}
        async with self._connection() as conn:
            cur = await conn.execute(_REAP_STUCK, params)
            rows = await cur.fetchall()

        for row in rows:
            if row["status"] == OutboxStatus.DEAD.value:
                logger.error(
                    f"Outbox event {row['id']} quarantined after processing timeout",
                    extra={"event_id": row["id"], "status": row["status"]},
                )
        if rows:
            logger.warning(f"Reaped {len(rows)} stuck outbox events", extra={"count": len(rows)})
        return len(rows)

    async def stats(self) -> dict[str, Any]:
        """Counts per status, total, and age of the oldest pending event in seconds."""
        counts: dict[str, Any] = {status.value: 0 for status in OutboxStatus}
        async with self._connection() as conn:
            cur = await conn.execute(_STATUS_COUNTS)
            for row in await cur.fetchall():
                counts[row["status"]] = int(row["n"])
            cur = await conn.execute(_OLDEST_PENDING)
            oldest = await cur.fetchone()

        counts["total"] = sum(counts[status.value] for status in OutboxStatus)
        age = oldest["age"] if oldest else None
        counts["oldest_pending_seconds"] = round(float(age), 3) if age is not None else None
        return counts

    async def list_events(
        self,
        status: Optional[OutboxStatus] = None,
        limit: int = 50,
    ) -> list[OutboxEvent]:
        """Most recent events first, optionally filtered by status."""
        query = "SELECT * FROM outbox_events"
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            query += " WHERE status = %(status)s"
            params["status"] = OutboxStatus(status).value
        query += " ORDER BY id DESC LIMIT %(limit)s"

        async with self._connection() as conn:
            cur = await conn.execute(query, params)
            rows = await cur.fetchall()
        return [OutboxEvent.model_validate(row) for row in rows]
