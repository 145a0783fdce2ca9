"""
Fact and triple writes.

The ingestion coordinator opens one FactStore.transaction() per batch and
proposes writes through the yielded unit. Conflicts are outcomes, not
errors: a fact whose content_hash (or natural_id) already exists comes back
as WriteOutcome.SKIPPED, and a duplicate triple returns False.

The unit never touches outbox_events; the capture triggers do.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

import psycopg
import psycopg.errors
from psycopg import AsyncConnection
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from croutons.core.errors import ERR_PERSISTENCE_FAILURE, PersistenceError
from croutons.core.logging import get_logger
from croutons.core.models import TripleRecord, WriteOutcome
from croutons.ingest.parser import ParsedLine

logger = get_logger(__name__)


@dataclass(frozen=True)
class FactWrite:
    """Outcome of one proposed fact write."""

    outcome: WriteOutcome
    fact_id: Optional[str]


class FactUnit(Protocol):
    """Writes available inside one batch transaction."""

    async def insert_fact(self, parsed: ParsedLine) -> FactWrite: ...

    async def upsert_fact(self, parsed: ParsedLine) -> FactWrite: ...

    async def insert_triple(self, triple: TripleRecord, evidence_fact_id: Optional[str]) -> bool: ...


class FactStore(Protocol):
    """Opens batch transactions."""

    def transaction(self) -> AbstractAsyncContextManager[FactUnit]: ...


# =============================================================================
# SQL
# =============================================================================

_INSERT_FACT = """
    INSERT INTO facts (
        natural_id, source_url, content_hash, corpus_id, text,
        triple, confidence, verified_at
    )
    VALUES (
        %(natural_id)s, %(source_url)s, %(content_hash)s, %(corpus_id)s, %(text)s,
        %(triple)s, %(confidence)s, COALESCE(%(verified_at)s::timestamptz, now())
    )
    ON CONFLICT DO NOTHING
    RETURNING id
"""

_UPSERT_FACT_BY_NATURAL_ID = """
    INSERT INTO facts (
        natural_id, source_url, content_hash, corpus_id, text,
        triple, confidence, verified_at
    )
    VALUES (
        %(natural_id)s, %(source_url)s, %(content_hash)s, %(corpus_id)s, %(text)s,
        %(triple)s, %(confidence)s, COALESCE(%(verified_at)s::timestamptz, now())
    )
    ON CONFLICT (natural_id) DO UPDATE SET
        source_url = EXCLUDED.source_url,
        content_hash = EXCLUDED.content_hash,
        corpus_id = EXCLUDED.corpus_id,
        text = EXCLUDED.text,
        triple = EXCLUDED.triple,
        confidence = EXCLUDED.confidence,
        verified_at = EXCLUDED.verified_at,
        updated_at = now()
    RETURNING id, (xmax = 0) AS inserted
"""

_FIND_EXISTING_FACT = """
    SELECT id FROM facts WHERE content_hash = %(content_hash)s
    UNION ALL
    SELECT id FROM facts WHERE natural_id = %(natural_id)s
    LIMIT 1
"""

_FIND_FACT_BY_HASH = "SELECT id FROM facts WHERE content_hash = %(content_hash)s"

_INSERT_TRIPLE = """
    INSERT INTO triples (subject, predicate, object, evidence_fact_id)
    VALUES (%(subject)s, %(predicate)s, %(object)s, %(evidence_fact_id)s::uuid)
    ON CONFLICT (subject, predicate, object) DO NOTHING
    RETURNING id
"""


def fact_params(parsed: ParsedLine) -> dict:
    """Bind parameters for the fact INSERT statements."""
    record = parsed.record
    return {
        "natural_id": record.natural_id,
        "source_url": record.source_url,
        "content_hash": parsed.content_hash,
        "corpus_id": record.corpus_id,
        "text": record.text,
        "triple": Jsonb(record.triple) if record.triple is not None else None,
        "confidence": record.confidence,
        "verified_at": record.verified_at,
    }


# =============================================================================
# Postgres implementation
# =============================================================================


class PostgresFactUnit:
    """FactUnit bound to one open transaction."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def _fetch_id(self, query: str, params: dict) -> Optional[str]:
        cur = await self.conn.execute(query, params)
        row = await cur.fetchone()
        return str(row["id"]) if row else None

    async def insert_fact(self, parsed: ParsedLine) -> FactWrite:
        params = fact_params(parsed)
        inserted_id = await self._fetch_id(_INSERT_FACT, params)
        if inserted_id is not None:
            return FactWrite(WriteOutcome.INSERTED, inserted_id)

        existing_id = await self._fetch_id(_FIND_EXISTING_FACT, params)
        return FactWrite(WriteOutcome.SKIPPED, existing_id)

    async def upsert_fact(self, parsed: ParsedLine) -> FactWrite:
        if parsed.record.natural_id is None:
            return await self.insert_fact(parsed)

        params = fact_params(parsed)
        existing_id = await self._fetch_id(_FIND_FACT_BY_HASH, params)
        if existing_id is not None:
            return FactWrite(WriteOutcome.SKIPPED, existing_id)

        try:
            async with self.conn.transaction():
                cur = await self.conn.execute(_UPSERT_FACT_BY_NATURAL_ID, params)
                row = await cur.fetchone()
        except psycopg.errors.UniqueViolation:
            # A concurrent batch committed the same content_hash first
            return FactWrite(WriteOutcome.SKIPPED, await self._fetch_id(_FIND_FACT_BY_HASH, params))

        outcome = WriteOutcome.INSERTED if row["inserted"] else WriteOutcome.UPDATED
        return FactWrite(outcome, str(row["id"]))

    async def insert_triple(self, triple: TripleRecord, evidence_fact_id: Optional[str]) -> bool:
        cur = await self.conn.execute(
            _INSERT_TRIPLE,
            {
                "subject": triple.subject,
                "predicate": triple.predicate,
                "object": triple.object,
                "evidence_fact_id": evidence_fact_id,
            },
        )
        return await cur.fetchone() is not None


class PostgresFactStore:
    """
    FactStore over an AsyncConnectionPool.

    Usage:
        async with store.transaction() as unit:
            write = await unit.insert_fact(parsed)
        # committed here; any exception rolls the whole batch back
    """

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresFactUnit]:
        try:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    yield PostgresFactUnit(conn)
        except psycopg.Error as exc:
            logger.error(f"Batch transaction rolled back: {type(exc).__name__}: {exc}")
            raise PersistenceError(
                f"{ERR_PERSISTENCE_FAILURE.message} ({type(exc).__name__})",
                error_code=ERR_PERSISTENCE_FAILURE,
            ) from exc
