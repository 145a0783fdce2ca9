"""
Table layout and constraints.

Uniqueness is enforced by the store, not by application checks:
- facts.content_hash   unique (NULLs allowed, never equal)
- facts.natural_id     unique (NULLs allowed)
- triples (subject, predicate, object) unique

outbox_events is the wire contract with drain consumers. Changing its
columns is a breaking protocol change.

apply_schema() is idempotent and safe to run on every deploy.
"""

from __future__ import annotations

from psycopg import AsyncConnection

from croutons.core.logging import get_logger
from croutons.store.capture import CAPTURE_RULES, render_capture_sql

logger = get_logger(__name__)

SCHEMA_VERSION = "2026.10.1"

# Arbitrary constant shared by every process that applies the schema
SCHEMA_LOCK_KEY = 0x63726F75

TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
      version TEXT PRIMARY KEY,
      applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS facts (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      natural_id TEXT UNIQUE,
      source_url TEXT NOT NULL,
      content_hash TEXT,
      corpus_id TEXT NOT NULL DEFAULT 'default',
      text TEXT NOT NULL,
      triple JSONB,
      confidence NUMERIC,
      verified_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_facts_content_hash ON facts (content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_facts_source_url ON facts (source_url)",
    "CREATE INDEX IF NOT EXISTS idx_facts_corpus_id ON facts (corpus_id)",
    """
    CREATE TABLE IF NOT EXISTS triples (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      subject TEXT NOT NULL,
      predicate TEXT NOT NULL,
      object TEXT NOT NULL,
      evidence_fact_id UUID,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT uq_triples_spo UNIQUE (subject, predicate, object)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outbox_events (
      id BIGSERIAL PRIMARY KEY,
      event_type TEXT NOT NULL,
      payload JSONB NOT NULL,
      occurred_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'done', 'failed', 'dead')),
      attempts INT NOT NULL DEFAULT 0,
      error TEXT,
      claimed_by TEXT,
      claimed_at TIMESTAMPTZ,
      available_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox_events (id) WHERE status = 'pending'",
    "CREATE INDEX IF NOT EXISTS idx_outbox_processing ON outbox_events (claimed_at) WHERE status = 'processing'",
    "CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox_events (status, occurred_at)",
    "CREATE INDEX IF NOT EXISTS idx_outbox_event_type ON outbox_events (event_type)",
    """
    CREATE TABLE IF NOT EXISTS source_participation (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      fact_id UUID,
      source_domain TEXT NOT NULL,
      source_url TEXT,
      ai_readable_source BOOLEAN NOT NULL DEFAULT false,
      markdown_discovered BOOLEAN NOT NULL DEFAULT false,
      discovery_method TEXT,
      first_observed TIMESTAMPTZ NOT NULL DEFAULT now(),
      last_verified TIMESTAMPTZ
    )
    """,
)


def schema_statements() -> list[str]:
    """Every DDL statement apply_schema() runs, tables first, then triggers."""
    return [stmt.strip() for stmt in TABLES] + render_capture_sql(CAPTURE_RULES)


async def apply_schema(conn: AsyncConnection) -> int:
    """
    Create tables, indexes and capture triggers in one transaction.

    Concurrent callers serialize on an advisory lock.

    Returns:
        Number of statements executed
    """
    statements = schema_statements()
    async with conn.transaction():
        await conn.execute("SELECT pg_advisory_xact_lock(%s)", (SCHEMA_LOCK_KEY,))
        for stmt in statements:
            await conn.execute(stmt)
        await conn.execute(
            "INSERT INTO schema_version (version) VALUES (%s) ON CONFLICT (version) DO NOTHING",
            (SCHEMA_VERSION,),
        )

    logger.info(
        f"Schema {SCHEMA_VERSION} applied ({len(statements)} statements, {len(CAPTURE_RULES)} capture rules)"
    )
    return len(statements)
