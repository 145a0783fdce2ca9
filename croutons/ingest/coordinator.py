"""
Ingestion coordinator: one signed NDJSON batch, one transaction.

Order of checks:
    1. empty body, body size
    2. X-Signature over the exact raw bytes
    3. per-line parsing and validation (strict or lenient)
    4. writes inside a single FactStore transaction

A batch rejected at any step writes nothing. Outbox rows are appended by the
store's capture triggers in the same commit, never by this module.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from croutons.config import Settings, get_settings
from croutons.core.errors import (
    ERR_BODY_TOO_LARGE,
    ERR_EMPTY_BODY,
    AuthenticationError,
    BatchValidationError,
)
from croutons.core.logging import LogContext, Timer, get_logger
from croutons.core.models import IngestResult, WriteOutcome
from croutons.core.signature import verify_signature
from croutons.ingest.parser import BatchPolicy, ParsedBatch, parse_ndjson_batch
from croutons.store.facts import FactStore

logger = get_logger(__name__)


@dataclass
class _Tally:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    triples_inserted: int = 0


class IngestionCoordinator:
    """Verifies, parses and persists ingestion batches."""

    def __init__(self, store: FactStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    @property
    def policy(self) -> BatchPolicy:
        return BatchPolicy(self.settings.INGEST_BATCH_POLICY)

    def check_body(self, raw_body: bytes) -> None:
        """Reject empty and oversized bodies before any HMAC work."""
        if not raw_body:
            raise BatchValidationError(error_code=ERR_EMPTY_BODY)
        if len(raw_body) > self.settings.MAX_BODY_BYTES:
            raise BatchValidationError(
                f"body of {len(raw_body)} bytes exceeds limit of {self.settings.MAX_BODY_BYTES}",
                error_code=ERR_BODY_TOO_LARGE,
            )

    async def ingest(
        self,
        raw_body: bytes,
        signature: Optional[str],
        *,
        upsert: bool = False,
    ) -> IngestResult:
        """
        Run one batch end to end.

        Args:
            raw_body: Exact request body bytes
            signature: X-Signature header value
            upsert: Update rows addressed by natural_id when content changed

        Returns:
            IngestResult with accepted/skipped/total counts

        Raises:
            AuthenticationError: signature_invalid
            BatchValidationError: empty body, size limits, invalid lines (strict)
            PersistenceError: the transaction failed and was rolled back
        """
        batch_id = uuid.uuid4().hex[:12]
        with LogContext(batch_id=batch_id), Timer() as timer:
            self.check_body(raw_body)

            if not verify_signature(self.settings.PUBLISH_HMAC_KEY, raw_body, signature):
                logger.warning(f"Rejected batch: bad signature ({len(raw_body)} bytes)")
                raise AuthenticationError()

            try:
                batch = parse_ndjson_batch(
                    raw_body,
                    max_line_bytes=self.settings.MAX_LINE_BYTES,
                    policy=self.policy,
                )
            except BatchValidationError as exc:
                logger.info(
                    f"Rejected batch: {exc.detail}",
                    extra={"error_code": exc.slug, "line": exc.line},
                )
                raise

            tally = await self._persist(batch, upsert=upsert)

        result = IngestResult(
            accepted=tally.inserted + tally.updated,
            skipped=tally.skipped,
            total=batch.total,
            updated=tally.updated,
            triples_inserted=tally.triples_inserted,
            rejected=batch.rejected if self.policy is BatchPolicy.LENIENT else None,
        )
        logger.info(
            f"Batch {batch_id} committed: accepted={result.accepted} skipped={result.skipped} "
            f"total={result.total} rejected={len(batch.rejected)}",
            extra={
                "batch_id": batch_id,
                "accepted": result.accepted,
                "skipped": result.skipped,
                "updated": result.updated,
                "total": result.total,
                "duration_ms": timer.elapsed_ms,
            },
        )
        return result

    async def _persist(self, batch: ParsedBatch, *, upsert: bool) -> _Tally:
        tally = _Tally()
        async with self.store.transaction() as unit:
            for parsed in batch.lines:
                if upsert:
                    write = await unit.upsert_fact(parsed)
                else:
                    write = await unit.insert_fact(parsed)

                if write.outcome is WriteOutcome.INSERTED:
                    tally.inserted += 1
                elif write.outcome is WriteOutcome.UPDATED:
                    tally.updated += 1
                else:
                    tally.skipped += 1

                triple = parsed.record.embedded_triple()
                if triple is not None and await unit.insert_triple(triple, write.fact_id):
                    tally.triples_inserted += 1
        return tally
