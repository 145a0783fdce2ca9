"""
tests/helpers.py

In-memory stand-ins for the Postgres store, used by unit tests.

FakeFactStore mirrors the unique constraints on facts (content_hash,
natural_id) and triples (subject, predicate, object), stages writes per
transaction and discards them on exception. It also appends outbox events
the way the capture triggers do, so coupling can be asserted without a
database.

FakeOutboxRepository implements the drain state machine over a list of
dict rows.
"""

from __future__ import annotations

import copy
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional, Sequence

from croutons.core.models import OutboxEvent, OutboxStatus, TripleRecord, WriteOutcome
from croutons.core.signature import sign_body
from croutons.ingest.parser import ParsedLine
from croutons.store.facts import FactWrite

SECRET = "test-secret"


def ndjson(*records: Any) -> bytes:
    """Encode records (dicts or raw strings) one per line, with a trailing newline."""
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    return ("\n".join(lines) + "\n").encode("utf-8")


def signed_headers(body: bytes, secret: str = SECRET) -> dict[str, str]:
    return {"X-Signature": sign_body(secret, body)}


class _State:
    def __init__(self) -> None:
        self.facts: dict[str, dict[str, Any]] = {}
        self.triples: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []


class FakeFactUnit:
    def __init__(self, state: _State) -> None:
        self.state = state

    def _by_hash(self, content_hash: str) -> Optional[dict[str, Any]]:
        for fact in self.state.facts.values():
            if fact["content_hash"] == content_hash:
                return fact
        return None

    def _by_natural_id(self, natural_id: Optional[str]) -> Optional[dict[str, Any]]:
        if natural_id is None:
            return None
        for fact in self.state.facts.values():
            if fact["natural_id"] == natural_id:
                return fact
        return None

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.state.events.append({"event_type": event_type, "payload": payload})

    async def insert_fact(self, parsed: ParsedLine) -> FactWrite:
        existing = self._by_hash(parsed.content_hash) or self._by_natural_id(parsed.record.natural_id)
        if existing is not None:
            return FactWrite(WriteOutcome.SKIPPED, existing["id"])

        fact_id = str(uuid.uuid4())
        row = {
            "id": fact_id,
            "natural_id": parsed.record.natural_id,
            "source_url": parsed.record.source_url,
            "text": parsed.record.text,
            "content_hash": parsed.content_hash,
            "triple": parsed.record.triple,
        }
        self.state.facts[fact_id] = row
        self._emit("fact.insert", dict(row))
        return FactWrite(WriteOutcome.INSERTED, fact_id)

    async def upsert_fact(self, parsed: ParsedLine) -> FactWrite:
        if parsed.record.natural_id is None:
            return await self.insert_fact(parsed)

        same_content = self._by_hash(parsed.content_hash)
        if same_content is not None:
            return FactWrite(WriteOutcome.SKIPPED, same_content["id"])

        existing = self._by_natural_id(parsed.record.natural_id)
        if existing is None:
            return await self.insert_fact(parsed)

        existing.update(
            source_url=parsed.record.source_url,
            text=parsed.record.text,
            content_hash=parsed.content_hash,
            triple=parsed.record.triple,
        )
        self._emit("fact.update", dict(existing))
        return FactWrite(WriteOutcome.UPDATED, existing["id"])

    async def insert_triple(self, triple: TripleRecord, evidence_fact_id: Optional[str]) -> bool:
        key = (triple.subject, triple.predicate, triple.object)
        if key in self.state.triples:
            return False
        row = {
            "subject": triple.subject,
            "predicate": triple.predicate,
            "object": triple.object,
            "evidence_fact_id": evidence_fact_id,
        }
        self.state.triples[key] = row
        self._emit("triple.insert", dict(row))
        return True


class FakeFactStore:
    """FactStore with all-or-nothing transactions."""

    def __init__(self, fail_on_triple: bool = False) -> None:
        self.committed = _State()
        self.transactions = 0
        self.fail_on_triple = fail_on_triple

    @property
    def facts(self) -> list[dict[str, Any]]:
        return list(self.committed.facts.values())

    @property
    def triples(self) -> list[dict[str, Any]]:
        return list(self.committed.triples.values())

    @property
    def events(self) -> list[dict[str, Any]]:
        return self.committed.events

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[FakeFactUnit]:
        self.transactions += 1
        staged = copy.deepcopy(self.committed)
        unit = FakeFactUnit(staged)
        if self.fail_on_triple:
            async def _boom(*args: Any, **kwargs: Any) -> bool:
                raise RuntimeError("simulated store failure")

            unit.insert_triple = _boom  # type: ignore[method-assign]
        yield unit
        self.committed = staged


class FakeOutboxRepository:
    """In-memory outbox with the same transitions as OutboxRepository."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []
        self._next_id = 1

    def add(self, event_type: str = "fact.insert", payload: Optional[dict[str, Any]] = None, **overrides: Any) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        row = {
            "id": self._next_id,
            "event_type": event_type,
            "payload": payload or {"id": str(uuid.uuid4())},
            "occurred_at": now,
            "status": OutboxStatus.PENDING.value,
            "attempts": 0,
            "error": None,
            "claimed_by": None,
            "claimed_at": None,
            "available_at": now,
        }
        row.update(overrides)
        self.rows.append(row)
        self._next_id += 1
        return row

    def get(self, event_id: int) -> dict[str, Any]:
        return next(r for r in self.rows if r["id"] == event_id)

    async def claim(
        self, worker_id: str, batch_size: int, event_types: Optional[Sequence[str]] = None
    ) -> list[OutboxEvent]:
        now = datetime.now(timezone.utc)
        claimed = []
        for row in sorted(self.rows, key=lambda r: r["id"]):
            if len(claimed) >= batch_size:
                break
            if row["status"] != "pending" or row["available_at"] > now:
                continue
            if event_types and row["event_type"] not in event_types:
                continue
            row.update(status="processing", claimed_by=worker_id, claimed_at=now)
            claimed.append(OutboxEvent.model_validate(row))
        return claimed

    async def ack(self, event_id: int, worker_id: str) -> bool:
        row = self.get(event_id)
        if row["status"] != "processing" or row["claimed_by"] != worker_id:
            return False
        row.update(status="done", error=None)
        return True

    async def nack(
        self,
        event_id: int,
        worker_id: str,
        error: str,
        *,
        max_attempts: int,
        delay_seconds: float,
    ) -> Optional[OutboxStatus]:
        row = self.get(event_id)
        if row["status"] != "processing" or row["claimed_by"] != worker_id:
            return None
        row["attempts"] += 1
        row["error"] = error
        row["status"] = "dead" if row["attempts"] >= max_attempts else "failed"
        row["available_at"] = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        return OutboxStatus(row["status"])

    async def retry_due(self, max_attempts: int) -> int:
        now = datetime.now(timezone.utc)
        count = 0
        for row in self.rows:
            if row["status"] == "failed" and row["attempts"] < max_attempts and row["available_at"] <= now:
                row["status"] = "pending"
                count += 1
        return count

    async def reap_stuck(self, timeout_seconds: float, max_attempts: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        count = 0
        for row in self.rows:
            if row["status"] == "processing" and row["claimed_at"] < cutoff:
                row["attempts"] += 1
                row["status"] = "dead" if row["attempts"] >= max_attempts else "failed"
                row["error"] = "processing timeout"
                count += 1
        return count

    async def requeue(self, event_ids: Optional[Sequence[int]] = None, include_dead: bool = False) -> int:
        statuses = {"failed", "dead"} if include_dead else {"failed"}
        count = 0
        for row in self.rows:
            if row["status"] in statuses and (not event_ids or row["id"] in event_ids):
                row.update(status="pending", attempts=0, error=None, claimed_by=None, claimed_at=None)
                count += 1
        return count

    async def stats(self) -> dict[str, Any]:
        counts: dict[str, Any] = {s.value: 0 for s in OutboxStatus}
        for row in self.rows:
            counts[row["status"]] += 1
        counts["total"] = len(self.rows)
        counts["oldest_pending_seconds"] = None
        return counts

    async def list_events(self, status: Optional[OutboxStatus] = None, limit: int = 50) -> list[OutboxEvent]:
        rows = [r for r in self.rows if status is None or r["status"] == OutboxStatus(status).value]
        rows = sorted(rows, key=lambda r: r["id"], reverse=True)[:limit]
        return [OutboxEvent.model_validate(r) for r in rows]
