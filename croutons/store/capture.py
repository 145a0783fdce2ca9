"""
Change capture: the rules that couple every committed write to an outbox row.

Each CaptureRule renders to a PL/pgSQL row trigger. The triggers run inside
the writer's transaction, so a fact or triple can never commit without its
event and an event can never exist for a write that rolled back. Because the
rules live in the store, backfills and ad-hoc psql writers are captured
exactly like the ingestion coordinator.

A rule may carry a predicate. It is evaluated against NEW (and, for
UPDATE-only rules, OLD) when the row is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from croutons.core.models import EventType

OUTBOX_TABLE = "outbox_events"

_ALLOWED_OPERATIONS = frozenset({"INSERT", "UPDATE"})


@dataclass(frozen=True)
class CaptureRule:
    """One table/operation -> event_type mapping."""

    name: str
    table: str
    event_type: EventType
    operations: tuple[str, ...]
    snapshot: tuple[tuple[str, str], ...]
    predicate: Optional[str] = None

    def __post_init__(self) -> None:
        unknown = set(self.operations) - _ALLOWED_OPERATIONS
        if not self.operations or unknown:
            raise ValueError(f"{self.name}: unsupported operations {sorted(unknown) or '()'}")
        if self.predicate and "OLD." in self.predicate and self.operations != ("UPDATE",):
            raise ValueError(f"{self.name}: predicates over OLD are only valid for UPDATE-only rules")

    @property
    def function_name(self) -> str:
        return f"fn_outbox_{self.name}"

    @property
    def trigger_name(self) -> str:
        return f"trg_outbox_{self.name}"

    def payload_sql(self) -> str:
        """jsonb_build_object(...) snapshot of NEW."""
        pairs = ",\n        ".join(f"'{key}', {expr}" for key, expr in self.snapshot)
        return f"jsonb_build_object(\n        {pairs}\n      )"

    def render(self) -> list[str]:
        """Idempotent DDL: function, then drop/create trigger."""
        insert = (
            f"INSERT INTO {OUTBOX_TABLE} (event_type, payload)\n"
            f"    VALUES ('{self.event_type.value}', {self.payload_sql()});"
        )
        if self.predicate:
            body = f"IF {self.predicate} THEN\n    {insert}\n  END IF;"
        else:
            body = insert

        function = (
            f"CREATE OR REPLACE FUNCTION {self.function_name}() RETURNS trigger\n"
            f"LANGUAGE plpgsql AS $$\n"
            f"BEGIN\n"
            f"  {body}\n"
            f"  RETURN NEW;\n"
            f"END;\n"
            f"$$"
        )
        drop = f"DROP TRIGGER IF EXISTS {self.trigger_name} ON {self.table}"
        create = (
            f"CREATE TRIGGER {self.trigger_name}\n"
            f"AFTER {' OR '.join(self.operations)} ON {self.table}\n"
            f"FOR EACH ROW EXECUTE FUNCTION {self.function_name}()"
        )
        return [function, drop, create]


_FACT_SNAPSHOT: tuple[tuple[str, str], ...] = (
    ("id", "NEW.id::text"),
    ("natural_id", "NEW.natural_id"),
    ("source_url", "NEW.source_url"),
    ("content_hash", "NEW.content_hash"),
    ("corpus_id", "NEW.corpus_id"),
    ("text", "NEW.text"),
    ("triple", "NEW.triple"),
    ("confidence", "NEW.confidence"),
    ("verified_at", "NEW.verified_at"),
    ("created_at", "NEW.created_at"),
)

FACT_INSERT = CaptureRule(
    name="fact_insert",
    table="facts",
    event_type=EventType.FACT_INSERT,
    operations=("INSERT",),
    snapshot=_FACT_SNAPSHOT,
)

FACT_UPDATE = CaptureRule(
    name="fact_update",
    table="facts",
    event_type=EventType.FACT_UPDATE,
    operations=("UPDATE",),
    snapshot=_FACT_SNAPSHOT + (("updated_at", "NEW.updated_at"),),
    predicate="NEW.content_hash IS DISTINCT FROM OLD.content_hash",
)

TRIPLE_INSERT = CaptureRule(
    name="triple_insert",
    table="triples",
    event_type=EventType.TRIPLE_INSERT,
    operations=("INSERT",),
    snapshot=(
        ("id", "NEW.id::text"),
        ("subject", "NEW.subject"),
        ("predicate", "NEW.predicate"),
        ("object", "NEW.object"),
        ("evidence_fact_id", "NEW.evidence_fact_id::text"),
        ("created_at", "NEW.created_at"),
    ),
)

# source_participation belongs to the source-tracking subsystem; only rows
# that are published (AI-readable or markdown-discovered) are propagated.
PARTICIPATION_INSERT = CaptureRule(
    name="participation_insert",
    table="source_participation",
    event_type=EventType.PARTICIPATION_INSERT,
    operations=("INSERT", "UPDATE"),
    snapshot=(
        ("id", "NEW.id::text"),
        ("fact_id", "NEW.fact_id::text"),
        ("source_domain", "NEW.source_domain"),
        ("source_url", "NEW.source_url"),
        ("ai_readable_source", "NEW.ai_readable_source"),
        ("markdown_discovered", "NEW.markdown_discovered"),
        ("discovery_method", "NEW.discovery_method"),
        ("first_observed", "NEW.first_observed"),
        ("last_verified", "NEW.last_verified"),
    ),
    predicate="(COALESCE(NEW.ai_readable_source, false) OR COALESCE(NEW.markdown_discovered, false))",
)

CAPTURE_RULES: tuple[CaptureRule, ...] = (
    FACT_INSERT,
    FACT_UPDATE,
    TRIPLE_INSERT,
    PARTICIPATION_INSERT,
)


def render_capture_sql(rules: Sequence[CaptureRule] = CAPTURE_RULES) -> list[str]:
    """All trigger DDL statements, in order."""
    statements: list[str] = []
    for rule in rules:
        statements.extend(rule.render())
    return statements
