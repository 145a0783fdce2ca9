"""
Croutons Graph Service - Core Data Models

Pydantic models for the wire records accepted by /import, the outbox event
rows read by drain workers, and the ingestion response.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

REQUIRED_FACT_FIELDS = ("source_url", "text")
DEFAULT_CORPUS_ID = "default"


# =============================================================================
# Enums
# =============================================================================


class OutboxStatus(str, Enum):
    """Outbox event lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    DEAD = "dead"


class EventType(str, Enum):
    """Event types emitted by the capture triggers."""

    FACT_INSERT = "fact.insert"
    FACT_UPDATE = "fact.update"
    TRIPLE_INSERT = "triple.insert"
    PARTICIPATION_INSERT = "participation.insert"


class WriteOutcome(str, Enum):
    """Result of proposing one fact write."""

    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


# =============================================================================
# Wire records
# =============================================================================


class TripleRecord(BaseModel):
    """A complete subject-predicate-object assertion."""

    model_config = ConfigDict(frozen=True)

    subject: str
    predicate: str
    object: str


class FactRecord(BaseModel):
    """
    One NDJSON line of an ingestion batch.

    Only source_url and text are required. The caller-addressable id may be
    sent as natural_id or as the legacy crouton_id.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source_url: str
    text: str
    natural_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("natural_id", "crouton_id"),
    )
    corpus_id: str = DEFAULT_CORPUS_ID
    triple: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    verified_at: Optional[datetime] = None

    @field_validator("source_url", "text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise PydanticCustomError("blank_field", "field must not be blank")
        return value

    @field_validator("corpus_id", mode="before")
    @classmethod
    def _null_corpus(cls, value: Any) -> Any:
        return DEFAULT_CORPUS_ID if value is None else value

    @field_validator("natural_id", "corpus_id")
    @classmethod
    def _empty_to_default(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is not None and not value.strip():
            return DEFAULT_CORPUS_ID if info.field_name == "corpus_id" else None
        return value

    def embedded_triple(self) -> Optional[TripleRecord]:
        """The embedded triple, only when subject, predicate and object are all non-empty strings."""
        if not self.triple:
            return None
        parts = [self.triple.get(k) for k in ("subject", "predicate", "object")]
        if not all(isinstance(p, str) and p.strip() for p in parts):
            return None
        return TripleRecord(subject=parts[0], predicate=parts[1], object=parts[2])


# =============================================================================
# Ingestion response
# =============================================================================


class RejectedLine(BaseModel):
    """A line skipped under the lenient batch policy."""

    line: int
    error: str
    message: str


class IngestResult(BaseModel):
    """Counts returned by POST /import."""

    accepted: int = 0
    skipped: int = 0
    total: int = 0
    updated: int = 0
    triples_inserted: int = 0
    rejected: Optional[List[RejectedLine]] = None


# =============================================================================
# Outbox
# =============================================================================


class OutboxEvent(BaseModel):
    """One row of outbox_events, as claimed by a drain worker."""

    id: int
    event_type: str
    payload: Dict[str, Any]
    occurred_at: datetime
    status: OutboxStatus
    attempts: int = 0
    error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        """Stable key for downstream merge-by-key application."""
        return f"outbox-{self.id}"
