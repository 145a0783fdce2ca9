"""
Content-addressed identity for croutons.

One formula, versioned by its tag:

    sha256( json(["crouton.v1", source_url, text, [subject, predicate, object] | null]) )

The JSON is compact and the projection is an ordered list, so key order in
the sender's NDJSON line never affects the result. corpus_id, confidence,
verified_at and natural_id are not part of the projection; a redelivery that
only restamps verified_at hashes the same. A triple with none of subject,
predicate or object (for example ``{}``) projects to null, like an absent one.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional

from croutons.core.models import FactRecord

HASH_VERSION = "crouton.v1"
TRIPLE_FIELDS = ("subject", "predicate", "object")


def _triple_projection(triple: Optional[Mapping[str, Any]]) -> Optional[list[Any]]:
    if not isinstance(triple, Mapping):
        return None
    parts = [triple.get(field) for field in TRIPLE_FIELDS]
    if all(part is None for part in parts):
        return None
    return parts


def canonical_projection(source_url: str, text: str, triple: Optional[Mapping[str, Any]]) -> bytes:
    """UTF-8 bytes that the content hash is computed over."""
    projection = [HASH_VERSION, source_url, text, _triple_projection(triple)]
    return json.dumps(projection, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def content_hash(fact: FactRecord | Mapping[str, Any]) -> str:
    """
    Deterministic identity of a crouton's semantic content.

    Accepts a validated FactRecord or a raw mapping with the same keys.
    Returns 64 lowercase hex characters.
    """
    if isinstance(fact, FactRecord):
        source_url, text, triple = fact.source_url, fact.text, fact.triple
    else:
        source_url, text, triple = fact.get("source_url"), fact.get("text"), fact.get("triple")
    return hashlib.sha256(canonical_projection(source_url, text, triple)).hexdigest()
