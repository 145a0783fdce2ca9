"""
NDJSON batch parsing.

Lines are split on b"\\n"; a trailing b"\\r" is dropped and blank lines are
ignored. Line numbers are 1-based physical line numbers of the request body,
so an error report points at the line the sender actually wrote.

Policies:
    STRICT  - the first invalid line raises BatchValidationError; nothing
              from the batch is written.
    LENIENT - invalid lines are collected in ParsedBatch.rejected and the
              remaining lines are ingested. The rejections are always
              returned to the sender.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List

from pydantic import ValidationError

from croutons.core.errors import (
    ERR_INVALID_FIELD,
    ERR_LINE_TOO_LARGE,
    ERR_MALFORMED_JSON_LINE,
    ERR_MISSING_REQUIRED_FIELD,
    ERR_NO_LINES,
    BatchValidationError,
)
from croutons.core.hashing import content_hash
from croutons.core.models import REQUIRED_FACT_FIELDS, FactRecord, RejectedLine

PREVIEW_CHARS = 120


class BatchPolicy(str, Enum):
    """How a batch reacts to an invalid line."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class ParsedLine:
    """A validated record and its content hash."""

    line: int
    record: FactRecord
    content_hash: str


@dataclass
class ParsedBatch:
    """Result of parsing a request body."""

    lines: List[ParsedLine] = field(default_factory=list)
    rejected: List[RejectedLine] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.lines) + len(self.rejected)


def _preview(text: str) -> str:
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


def _classify_validation_error(exc: ValidationError, line_no: int) -> BatchValidationError:
    """Map a pydantic error to missing_required_field or invalid_field."""
    errors = exc.errors()
    for err in errors:
        loc = err.get("loc") or ()
        name = str(loc[0]) if loc else ""
        if name in REQUIRED_FACT_FIELDS and err.get("type") in ("missing", "blank_field"):
            return BatchValidationError(
                f"line {line_no}: missing required field '{name}'",
                error_code=ERR_MISSING_REQUIRED_FIELD,
                line=line_no,
            )

    first = errors[0] if errors else {}
    where = ".".join(str(part) for part in first.get("loc", ())) or "record"
    return BatchValidationError(
        f"line {line_no}: invalid field '{where}': {first.get('msg', 'invalid value')}",
        error_code=ERR_INVALID_FIELD,
        line=line_no,
    )


def parse_line(raw_line: bytes, line_no: int, max_line_bytes: int) -> ParsedLine:
    """
    Parse and validate one NDJSON line.

    Raises:
        BatchValidationError: line_too_large, malformed_json_line,
            missing_required_field or invalid_field
    """
    if len(raw_line) > max_line_bytes:
        raise BatchValidationError(
            f"line {line_no}: {len(raw_line)} bytes exceeds limit of {max_line_bytes}",
            error_code=ERR_LINE_TOO_LARGE,
            line=line_no,
        )

    try:
        text = raw_line.decode("utf-8")
        obj: Any = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        preview = _preview(raw_line.decode("utf-8", errors="replace"))
        raise BatchValidationError(
            f"line {line_no}: invalid JSON: {preview}",
            error_code=ERR_MALFORMED_JSON_LINE,
            line=line_no,
        ) from None

    if not isinstance(obj, dict):
        raise BatchValidationError(
            f"line {line_no}: expected a JSON object, got {type(obj).__name__}",
            error_code=ERR_MALFORMED_JSON_LINE,
            line=line_no,
        )

    try:
        record = FactRecord.model_validate(obj)
    except ValidationError as exc:
        raise _classify_validation_error(exc, line_no) from None

    return ParsedLine(line=line_no, record=record, content_hash=content_hash(record))


def parse_ndjson_batch(
    raw_body: bytes,
    *,
    max_line_bytes: int,
    policy: BatchPolicy = BatchPolicy.STRICT,
) -> ParsedBatch:
    """
    Split and validate an NDJSON body.

    Args:
        raw_body: Request body bytes (already signature-checked)
        max_line_bytes: Per-line byte limit
        policy: STRICT or LENIENT

    Returns:
        ParsedBatch with validated lines, plus rejected lines under LENIENT

    Raises:
        BatchValidationError: no_lines, or the first invalid line under STRICT
    """
    batch = ParsedBatch()

    for line_no, raw_line in enumerate(raw_body.split(b"\n"), start=1):
        if raw_line.endswith(b"\r"):
            raw_line = raw_line[:-1]
        if not raw_line.strip():
            continue

        try:
            batch.lines.append(parse_line(raw_line, line_no, max_line_bytes))
        except BatchValidationError as exc:
            if policy is BatchPolicy.STRICT:
                raise
            batch.rejected.append(RejectedLine(line=line_no, error=exc.slug, message=exc.detail))

    if batch.total == 0:
        raise BatchValidationError(error_code=ERR_NO_LINES)

    return batch
