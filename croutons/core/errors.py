"""
Croutons Graph Service - Error Taxonomy

Every caller-facing failure carries a stable ErrorCode:
- code:   "CRT-{CATEGORY}-{NUMBER}" for logs, alerts and incident docs
- slug:   the machine-readable value returned in the HTTP body ({"error": slug})
- http_status, retryable

Categories:
- AUTH (400-499): signature and admin key failures
- VALIDATION (500-599): malformed batches
- DB (100-199): persistence failures
- DRAIN (600-699): downstream projector failures (never surfaced to senders)

Deduplication is not an error. A conflicting insert is reported as
WriteOutcome.SKIPPED by the store layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Error category for classification."""

    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    DB = "DB"
    DRAIN = "DRAIN"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    slug: str
    category: ErrorCategory
    message: str
    http_status: int = 500
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


# -----------------------------------------------------------------------------
# AUTH Errors (400-499)
# -----------------------------------------------------------------------------
ERR_SIGNATURE_INVALID = ErrorCode(
    code="CRT-AUTH-401",
    slug="signature_invalid",
    category=ErrorCategory.AUTH,
    message="Missing or invalid X-Signature",
    http_status=401,
)
ERR_ADMIN_KEY_INVALID = ErrorCode(
    code="CRT-AUTH-403",
    slug="admin_key_invalid",
    category=ErrorCategory.AUTH,
    message="Missing or invalid X-API-Key",
    http_status=403,
)
ERR_ADMIN_DISABLED = ErrorCode(
    code="CRT-AUTH-410",
    slug="admin_disabled",
    category=ErrorCategory.AUTH,
    message="Admin endpoints are disabled (ADMIN_API_KEY not configured)",
    http_status=503,
)

# -----------------------------------------------------------------------------
# VALIDATION Errors (500-599)
# -----------------------------------------------------------------------------
ERR_EMPTY_BODY = ErrorCode(
    code="CRT-VALIDATION-500",
    slug="empty_body",
    category=ErrorCategory.VALIDATION,
    message="Request body is empty",
    http_status=400,
)
ERR_NO_LINES = ErrorCode(
    code="CRT-VALIDATION-501",
    slug="no_lines",
    category=ErrorCategory.VALIDATION,
    message="Request body contains no NDJSON lines",
    http_status=400,
)
ERR_LINE_TOO_LARGE = ErrorCode(
    code="CRT-VALIDATION-510",
    slug="line_too_large",
    category=ErrorCategory.VALIDATION,
    message="NDJSON line exceeds the maximum line size",
    http_status=413,
)
ERR_BODY_TOO_LARGE = ErrorCode(
    code="CRT-VALIDATION-511",
    slug="body_too_large",
    category=ErrorCategory.VALIDATION,
    message="Request body exceeds the maximum batch size",
    http_status=413,
)
ERR_MALFORMED_JSON_LINE = ErrorCode(
    code="CRT-VALIDATION-520",
    slug="malformed_json_line",
    category=ErrorCategory.VALIDATION,
    message="NDJSON line is not a JSON object",
    http_status=400,
)
ERR_MISSING_REQUIRED_FIELD = ErrorCode(
    code="CRT-VALIDATION-530",
    slug="missing_required_field",
    category=ErrorCategory.VALIDATION,
    message="Record is missing a required field",
    http_status=400,
)
ERR_INVALID_FIELD = ErrorCode(
    code="CRT-VALIDATION-531",
    slug="invalid_field",
    category=ErrorCategory.VALIDATION,
    message="Record has a field with an invalid value",
    http_status=400,
)

# -----------------------------------------------------------------------------
# DB Errors (100-199)
# -----------------------------------------------------------------------------
ERR_PERSISTENCE_FAILURE = ErrorCode(
    code="CRT-DB-110",
    slug="persistence_failure",
    category=ErrorCategory.DB,
    message="Batch could not be persisted; nothing was written",
    http_status=500,
    retryable=True,
)
ERR_STORE_UNAVAILABLE = ErrorCode(
    code="CRT-DB-100",
    slug="store_unavailable",
    category=ErrorCategory.DB,
    message="Database is unavailable",
    http_status=503,
    retryable=True,
)

# -----------------------------------------------------------------------------
# DRAIN Errors (600-699)
# -----------------------------------------------------------------------------
ERR_DRAIN_APPLY = ErrorCode(
    code="CRT-DRAIN-600",
    slug="drain_apply_failed",
    category=ErrorCategory.DRAIN,
    message="Projector failed to apply outbox event",
    retryable=True,
)
ERR_DRAIN_NO_PROJECTOR = ErrorCode(
    code="CRT-DRAIN-601",
    slug="no_projector",
    category=ErrorCategory.DRAIN,
    message="No projector registered for event type",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CroutonsError(Exception):
    """Base exception carrying a stable ErrorCode."""

    default_code: ErrorCode = ERR_PERSISTENCE_FAILURE

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        error_code: Optional[ErrorCode] = None,
        line: Optional[int] = None,
    ) -> None:
        self.error_code = error_code or self.default_code
        self.detail = detail or self.error_code.message
        self.line = line
        super().__init__(self.detail)

    @property
    def slug(self) -> str:
        return self.error_code.slug

    @property
    def http_status(self) -> int:
        return self.error_code.http_status

    def to_dict(self) -> dict[str, Any]:
        """Response body: {"error": slug, "message": text, "line": n?}."""
        body: dict[str, Any] = {"error": self.slug, "message": self.detail}
        if self.line is not None:
            body["line"] = self.line
        return body


class AuthenticationError(CroutonsError):
    """Bad or missing signature / admin key."""

    default_code = ERR_SIGNATURE_INVALID


class BatchValidationError(CroutonsError):
    """Malformed batch, oversized line, missing or invalid field."""

    default_code = ERR_MALFORMED_JSON_LINE


class PersistenceError(CroutonsError):
    """Transaction failure or store unavailable."""

    default_code = ERR_PERSISTENCE_FAILURE


class DrainApplyError(CroutonsError):
    """Downstream projector failure. Recorded on the event row, never returned to a sender."""

    default_code = ERR_DRAIN_APPLY
