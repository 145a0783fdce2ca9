"""
HMAC request signing for the ingestion endpoint.

Senders sign the exact request body with the shared secret and send
``X-Signature: sha256=<hex>``. Proxies in front of the service are known to
add or strip one trailing newline, so a signature over the body with that
single newline toggled is also accepted. Nothing broader is.
"""

from __future__ import annotations

import hashlib
import hmac

from croutons.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def _hmac_digest(secret: bytes, body: bytes) -> bytes:
    return hmac.new(secret, body, hashlib.sha256).digest()


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def toggle_trailing_newline(body: bytes) -> bytes:
    """Return body with one trailing b"\\n" removed if present, appended otherwise."""
    if body.endswith(b"\n"):
        return body[:-1]
    return body + b"\n"


def sign_body(secret: str | bytes, body: str | bytes) -> str:
    """Header value for body: ``sha256=<hex>``."""
    digest = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    secret: str | bytes | None,
    raw_body: bytes,
    signature_header: str | None,
) -> bool:
    """
    Verify an ``X-Signature`` header against the raw request body.

    Args:
        secret: Shared HMAC secret. None or empty fails closed.
        raw_body: Exact bytes received.
        signature_header: Header value, expected ``sha256=<hex>``.

    Returns:
        True only if the header matches the body or the body with one
        trailing newline toggled. Every other case, including internal
        errors, returns False.
    """
    try:
        if not secret:
            logger.error("PUBLISH_HMAC_KEY not configured - rejecting signed request")
            return False
        if not signature_header:
            return False

        header = signature_header.strip()
        if not header.startswith(SIGNATURE_PREFIX):
            return False

        received = bytes.fromhex(header[len(SIGNATURE_PREFIX):])
        key = _as_bytes(secret)

        exact = _hmac_digest(key, raw_body)
        variant = _hmac_digest(key, toggle_trailing_newline(raw_body))

        # Both comparisons always run
        exact_ok = hmac.compare_digest(received, exact)
        variant_ok = hmac.compare_digest(received, variant)
        return exact_ok or variant_ok
    except Exception:
        logger.warning("Signature verification raised; treating as invalid", exc_info=True)
        return False
