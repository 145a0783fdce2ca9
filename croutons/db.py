# croutons/db.py
"""
Croutons Graph Service - Database Layer

Async PostgreSQL connection pooling via psycopg3 + psycopg_pool.
- Exponential backoff retry on startup (DB_CONNECT_ATTEMPTS)
- Startup HALTS when the store is unreachable (PersistenceError); the
  service never runs in a degraded no-database mode
- sslmode=require enforced in production
- DSN logged as host/port/dbname/user only, never the password
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from croutons import __version__
from croutons.config import Settings, get_settings
from croutons.core.errors import ERR_STORE_UNAVAILABLE, PersistenceError
from croutons.core.logging import get_logger

logger = get_logger(__name__)

BASE_DELAY_SECONDS = 0.5
MAX_DELAY_SECONDS = 10.0
READINESS_CHECK_TIMEOUT = 2.0


# ---------------------------------------------------------------------------
# Pool Health State
# ---------------------------------------------------------------------------


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state for readiness probes."""

    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


_pool_health = PoolHealthState()
_db_pool: Optional[AsyncConnectionPool] = None


def get_pool_health() -> PoolHealthState:
    """Return the current pool health state for readiness probes."""
    return _pool_health


# ---------------------------------------------------------------------------
# DSN helpers
# ---------------------------------------------------------------------------


def parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Extract loggable DSN components (no password)."""
    try:
        parsed = urlparse(dsn)
        query_params = parse_qs(parsed.query)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
            "sslmode": query_params.get("sslmode", ["not_set"])[0],
        }
    except Exception as e:
        return {"error": str(e)}


def ensure_sslmode(dsn: str, required_mode: str = "require") -> str:
    """Set or upgrade sslmode to required_mode (weak modes: disable, allow, prefer)."""
    weak_modes = {"disable", "allow", "prefer"}
    parsed = urlparse(dsn)
    query_params = parse_qs(parsed.query)
    current = query_params.get("sslmode", [None])[0]

    if current is not None and current not in weak_modes:
        return dsn

    if current in weak_modes:
        logger.warning(f"Upgraded sslmode from '{current}' to '{required_mode}'")
    query_params["sslmode"] = [required_mode]
    return urlunparse(parsed._replace(query=urlencode(query_params, doseq=True)))


def application_name(role: str = "api") -> str:
    """PostgreSQL-safe application_name: underscores only."""
    safe_version = __version__.replace(".", "_").replace("-", "_")
    return f"croutons_v{safe_version}_{role.replace('-', '_')}"


def resolve_dsn(settings: Settings) -> str:
    """DATABASE_URL with production SSL enforcement applied."""
    dsn = settings.DATABASE_URL.strip()
    if not dsn:
        raise PersistenceError("DATABASE_URL is not configured", error_code=ERR_STORE_UNAVAILABLE)
    if settings.is_production:
        dsn = ensure_sslmode(dsn)
    return dsn


def _backoff_delay(attempt: int) -> float:
    delay = min(BASE_DELAY_SECONDS * (2 ** (attempt - 1)), MAX_DELAY_SECONDS)
    return delay + random.uniform(0, delay * 0.2)


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------


async def open_pool(settings: Settings | None = None, role: str = "api") -> AsyncConnectionPool:
    """
    Open and verify a connection pool, retrying with exponential backoff.

    Raises:
        PersistenceError: store_unavailable after all attempts
    """
    settings = settings or get_settings()
    dsn = resolve_dsn(settings)
    dsn_info = parse_dsn_for_logging(dsn)
    logger.info(
        f"Database connection parameters: host={dsn_info.get('host')} port={dsn_info.get('port')} "
        f"dbname={dsn_info.get('dbname')} user={dsn_info.get('user')} sslmode={dsn_info.get('sslmode')}"
    )

    start = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, settings.DB_CONNECT_ATTEMPTS + 1):
        _pool_health.init_attempts = attempt
        pool = AsyncConnectionPool(
            dsn,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            kwargs={"application_name": application_name(role), "row_factory": dict_row},
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=10.0)
            async with pool.connection() as conn:
                cur = await conn.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
                if not row or row["ok"] != 1:
                    raise RuntimeError("SELECT 1 did not return expected result")

            _pool_health.initialized = True
            _pool_health.healthy = True
            _pool_health.last_error = None
            _pool_health.init_duration_ms = (time.monotonic() - start) * 1000
            logger.info(
                f"Database pool ready (attempt {attempt}, {_pool_health.init_duration_ms:.0f}ms)"
            )
            return pool
        except Exception as e:
            last_error = e
            _pool_health.healthy = False
            _pool_health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            logger.warning(f"DB pool init attempt {attempt} failed: {type(e).__name__}: {e}")
            await pool.close()
            if attempt < settings.DB_CONNECT_ATTEMPTS:
                await asyncio.sleep(_backoff_delay(attempt))

    raise PersistenceError(
        f"Database unreachable after {settings.DB_CONNECT_ATTEMPTS} attempts: {last_error}",
        error_code=ERR_STORE_UNAVAILABLE,
    )


async def init_db_pool(settings: Settings | None = None) -> AsyncConnectionPool:
    """Open the process-wide pool once. Called from the FastAPI lifespan."""
    global _db_pool
    if _db_pool is None:
        _db_pool = await open_pool(settings, role="api")
    return _db_pool


async def close_db_pool() -> None:
    """Close the process-wide pool and reset health state."""
    global _db_pool
    if _db_pool is not None:
        logger.info("Closing PostgreSQL connection pool")
        await _db_pool.close()
        _db_pool = None
        _pool_health.initialized = False
        _pool_health.healthy = False


def get_pool() -> AsyncConnectionPool:
    """Return the process-wide pool; raises if the lifespan has not opened it."""
    if _db_pool is None:
        raise PersistenceError("Database pool is not initialized", error_code=ERR_STORE_UNAVAILABLE)
    return _db_pool


async def check_db_ready(
    pool: Optional[AsyncConnectionPool] = None,
    timeout: float = READINESS_CHECK_TIMEOUT,
) -> tuple[bool, str]:
    """
    Readiness check: SELECT 1 with a timeout.

    Returns:
        Tuple of (is_ready, status_message)
    """
    pool = pool or _db_pool
    if pool is None:
        return False, _pool_health.last_error or "pool not initialized"

    async def _ping() -> int:
        async with pool.connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
            return row["ok"] if row else 0

    start = time.monotonic()
    try:
        result = await asyncio.wait_for(_ping(), timeout=timeout)
    except asyncio.TimeoutError:
        _pool_health.healthy = False
        _pool_health.last_error = f"Query timeout ({timeout}s)"
        return False, f"timeout ({timeout}s)"
    except Exception as e:
        _pool_health.healthy = False
        _pool_health.last_error = f"{type(e).__name__}: {str(e)[:100]}"
        return False, f"error: {type(e).__name__}"

    _pool_health.healthy = result == 1
    if result != 1:
        return False, f"unexpected_result: {result}"
    return True, f"ok ({(time.monotonic() - start) * 1000:.0f}ms)"
