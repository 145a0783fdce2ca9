"""
Outbox Drain - At-least-once delivery of captured events

Consumes outbox_events written by the capture triggers and hands each event
to a Projector that applies it downstream.

Architecture:
    1. Ingestion commits facts/triples; triggers append outbox rows in the
       same transaction
    2. N async workers claim batches with FOR UPDATE SKIP LOCKED
    3. Each event is applied by the projector registered for its type
    4. Success -> ack (done). Failure -> nack (failed, backoff) or dead at
       OUTBOX_MAX_ATTEMPTS
    5. A maintenance loop reaps stuck claims and promotes due retries

Delivery is at-least-once. Projectors must apply events idempotently; the
HTTP projector sends Idempotency-Key: outbox-<id> for that purpose.

Usage:
    # Run as a worker (polls continuously)
    python -m croutons.workers.outbox_drain

    # Drain once and exit
    python -m croutons.workers.outbox_drain --once

    # Log events instead of delivering them
    python -m croutons.workers.outbox_drain --once --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import signal
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

import httpx
from dotenv import load_dotenv

from croutons.config import Settings, configure_logging, get_settings
from croutons.core.errors import (
    ERR_DRAIN_APPLY,
    ERR_DRAIN_NO_PROJECTOR,
    DrainApplyError,
    PersistenceError,
)
from croutons.core.logging import LogContext, Timer, get_logger
from croutons.core.models import OutboxEvent, OutboxStatus
from croutons.core.signature import sign_body
from croutons.db import open_pool
from croutons.store.outbox import OutboxRepository

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_STORE_UNAVAILABLE = 2


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff between failed attempts of one event."""

    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 900.0
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * (self.exponential_base ** (max(attempt, 1) - 1))
        delay = min(delay, self.max_delay_seconds)

        if self.jitter:
            delay = delay * (0.5 + random.random())
            delay = min(delay, self.max_delay_seconds)

        return delay


@dataclass
class DrainConfig:
    """Configuration for the drain worker."""

    worker_id: str
    batch_size: int = 10
    poll_interval_seconds: float = 5.0
    concurrency: int = 2
    max_attempts: int = 5
    processing_timeout_seconds: float = 300.0
    event_types: Optional[list[str]] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DrainConfig":
        return cls(
            worker_id=settings.WORKER_ID,
            batch_size=settings.OUTBOX_BATCH_SIZE,
            poll_interval_seconds=settings.OUTBOX_POLL_INTERVAL,
            concurrency=settings.OUTBOX_CONCURRENCY,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
            processing_timeout_seconds=settings.OUTBOX_PROCESSING_TIMEOUT,
            event_types=settings.outbox_event_types,
            retry_policy=RetryPolicy(
                base_delay_seconds=settings.OUTBOX_RETRY_BASE_DELAY,
                max_delay_seconds=settings.OUTBOX_RETRY_MAX_DELAY,
            ),
        )


class OutboxStore(Protocol):
    """The subset of OutboxRepository the drainer uses."""

    async def claim(
        self, worker_id: str, batch_size: int, event_types: Optional[Sequence[str]] = None
    ) -> list[OutboxEvent]: ...

    async def ack(self, event_id: int, worker_id: str) -> bool: ...

    async def nack(
        self,
        event_id: int,
        worker_id: str,
        error: str,
        *,
        max_attempts: int,
        delay_seconds: float,
    ) -> Optional[OutboxStatus]: ...

    async def retry_due(self, max_attempts: int) -> int: ...

    async def reap_stuck(self, timeout_seconds: float, max_attempts: int) -> int: ...


# =============================================================================
# Projectors (Strategy Pattern)
# =============================================================================


class Projector(ABC):
    """Applies outbox events to a downstream system."""

    #: Event types handled, or None for every type
    event_types: Optional[frozenset[str]] = None

    def handles(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types

    @abstractmethod
    async def apply(self, event: OutboxEvent) -> None:
        """
        Apply one event. Must be idempotent on event.idempotency_key.

        Raises:
            Exception: If applying fails (the event will be retried)
        """

    async def aclose(self) -> None:
        """Release resources held by the projector."""


def event_envelope(event: OutboxEvent) -> bytes:
    """Compact JSON body delivered downstream for one event."""
    body = {
        "id": event.id,
        "event_type": event.event_type,
        "occurred_at": event.occurred_at.isoformat(),
        "payload": event.payload,
    }
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


class HttpProjector(Projector):
    """POSTs each event to PROJECTOR_URL."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def apply(self, event: OutboxEvent) -> None:
        body = event_envelope(event)
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": event.idempotency_key,
        }
        if self.secret:
            headers["X-Signature"] = sign_body(self.secret, body)

        try:
            response = await self._client.post(self.url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DrainApplyError(
                f"{ERR_DRAIN_APPLY.message}: {type(e).__name__}: {e}",
                error_code=ERR_DRAIN_APPLY,
            ) from e

        logger.debug(f"Projector: {event.event_type} {event.id} -> {response.status_code}")

    async def aclose(self) -> None:
        await self._client.aclose()


class LoggingProjector(Projector):
    """Logs events instead of delivering them (--dry-run)."""

    async def apply(self, event: OutboxEvent) -> None:
        logger.info(
            f"DRY RUN: {event.event_type} {event.idempotency_key}: {json.dumps(event.payload, default=str)[:200]}",
            extra={"event_id": event.id, "event_type": event.event_type},
        )


# =============================================================================
# Drainer
# =============================================================================


@dataclass
class DrainStats:
    """Runtime statistics for the drainer."""

    processed: int = 0
    failed: int = 0
    dead: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()


class OutboxDrainer:
    """Claims outbox events and applies them through projectors."""

    def __init__(
        self,
        repository: OutboxStore,
        projectors: Sequence[Projector],
        config: DrainConfig,
    ) -> None:
        self.repository = repository
        self.projectors = list(projectors)
        self.config = config
        self.stats = DrainStats()
        self._shutdown_event = asyncio.Event()

    def projector_for(self, event_type: str) -> Optional[Projector]:
        for projector in self.projectors:
            if projector.handles(event_type):
                return projector
        return None

    async def process_event(self, event: OutboxEvent, worker_id: Optional[str] = None) -> bool:
        """
        Apply, then ack or nack one claimed event. Never raises.

        Args:
            event: Event claimed by worker_id
            worker_id: Claim owner; defaults to the configured worker id

        Returns:
            True if the event was applied and acked
        """
        worker_id = worker_id or self.config.worker_id
        with LogContext(event_id=event.id, event_type=event.event_type):
            projector = self.projector_for(event.event_type)
            try:
                if projector is None:
                    raise DrainApplyError(
                        f"{ERR_DRAIN_NO_PROJECTOR.message}: {event.event_type}",
                        error_code=ERR_DRAIN_NO_PROJECTOR,
                    )

                with Timer() as timer:
                    await projector.apply(event)

            except Exception as e:
                await self._record_failure(event, e, worker_id)
                return False

            try:
                acked = await self.repository.ack(event.id, worker_id)
            except Exception as e:
                logger.exception(f"Ack failed for outbox event {event.id}: {e}")
                return False

            if not acked:
                logger.warning(f"Claim on outbox event {event.id} was lost before ack")
                return False

            self.stats.processed += 1
            logger.info(
                f"Applied {event.event_type} event {event.id}",
                extra={"attempts": event.attempts, "duration_ms": timer.elapsed_ms},
            )
            return True

    async def _record_failure(self, event: OutboxEvent, error: Exception, worker_id: str) -> None:
        attempt = event.attempts + 1
        delay = self.config.retry_policy.get_delay(attempt)
        message = str(error)[:500] or type(error).__name__
        logger.warning(
            f"Failed to apply outbox event {event.id} (attempt {attempt}/{self.config.max_attempts}): {message}",
            extra={"attempts": attempt},
        )
        try:
            status = await self.repository.nack(
                event.id,
                worker_id,
                message,
                max_attempts=self.config.max_attempts,
                delay_seconds=delay,
            )
        except Exception as e:
            logger.exception(f"Nack failed for outbox event {event.id}: {e}")
            return

        self.stats.failed += 1
        if status is OutboxStatus.DEAD:
            self.stats.dead += 1
            logger.error(
                f"Outbox event {event.id} quarantined after {attempt} attempts: {message}",
                extra={"status": status.value, "attempts": attempt},
            )
        elif status is None:
            logger.warning(f"Claim on outbox event {event.id} was lost before nack")

    async def maintain(self) -> tuple[int, int]:
        """Reap stuck claims and promote due retries. Returns (reaped, retried)."""
        reaped = await self.repository.reap_stuck(
            self.config.processing_timeout_seconds, self.config.max_attempts
        )
        retried = await self.repository.retry_due(self.config.max_attempts)
        if retried:
            logger.info(f"Requeued {retried} failed outbox events for retry", extra={"count": retried})
        return reaped, retried

    async def claim_and_process(self, worker_id: Optional[str] = None) -> tuple[int, int]:
        """Claim one batch as worker_id and process it in id order. Returns (claimed, applied)."""
        worker_id = worker_id or self.config.worker_id
        events = await self.repository.claim(worker_id, self.config.batch_size, self.config.event_types)
        applied = 0
        for event in events:
            if await self.process_event(event, worker_id):
                applied += 1
        return len(events), applied

    async def run_once(self) -> int:
        """
        One maintenance pass plus one claimed batch.

        Returns:
            Number of events applied
        """
        with LogContext(worker_id=self.config.worker_id):
            await self.maintain()
            claimed, applied = await self.claim_and_process()
            if claimed:
                logger.info(f"Claimed {claimed} outbox events, applied {applied}")
            return applied

    async def run_forever(self) -> None:
        """Run the worker pool and maintenance loop until shutdown."""
        self._setup_signal_handlers()
        logger.info(
            f"Outbox drain started (worker={self.config.worker_id})",
            extra={
                "worker_id": self.config.worker_id,
                "count": self.config.concurrency,
            },
        )
        logger.info(
            f"Event types: {self.config.event_types or 'all'}, poll interval: "
            f"{self.config.poll_interval_seconds}s, batch size: {self.config.batch_size}"
        )

        tasks = [
            asyncio.create_task(self._worker_loop(slot)) for slot in range(self.config.concurrency)
        ]
        tasks.append(asyncio.create_task(self._maintenance_loop()))
        try:
            await self._shutdown_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                f"Outbox drain stopped: processed={self.stats.processed} failed={self.stats.failed} "
                f"dead={self.stats.dead} uptime={self.stats.uptime_seconds:.0f}s"
            )

    def shutdown(self) -> None:
        """Signal graceful shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

    async def _sleep(self) -> None:
        """Sleep one poll interval, waking early on shutdown."""
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(), timeout=self.config.poll_interval_seconds
            )
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, slot: int) -> None:
        worker_id = f"{self.config.worker_id}/{slot}"
        logger.debug(f"Drain slot {worker_id} started")
        with LogContext(worker_id=worker_id):
            while not self._shutdown_event.is_set():
                try:
                    claimed, _ = await self.claim_and_process(worker_id)
                    if not claimed:
                        await self._sleep()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.exception(f"Drain slot {worker_id} error: {e}")
                    await self._sleep()

    async def _maintenance_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.maintain()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Outbox maintenance error: {e}")
            await self._sleep()


# =============================================================================
# Main Entry Point
# =============================================================================


def build_projectors(settings: Settings, dry_run: bool = False) -> list[Projector]:
    """
    Projectors for this process.

    Raises:
        ValueError: PROJECTOR_URL missing and not a dry run
    """
    if dry_run:
        return [LoggingProjector()]
    if not settings.PROJECTOR_URL:
        raise ValueError("PROJECTOR_URL is not configured (use --dry-run to log events instead)")
    return [
        HttpProjector(
            settings.PROJECTOR_URL,
            secret=settings.PROJECTOR_SECRET,
            timeout=settings.PROJECTOR_TIMEOUT,
        )
    ]


async def run_drain(
    settings: Optional[Settings] = None,
    *,
    once: bool = False,
    dry_run: bool = False,
) -> int:
    """
    Open the store, build projectors and drain.

    Returns:
        Process exit code: 0 ok, 1 configuration error, 2 store unavailable
    """
    settings = settings or get_settings()

    try:
        projectors = build_projectors(settings, dry_run=dry_run)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_CONFIG_ERROR

    try:
        pool = await open_pool(settings, role="drain")
    except PersistenceError as e:
        logger.critical(f"Outbox drain halted: {e.detail}", extra={"error_code": e.slug})
        for projector in projectors:
            await projector.aclose()
        return EXIT_STORE_UNAVAILABLE

    drainer = OutboxDrainer(OutboxRepository(pool), projectors, DrainConfig.from_settings(settings))
    try:
        if once:
            applied = await drainer.run_once()
            print(f"Applied {applied} outbox events")
        else:
            await drainer.run_forever()
    finally:
        for projector in projectors:
            await projector.aclose()
        await pool.close()
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Outbox drain for captured fact/triple events")
    parser.add_argument("--once", action="store_true", help="Drain one batch and exit")
    parser.add_argument("--dry-run", action="store_true", help="Log events instead of delivering them")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = get_settings()
    if args.verbose:
        settings = settings.model_copy(update={"LOG_LEVEL": "DEBUG"})
    configure_logging(settings)

    sys.exit(asyncio.run(run_drain(settings, once=args.once, dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
