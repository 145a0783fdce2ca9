"""
croutons - operator CLI.

    croutons migrate                      apply tables, indexes and capture triggers
    croutons sign batch.ndjson            print the X-Signature for a body
    croutons stats                        outbox counts per status
    croutons requeue --id 7 --id 9        reset failed events to pending
    croutons drain --once --dry-run       drain one batch, logging instead of delivering

A .env file in the working directory is loaded before settings are read.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from dotenv import load_dotenv
from psycopg_pool import AsyncConnectionPool

from croutons import __version__
from croutons.config import configure_logging, get_settings
from croutons.core.errors import PersistenceError
from croutons.core.signature import sign_body
from croutons.db import open_pool
from croutons.store.outbox import OutboxRepository
from croutons.store.schema import SCHEMA_VERSION, apply_schema
from croutons.workers.outbox_drain import run_drain

T = TypeVar("T")

EXIT_STORE_UNAVAILABLE = 2


def _with_pool(role: str, action: Callable[[AsyncConnectionPool], Awaitable[T]]) -> T:
    """Open a pool, run action, close the pool. Store unavailable exits 2."""

    async def _run() -> T:
        pool = await open_pool(get_settings(), role=role)
        try:
            return await action(pool)
        finally:
            await pool.close()

    try:
        return asyncio.run(_run())
    except PersistenceError as e:
        click.echo(f"Error: {e.detail}", err=True)
        sys.exit(EXIT_STORE_UNAVAILABLE)


@click.group()
@click.version_option(__version__, prog_name="croutons")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Croutons graph service operations."""
    load_dotenv()
    settings = get_settings()
    if verbose:
        settings = settings.model_copy(update={"LOG_LEVEL": "DEBUG"})
    configure_logging(settings)


@main.command()
def migrate() -> None:
    """Create tables, indexes and outbox capture triggers (idempotent)."""

    async def _migrate(pool: AsyncConnectionPool) -> int:
        async with pool.connection() as conn:
            return await apply_schema(conn)

    count = _with_pool("migrate", _migrate)
    click.echo(f"Schema {SCHEMA_VERSION} applied ({count} statements)")


@main.command()
@click.argument("body", type=click.File("rb"), default="-")
@click.option(
    "--secret",
    envvar="PUBLISH_HMAC_KEY",
    required=True,
    help="HMAC secret (defaults to PUBLISH_HMAC_KEY)",
)
def sign(body: Any, secret: str) -> None:
    """Print the X-Signature header value for BODY (a file, or - for stdin)."""
    click.echo(sign_body(secret, body.read()))


@main.command()
def stats() -> None:
    """Outbox event counts per status."""

    async def _stats(pool: AsyncConnectionPool) -> dict[str, Any]:
        return await OutboxRepository(pool).stats()

    click.echo(json.dumps(_with_pool("admin", _stats), indent=2))


@main.command()
@click.option("--id", "event_ids", type=int, multiple=True, help="Event id (repeatable)")
@click.option("--include-dead", is_flag=True, help="Also requeue quarantined (dead) events")
@click.option("--yes", is_flag=True, help="Skip confirmation when requeueing every event")
def requeue(event_ids: tuple[int, ...], include_dead: bool, yes: bool) -> None:
    """Reset failed events to pending with attempts=0."""
    if not event_ids and not yes:
        scope = "failed and dead" if include_dead else "failed"
        click.confirm(f"Requeue ALL {scope} outbox events?", abort=True)

    ids: Optional[list[int]] = list(event_ids) or None

    async def _requeue(pool: AsyncConnectionPool) -> int:
        return await OutboxRepository(pool).requeue(ids, include_dead=include_dead)

    count = _with_pool("admin", _requeue)
    click.echo(f"Requeued {count} events")


@main.command()
@click.option("--once", is_flag=True, help="Drain one batch and exit")
@click.option("--dry-run", is_flag=True, help="Log events instead of delivering them")
def drain(once: bool, dry_run: bool) -> None:
    """Run the outbox drain worker."""
    sys.exit(asyncio.run(run_drain(get_settings(), once=once, dry_run=dry_run)))


if __name__ == "__main__":
    main()
