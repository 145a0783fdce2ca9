"""
tests/conftest.py

Shared fixtures for the Croutons test suite.

Unit tests never touch a database: the store is replaced by the in-memory
fakes in tests/helpers.py and FastAPI dependencies are overridden.

Integration tests (marked ``integration``) run against a real Postgres only
when DATABASE_URL is set, and are skipped otherwise.
"""

from __future__ import annotations

import os
from typing import Generator

import pytest

from croutons.config import Settings, reset_settings
from tests.helpers import SECRET, FakeFactStore, FakeOutboxRepository


@pytest.fixture(autouse=True)
def _fresh_settings_cache() -> Generator[None, None, None]:
    """Never leak cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    """Dev settings with a known HMAC secret and admin key."""
    return Settings(
        ENVIRONMENT="dev",
        DATABASE_URL="",
        PUBLISH_HMAC_KEY=SECRET,
        ADMIN_API_KEY="admin-key",
        INGEST_BATCH_POLICY="strict",
        MAX_LINE_BYTES=100_000,
        MAX_BODY_BYTES=1_000_000,
        WORKER_ID="outbox-test",
    )


@pytest.fixture
def lenient_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"INGEST_BATCH_POLICY": "lenient"})


@pytest.fixture
def fact_store() -> FakeFactStore:
    return FakeFactStore()


@pytest.fixture
def outbox_repo() -> FakeOutboxRepository:
    return FakeOutboxRepository()


@pytest.fixture
def database_url() -> str:
    """DATABASE_URL for integration tests; skips when unset."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set - skipping Postgres integration test")
    return url
