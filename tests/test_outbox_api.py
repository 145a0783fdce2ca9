"""
Tests for the outbox admin endpoints.

Verifies:
1. X-API-Key must equal ADMIN_API_KEY (403 otherwise)
2. With no ADMIN_API_KEY configured every route answers 503
3. stats / events / requeue return the repository results
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from croutons.config import Settings, get_settings
from croutons.main import create_app
from croutons.routers.outbox import get_outbox_repository
from tests.helpers import FakeOutboxRepository

ADMIN = {"X-API-Key": "admin-key"}


def _client(repo: FakeOutboxRepository, settings: Settings) -> TestClient:
    app = create_app(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_outbox_repository] = lambda: repo
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client(outbox_repo: FakeOutboxRepository, settings: Settings) -> TestClient:
    return _client(outbox_repo, settings)


class TestAdminKey:
    def test_missing_key_forbidden(self, client: TestClient) -> None:
        response = client.get("/v1/outbox/stats")
        assert response.status_code == 403
        assert response.json()["error"] == "admin_key_invalid"

    def test_wrong_key_forbidden(self, client: TestClient) -> None:
        response = client.get("/v1/outbox/stats", headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_unconfigured_key_disables_routes(
        self, outbox_repo: FakeOutboxRepository, settings: Settings
    ) -> None:
        client = _client(outbox_repo, settings.model_copy(update={"ADMIN_API_KEY": None}))
        response = client.post("/v1/outbox/requeue", json={}, headers=ADMIN)
        assert response.status_code == 503
        assert response.json()["error"] == "admin_disabled"


class TestOutboxRoutes:
    def test_stats(self, client: TestClient, outbox_repo: FakeOutboxRepository) -> None:
        outbox_repo.add()
        outbox_repo.add(status="dead", attempts=5)

        response = client.get("/v1/outbox/stats", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["pending"] == 1
        assert data["dead"] == 1
        assert data["total"] == 2

    def test_events_filtered_by_status(self, client: TestClient, outbox_repo: FakeOutboxRepository) -> None:
        outbox_repo.add()
        failed = outbox_repo.add(event_type="triple.insert", status="failed", attempts=1, error="boom")

        response = client.get("/v1/outbox/events?status=failed", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["events"][0]["id"] == failed["id"]
        assert data["events"][0]["error"] == "boom"

    def test_events_rejects_unknown_status(self, client: TestClient) -> None:
        response = client.get("/v1/outbox/events?status=lost", headers=ADMIN)
        assert response.status_code == 422

    def test_requeue_ids(self, client: TestClient, outbox_repo: FakeOutboxRepository) -> None:
        one = outbox_repo.add(status="failed", attempts=2)
        outbox_repo.add(status="failed", attempts=2)

        response = client.post("/v1/outbox/requeue", json={"event_ids": [one["id"]]}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"requeued": 1}
        assert outbox_repo.get(one["id"])["status"] == "pending"
        assert outbox_repo.get(one["id"])["attempts"] == 0

    def test_requeue_dead_requires_flag(self, client: TestClient, outbox_repo: FakeOutboxRepository) -> None:
        dead = outbox_repo.add(status="dead", attempts=5)

        assert client.post("/v1/outbox/requeue", json={}, headers=ADMIN).json() == {"requeued": 0}
        response = client.post("/v1/outbox/requeue", json={"include_dead": True}, headers=ADMIN)

        assert response.json() == {"requeued": 1}
        assert outbox_repo.get(dead["id"])["status"] == "pending"
