"""
Tests for POST /import.

Verifies the HTTP contract: status codes per error slug, the
{error, message, line?} error body, and the success counts.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from croutons.config import Settings
from croutons.ingest.coordinator import IngestionCoordinator
from croutons.main import create_app
from croutons.routers.ingest import get_coordinator
from tests.helpers import FakeFactStore, ndjson, signed_headers

A = {"source_url": "https://a.example/", "text": "Alpha"}
B = {"source_url": "https://b.example/", "text": "Beta"}


def _client(store: FakeFactStore, settings: Settings) -> TestClient:
    app = create_app(settings)
    app.dependency_overrides[get_coordinator] = lambda: IngestionCoordinator(store, settings)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client(fact_store: FakeFactStore, settings: Settings) -> TestClient:
    return _client(fact_store, settings)


class TestImportSuccess:
    def test_counts(self, client: TestClient) -> None:
        body = ndjson(A, B, A)
        response = client.post("/import", content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {
            "accepted": 2,
            "skipped": 1,
            "total": 3,
            "updated": 0,
            "triples_inserted": 0,
        }

    def test_replay_is_all_skipped(self, client: TestClient) -> None:
        body = ndjson(A, B)
        client.post("/import", content=body, headers=signed_headers(body))
        response = client.post("/import", content=body, headers=signed_headers(body))

        assert response.json()["accepted"] == 0
        assert response.json()["skipped"] == 2

    def test_upsert_query_flag(self, client: TestClient, fact_store: FakeFactStore) -> None:
        first = ndjson({**A, "natural_id": "n-1"})
        client.post("/import", content=first, headers=signed_headers(first))
        second = ndjson({**A, "text": "Alpha v2", "natural_id": "n-1"})

        response = client.post("/import?upsert=true", content=second, headers=signed_headers(second))

        assert response.status_code == 200
        assert response.json()["updated"] == 1
        assert fact_store.facts[0]["text"] == "Alpha v2"

    def test_lenient_includes_rejected(self, fact_store: FakeFactStore, lenient_settings: Settings) -> None:
        client = _client(fact_store, lenient_settings)
        body = ndjson(A, "{oops")

        response = client.post("/import", content=body, headers=signed_headers(body))

        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] == 1
        assert data["rejected"] == [{"line": 2, "error": "malformed_json_line", "message": data["rejected"][0]["message"]}]


class TestImportErrors:
    def test_missing_signature(self, client: TestClient) -> None:
        response = client.post("/import", content=ndjson(A))
        assert response.status_code == 401
        assert response.json()["error"] == "signature_invalid"

    def test_tampered_body(self, client: TestClient) -> None:
        body = ndjson(A)
        response = client.post("/import", content=ndjson(B), headers=signed_headers(body))
        assert response.status_code == 401

    def test_trailing_newline_stripped_by_proxy(self, client: TestClient) -> None:
        body = ndjson(A)
        response = client.post("/import", content=body.rstrip(b"\n"), headers=signed_headers(body))
        assert response.status_code == 200

    def test_empty_body(self, client: TestClient) -> None:
        response = client.post("/import", content=b"")
        assert response.status_code == 400
        assert response.json()["error"] == "empty_body"

    def test_no_lines(self, client: TestClient) -> None:
        body = b"\n\n"
        response = client.post("/import", content=body, headers=signed_headers(body))
        assert response.status_code == 400
        assert response.json()["error"] == "no_lines"

    def test_malformed_line_names_line_and_writes_nothing(
        self, client: TestClient, fact_store: FakeFactStore
    ) -> None:
        body = ndjson(A, "{bad", B)
        response = client.post("/import", content=body, headers=signed_headers(body))

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "malformed_json_line"
        assert data["line"] == 2
        assert "line 2" in data["message"]
        assert fact_store.facts == []
        assert fact_store.events == []

    def test_missing_required_field(self, client: TestClient) -> None:
        body = ndjson({"source_url": "https://a.example/"})
        response = client.post("/import", content=body, headers=signed_headers(body))
        assert response.status_code == 400
        assert response.json()["error"] == "missing_required_field"
        assert response.json()["line"] == 1

    def test_line_too_large(self, fact_store: FakeFactStore, settings: Settings) -> None:
        client = _client(fact_store, settings.model_copy(update={"MAX_LINE_BYTES": 20}))
        body = ndjson(A)
        response = client.post("/import", content=body, headers=signed_headers(body))
        assert response.status_code == 413
        assert response.json()["error"] == "line_too_large"

    def test_body_too_large(self, fact_store: FakeFactStore, settings: Settings) -> None:
        client = _client(fact_store, settings.model_copy(update={"MAX_BODY_BYTES": 16}))
        body = ndjson(A)
        response = client.post("/import", content=body, headers=signed_headers(body))
        assert response.status_code == 413
        assert response.json()["error"] == "body_too_large"

    def test_store_unavailable_without_pool(self, settings: Settings) -> None:
        """Without the lifespan the pool is never opened."""
        app = create_app(settings)
        client = TestClient(app, raise_server_exceptions=False)
        body = ndjson(A)

        response = client.post("/import", content=body, headers=signed_headers(body))

        assert response.status_code == 503
        assert response.json()["error"] == "store_unavailable"
