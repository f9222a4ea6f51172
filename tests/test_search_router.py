"""
Search API Router Tests

Tests for /api/search, /health and /metrics.
Run with: pytest tests/test_search_router.py -v
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

# Mark entire module as medium - uses TestClient with mocked dependencies
pytestmark = pytest.mark.medium

from fastapi.testclient import TestClient

from omnisearch.api.deps import get_search_service
from omnisearch.api.main import app
from omnisearch.config import DEFAULT_CONFIG
from omnisearch.search.embedding_cache import EmbeddingGenerator
from omnisearch.search.errors import AllSourcesFailed
from omnisearch.search.models import ContentRecord, SourceStats, SourceStatus
from omnisearch.search.unified_search import UnifiedSearchService
from omnisearch.search.vector_search import InMemoryContentStore, VectorSimilaritySearcher


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


def _record(record_id, x, y, content_type="message"):
    return ContentRecord(
        id=record_id,
        content_type=content_type,
        title=f"Doc {record_id}",
        body="Q3 project roadmap and milestones",
        embedding=[x, y],
        owner_id="user_123",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def search_service():
    """In-memory search service with a mocked embedding client."""
    openai_client = Mock()
    openai_client.embeddings.create = AsyncMock(
        return_value=Mock(data=[Mock(embedding=[1.0, 0.0])])
    )
    store = InMemoryContentStore(2, [
        _record("a", 1.0, 0.0),
        _record("b", 0.8, 0.6),
        _record("c", 0.0, 1.0),
    ])
    return UnifiedSearchService(
        embedding_generator=EmbeddingGenerator(client=openai_client, dimensions=2),
        searcher=VectorSimilaritySearcher(store),
        config=DEFAULT_CONFIG,
    )


@pytest.fixture
def client(search_service):
    """Create a test client with overridden dependencies."""
    app.dependency_overrides[get_search_service] = lambda: search_service

    yield TestClient(app)

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# POST /api/search
# -----------------------------------------------------------------------------


class TestSearchEndpoint:
    """Tests for POST /api/search."""

    def test_returns_ranked_results(self, client):
        response = client.post(
            "/api/search",
            json={"query": "project roadmap", "userId": "user_123", "filters": {"limit": 5}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["query"] == "project roadmap"
        assert data["count"] == 2
        assert [r["sourceId"] for r in data["results"]] == ["a", "b"]
        assert data["results"][0]["similarity"] == 1.0
        assert data["results"][1]["similarity"] == 0.8
        assert data["results"][0]["origin"] == "internal"
        assert "<mark>project</mark>" in data["results"][0]["highlight"]
        assert data["filters"]["userId"] == "user_123"
        assert data["filters"]["threshold"] == 0.7
        assert data["perSourceStats"][0]["source"] == "internal"
        assert data["perSourceStats"][0]["status"] == "success"
        assert "totalTimeMs" in data["performance"]

    def test_empty_query_is_400(self, client):
        response = client.post("/api/search", json={"query": "   ", "userId": "user_123"})

        assert response.status_code == 400
        assert "Query is required" in response.json()["detail"]

    def test_unknown_content_type_is_400(self, client):
        response = client.post(
            "/api/search",
            json={"query": "roadmap", "userId": "user_123", "filters": {"contentTypes": ["video"]}},
        )

        assert response.status_code == 400

    def test_invalid_filter_value_is_400(self, client):
        response = client.post(
            "/api/search",
            json={"query": "roadmap", "userId": "user_123", "filters": {"threshold": 1.5}},
        )

        assert response.status_code == 400

    def test_all_sources_failed_is_500_with_stats(self):
        service = Mock()
        service.search = AsyncMock(side_effect=AllSourcesFailed([
            SourceStats(source="internal", status=SourceStatus.ERROR, error="database down"),
            SourceStats(source="gmail", status=SourceStatus.TIMED_OUT, error="deadline exceeded"),
        ]))
        app.dependency_overrides[get_search_service] = lambda: service
        try:
            response = TestClient(app).post(
                "/api/search", json={"query": "roadmap", "userId": "user_123"}
            )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        data = response.json()
        assert data["code"] == "ALL_SOURCES_FAILED"
        assert [s["status"] for s in data["perSourceStats"]] == ["error", "timedOut"]


class TestSearchGetEndpoint:
    """Tests for GET /api/search."""

    def test_query_string_search(self, client):
        response = client.get(
            "/api/search",
            params={"q": "project roadmap", "userId": "user_123", "type": "message,file", "limit": 1},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["filters"]["contentTypes"] == ["message", "file"]

    def test_type_all_means_every_type(self, client):
        response = client.get(
            "/api/search", params={"q": "roadmap", "userId": "user_123", "type": "all"}
        )

        assert response.status_code == 200
        assert "event" in response.json()["filters"]["contentTypes"]

    def test_reversed_date_range_is_400(self, client):
        response = client.get(
            "/api/search",
            params={
                "q": "roadmap",
                "userId": "user_123",
                "startDate": "2024-02-01T00:00:00Z",
                "endDate": "2024-01-01T00:00:00Z",
            },
        )

        assert response.status_code == 400

    def test_invalid_limit_is_400(self, client):
        response = client.get(
            "/api/search", params={"q": "roadmap", "userId": "user_123", "limit": 0}
        )

        assert response.status_code == 400

    def test_missing_user_is_400(self, client):
        response = client.get("/api/search", params={"q": "roadmap"})

        assert response.status_code == 400


class TestCacheEndpoints:
    """Tests for /api/search/invalidate and /api/search/stats."""

    def test_invalidate_after_search(self, client):
        client.post("/api/search", json={"query": "roadmap", "userId": "user_123"})

        response = client.post("/api/search/invalidate", json={"userId": "user_123"})

        assert response.status_code == 200
        assert response.json() == {"userId": "user_123", "invalidated": 1}

    def test_stats(self, client):
        client.post("/api/search", json={"query": "roadmap", "userId": "user_123"})
        client.post("/api/search", json={"query": "roadmap", "userId": "user_123"})

        response = client.get("/api/search/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["queryCache"]["hits"] == 1
        assert data["embedding"]["misses"] == 1


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics(self, client):
        client.post("/api/search", json={"query": "roadmap", "userId": "user_123"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "omnisearch_requests_total" in response.text
