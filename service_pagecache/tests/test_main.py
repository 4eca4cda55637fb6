"""
Unit tests for the page cache management service.
"""

import pytest
from unittest.mock import AsyncMock, patch
from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from fastapi.testclient import TestClient

from shared.config import get_settings
from shared.errors import StoreUnavailable
from service_pagecache.app.caching.models import RequestDescriptor
from service_pagecache.app.main import PageCacheService, create_app


class TestPageCacheService:
    """Test cases for PageCacheService."""

    @pytest.fixture
    def service(self):
        """Create PageCacheService instance."""
        return PageCacheService(get_settings(store_backend="memory"))

    @pytest.fixture
    def client(self, service):
        """Management API test client."""
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def site(self, service):
        """Content site served through the service's page cache."""
        app = FastAPI()

        @app.get("/articles/{article_id}")
        async def article(article_id: str):
            return HTMLResponse(f"<h1>{article_id}</h1>\x00DYNAMIC_START\x00user\x00DYNAMIC_END\x00")

        @app.get("/about")
        async def about():
            return HTMLResponse("<p>About</p>")

        service.install(
            app,
            lambda request: (lambda markup: b"guest"),
            tags_for=lambda request: [f"article:{request.url.path.rsplit('/', 1)[-1]}"],
        )
        with TestClient(app) as client:
            yield client

    def test_create_app(self):
        """create_app returns a FastAPI application."""
        app = create_app(get_settings(store_backend="memory"))

        assert isinstance(app, FastAPI)
        assert isinstance(app.state.pagecache_service, PageCacheService)

    def test_shutdown_drains_writes_and_closes_store(self, service):
        """Leaving the app lifespan flushes pending writes and closes the store."""
        with patch.object(service.page_cache, "drain", new_callable=AsyncMock) as mock_drain, \
                patch.object(service.store, "close", new_callable=AsyncMock) as mock_close:
            with TestClient(service.app) as client:
                client.get("/health")
                mock_close.assert_not_awaited()

        mock_drain.assert_awaited_once()
        mock_close.assert_awaited_once()

    def test_health_check(self, client):
        """Health reports the store dependency."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "pagecache"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok"}

    def test_health_check_degraded(self, client, service):
        with patch.object(service.store, "health_check", new_callable=AsyncMock) as mock_health:
            mock_health.return_value = False

            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["dependencies"] == {"store": "unavailable"}

    def test_metrics_endpoint(self, client, site):
        """Cache outcomes are exported as Prometheus metrics."""
        site.get("/about")
        site.get("/about")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'page_cache_requests_total{outcome="miss"} 1.0' in response.text
        assert 'page_cache_requests_total{outcome="hit"} 1.0' in response.text

    def test_cache_stats(self, client, site):
        site.get("/about")

        response = client.get("/cache/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["backend"] == "memory"
        assert data["entries"] == 1
        assert data["pending_writes"] == 0
        assert data["default_ttl_seconds"] == 3600

    def test_site_served_through_cache(self, site):
        first = site.get("/articles/42")
        second = site.get("/articles/42")

        assert first.headers["X-Page-Cache"] == "MISS"
        assert second.headers["X-Page-Cache"] == "HIT"
        assert second.content == b"<h1>42</h1>guest"

    def test_invalidate_key(self, client, site, service):
        """Entries can be deleted by cache key."""
        site.get("/articles/42")
        key = service.page_cache.key_deriver.derive(RequestDescriptor("GET", "http://testserver/articles/42"))

        response = client.delete(f"/cache/keys/{key}")

        assert response.status_code == 200
        assert response.json() == {"kind": "key", "target": key, "removed": 1}
        assert site.get("/articles/42").headers["X-Page-Cache"] == "MISS"

    def test_invalidate_by_url(self, client, site):
        site.get("/articles/42")

        response = client.post("/cache/invalidate", json={"url": "http://testserver/articles/42"})

        assert response.status_code == 200
        assert response.json()["removed"] == 1
        assert site.get("/articles/42").headers["X-Page-Cache"] == "MISS"

    def test_invalidate_by_tag(self, client, site):
        """Tag invalidation only touches tagged pages."""
        site.get("/articles/42")
        site.get("/articles/7")

        response = client.post("/cache/invalidate", json={"tag": "article:42"})

        assert response.json() == {"kind": "tag", "target": "article:42", "removed": 1}
        assert site.get("/articles/42").headers["X-Page-Cache"] == "MISS"
        assert site.get("/articles/7").headers["X-Page-Cache"] == "HIT"

    def test_invalidate_by_prefix(self, client, site):
        site.get("/articles/42")
        site.get("/articles/7")
        site.get("/about")

        response = client.post("/cache/invalidate", json={"prefix": "/articles/"})

        assert response.json()["removed"] == 2
        assert site.get("/about").headers["X-Page-Cache"] == "HIT"

    @pytest.mark.parametrize("body", [
        {},
        {"tag": "a", "prefix": "/b"},
    ])
    def test_invalidate_requires_one_target(self, client, body):
        """Exactly one target must be named."""
        response = client.post("/cache/invalidate", json=body)

        assert response.status_code == 422

    def test_flush(self, client, site):
        site.get("/articles/1")
        site.get("/about")

        response = client.delete("/cache")

        assert response.json() == {"kind": "all", "removed": 2}
        assert site.get("/about").headers["X-Page-Cache"] == "MISS"

    def test_store_unavailable_is_503(self, client, service):
        """Failed invalidations are reported, not swallowed."""
        with patch.object(service.store, "invalidate_by_tag", new_callable=AsyncMock) as mock_invalidate:
            mock_invalidate.side_effect = StoreUnavailable("invalidate_by_tag", "connection refused")

            response = client.post("/cache/invalidate", json={"tag": "article:42"})

        assert response.status_code == 503
        data = response.json()
        assert data["code"] == "STORE_UNAVAILABLE"
        assert data["message"] == "invalidate_by_tag: connection refused"
