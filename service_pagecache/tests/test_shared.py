"""
Unit tests for shared configuration, errors, metrics and the circuit breaker.
"""

import pytest
from unittest.mock import AsyncMock
from prometheus_client import CollectorRegistry, generate_latest
from pydantic import ValidationError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.config import PageCacheSettings, get_settings
from shared.errors import CorruptSkeleton, MalformedDescriptor, StoreUnavailable
from shared.metrics import MetricsCollector


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=2, recovery_timeout=10.0,
                              expected_exceptions=(ConnectionError,), name="test", clock=clock)

    @pytest.mark.asyncio
    async def test_passes_results_through(self, breaker):
        func = AsyncMock(return_value="ok")

        assert await breaker.call(func, 1, flag=True) == "ok"
        func.assert_awaited_once_with(1, flag=True)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        func = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(func)

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(func)
        assert func.await_count == 2
        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_do_not_count(self, breaker):
        func = AsyncMock(side_effect=KeyError("bug"))

        for _ in range(3):
            with pytest.raises(KeyError):
                await breaker.call(func)

        assert breaker.get_state()["state"] == "closed"

    @pytest.mark.asyncio
    async def test_half_open_recovery(self, breaker, clock):
        """After the timeout one trial call is let through; success closes the circuit."""
        failing = AsyncMock(side_effect=ConnectionError("down"))
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        clock.now = 10.0
        assert await breaker.call(AsyncMock(return_value="back")) == "back"

        state = breaker.get_state()
        assert state["state"] == CircuitBreakerState.CLOSED.value
        assert state["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        failing = AsyncMock(side_effect=ConnectionError("down"))
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        clock.now = 10.0
        with pytest.raises(ConnectionError):
            await breaker.call(failing)

        assert breaker.is_open()


class TestSettings:
    """Test cases for PageCacheSettings."""

    def test_defaults(self):
        settings = get_settings()

        assert settings.store_backend == "memory"
        assert settings.default_ttl_seconds == 3600
        assert "utm_*" in settings.ignored_query_params
        assert settings.cacheable_methods == ["GET"]

    def test_normalizes_names(self):
        settings = get_settings(vary_headers=["Accept-Language"], cacheable_methods=["get", "head"])

        assert settings.vary_headers == ["accept-language"]
        assert settings.cacheable_methods == ["GET", "HEAD"]

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PAGECACHE_STORE_BACKEND", "redis")
        monkeypatch.setenv("PAGECACHE_DEFAULT_TTL_SECONDS", "0")

        settings = PageCacheSettings()

        assert settings.store_backend == "redis"
        assert settings.default_ttl_seconds == 0

    @pytest.mark.parametrize("overrides", [
        {"marker_start": "<x>", "marker_end": "<x>"},
        {"marker_end": ""},
        {"store_backend": "memcached"},
        {"default_ttl_seconds": -1},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValidationError):
            get_settings(**overrides)


class TestErrors:
    """Test cases for the error taxonomy."""

    def test_error_response(self):
        response = MalformedDescriptor("Request URL is empty", {"url": "''"}).to_response()

        assert response.code == "MALFORMED_DESCRIPTOR"
        assert response.message == "Request URL is empty"
        assert response.details == {"url": "''"}
        assert response.trace_id is None

    def test_store_unavailable_names_operation(self):
        error = StoreUnavailable("put", "timeout")

        assert error.operation == "put"
        assert error.message == "put: timeout"
        assert error.code == "STORE_UNAVAILABLE"

    def test_corrupt_skeleton_defaults(self):
        assert CorruptSkeleton().code == "CORRUPT_SKELETON"


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_counters_exported_through_registry(self):
        registry = CollectorRegistry()
        metrics = MetricsCollector("pagecache", registry)

        metrics.increment_counter("page_cache_requests_total", outcome="hit")
        metrics.increment_counter("page_cache_fragments_rendered_total", amount=3)
        metrics.set_gauge("page_cache_pending_writes", 2)

        output = generate_latest(registry).decode()
        assert 'page_cache_requests_total{outcome="hit"} 1.0' in output
        assert "page_cache_fragments_rendered_total 3.0" in output
        assert "page_cache_pending_writes 2.0" in output

    def test_unknown_metric_ignored(self):
        metrics = MetricsCollector("pagecache")

        metrics.increment_counter("no_such_metric", kind="x")
        metrics.observe_histogram("no_such_metric", 1.0)

    def test_independent_collectors(self):
        """Collectors without a registry can coexist."""
        first = MetricsCollector("pagecache")
        second = MetricsCollector("pagecache")

        first.increment_counter("page_cache_requests_total", outcome="miss")

        assert second.get_metric("page_cache_requests_total") is not first.get_metric("page_cache_requests_total")

    def test_time_operation_observes_histogram(self):
        registry = CollectorRegistry()
        metrics = MetricsCollector("pagecache", registry)

        with pytest.raises(RuntimeError):
            with metrics.time_operation("page_cache_handler_duration_seconds"):
                raise RuntimeError("handler failed")

        output = generate_latest(registry).decode()
        assert "page_cache_handler_duration_seconds_count 1.0" in output
