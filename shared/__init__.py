"""
Shared utilities for the page cache.

Building blocks used by the cache core and the management service:

- config: Settings via pydantic-settings
- logging: Structured logging with trace and request correlation
- metrics: Prometheus metrics helpers
- errors: Error taxonomy and error responses
- circuit_breaker: Fail-fast protection for the cache backend
- base_service: FastAPI service scaffolding (health, metrics, error handling)

Do not import from service packages into shared/.
"""
