"""
Base service class for page cache services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
from typing import Dict, Optional
import time
import os
from contextlib import asynccontextmanager

from shared.config import PageCacheSettings, get_settings
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from shared.errors import PageCacheError, MalformedDescriptor, StoreUnavailable


ERROR_STATUS_CODES = {
    MalformedDescriptor: 400,
    StoreUnavailable: 503,
}


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, settings: Optional[PageCacheSettings] = None):
        self.service_name = service_name
        self.config = settings or get_settings()
        self.logger = get_logger(service_name)
        self.registry = CollectorRegistry()
        self.metrics = get_metrics_collector(service_name, self.registry)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, json_logs=self.config.env != "local")

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Page cache - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Run the shutdown hook once the app stops serving."""
        try:
            yield
        finally:
            await self._on_shutdown()
            self.logger.info("Service stopped", service=self.service_name)

    async def _on_shutdown(self):
        """Hook for subclasses; runs once the server stops accepting requests."""

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.time()

            response = await call_next(request)

            duration = time.time() - start_time
            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration
            )
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )

            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            healthy = all(status == "ok" for status in dependencies.values())
            self.metrics.record_health_check("ok" if healthy else "error")

            return JSONResponse(
                status_code=200 if healthy else 503,
                content={
                    "service": self.service_name,
                    "status": "ok" if healthy else "degraded",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(PageCacheError)
        async def page_cache_exception_handler(request: Request, exc: PageCacheError):
            """Handle PageCacheError."""
            self.logger.error(
                "Page cache error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            return JSONResponse(
                status_code=ERROR_STATUS_CODES.get(type(exc), 400),
                content=exc.to_response().model_dump()
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
