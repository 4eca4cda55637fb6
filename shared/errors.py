"""
Shared error handling for the page cache.
"""

from typing import Dict, Any, Mapping, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class PageCacheError(Exception):
    """Base exception for page cache components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class MalformedDescriptor(PageCacheError):
    """Request descriptor could not be canonicalized into a cache key."""

    def __init__(self, message: str = "Malformed request descriptor", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_DESCRIPTOR", message, details)


class StoreUnavailable(PageCacheError):
    """Cache backend I/O failure."""

    def __init__(self, operation: str, message: str = "Cache store unavailable", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", f"{operation}: {message}", details)


class CorruptSkeleton(PageCacheError):
    """Skeleton placeholders do not match the fragment table."""

    def __init__(self, message: str = "Corrupt cached skeleton", details: Optional[Dict[str, Any]] = None):
        super().__init__("CORRUPT_SKELETON", message, details)


class HandlerError(PageCacheError):
    """The wrapped request handler failed or produced a non-cacheable response.

    Adapters raise this to hand a complete response back through the cache
    unchanged; ``status_code``, ``body`` and ``headers`` describe it.
    """

    def __init__(
        self,
        message: str = "Request handler failed",
        *,
        status_code: int = 500,
        body: bytes = b"",
        headers: Optional[Mapping[str, str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        super().__init__("HANDLER_ERROR", message, details)
