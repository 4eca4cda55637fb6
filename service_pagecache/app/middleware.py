"""
Starlette middleware serving pages through the page cache.
"""

from typing import Callable, Iterable, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import HandlerError, MalformedDescriptor
from shared.logging import clear_context, get_logger, set_request_id
from .caching.models import FragmentRenderer, RenderedPage, RequestDescriptor, TTL
from .caching.orchestrator import PageCache


CACHE_STATUS_HEADER = "X-Page-Cache"

# Never replayed from cache: they describe one particular transfer or client
_UNCACHED_HEADERS = {
    "content-length",
    "transfer-encoding",
    "connection",
    "date",
    "set-cookie",
    CACHE_STATUS_HEADER.lower(),
}
_NO_CACHE_DIRECTIVES = frozenset({"no-cache", "no-store"})
_PRIVATE_RESPONSE_DIRECTIVES = frozenset({"private", "no-store", "no-cache"})


def _cache_directives(value: str) -> set:
    """Directive names of a Cache-Control header value."""
    return {part.split("=", 1)[0].strip().lower() for part in value.split(",") if part.strip()}


class PageCacheMiddleware(BaseHTTPMiddleware):
    """Serve cacheable requests from the page cache.

    Only successful responses without cookies or a private, no-store or
    no-cache Cache-Control are cached; everything else
    passes through untouched. ``renderer_factory`` builds the fragment
    renderer bound to the current request; ``tags_for`` and ``ttl_for``
    choose per-request tags and TTL.
    """

    def __init__(
        self,
        app,
        page_cache: PageCache,
        renderer_factory: Callable[[Request], FragmentRenderer],
        *,
        tags_for: Optional[Callable[[Request], Iterable[str]]] = None,
        ttl_for: Optional[Callable[[Request], Optional[TTL]]] = None,
        cacheable_methods: Sequence[str] = ("GET",),
        skip_paths: Sequence[str] = (),
    ):
        super().__init__(app)
        self.page_cache = page_cache
        self.renderer_factory = renderer_factory
        self.tags_for = tags_for
        self.ttl_for = ttl_for
        self.cacheable_methods = {method.upper() for method in cacheable_methods}
        self.skip_paths = tuple(skip_paths)
        self.logger = get_logger("pagecache.middleware")

    async def dispatch(self, request: Request, call_next):
        if not self._is_cacheable_request(request):
            response = await call_next(request)
            response.headers[CACHE_STATUS_HEADER] = "BYPASS"
            return response

        set_request_id(request.headers.get("X-Request-ID"))
        try:
            return await self._serve(request, call_next)
        finally:
            clear_context()

    async def _serve(self, request: Request, call_next) -> Response:
        descriptor = RequestDescriptor(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
        )

        passthrough_headers = []

        async def handler() -> RenderedPage:
            response = await call_next(request)
            body = b"".join([chunk async for chunk in response.body_iterator])
            passthrough_headers[:] = response.raw_headers
            if (
                response.status_code != 200
                or "set-cookie" in response.headers
                or _cache_directives(response.headers.get("cache-control", "")) & _PRIVATE_RESPONSE_DIRECTIVES
            ):
                raise HandlerError(
                    "Response not cacheable",
                    status_code=response.status_code,
                    body=body,
                    headers=response.headers,
                )
            headers = {
                name: value
                for name, value in response.headers.items()
                if name.lower() not in _UNCACHED_HEADERS
            }
            return RenderedPage(body=body, headers=headers)

        try:
            result = await self.page_cache.serve(
                descriptor,
                handler,
                self.renderer_factory(request),
                variation=self.page_cache.key_deriver.variation_for(request.headers),
                tags=tuple(self.tags_for(request)) if self.tags_for else (),
                ttl=self.ttl_for(request) if self.ttl_for else None,
            )
        except MalformedDescriptor as exc:
            self.logger.warning("Rejected malformed request", url=str(request.url), error=exc.message)
            return JSONResponse(status_code=400, content=exc.to_response().model_dump())
        except HandlerError as exc:
            passthrough = Response(content=exc.body, status_code=exc.status_code)
            passthrough.raw_headers = [
                (name, value) for name, value in passthrough_headers if name.lower() != b"content-length"
            ] + [(b"content-length", str(len(exc.body)).encode("latin-1"))]
            passthrough.headers[CACHE_STATUS_HEADER] = "BYPASS"
            return passthrough

        response = Response(content=result.body, headers=dict(result.headers))
        response.headers[CACHE_STATUS_HEADER] = result.outcome.value.upper()
        return response

    def _is_cacheable_request(self, request: Request) -> bool:
        if request.method.upper() not in self.cacheable_methods:
            return False
        if any(request.url.path.startswith(path) for path in self.skip_paths):
            return False
        if "authorization" in request.headers:
            return False
        return not _cache_directives(request.headers.get("cache-control", "")) & _NO_CACHE_DIRECTIVES
