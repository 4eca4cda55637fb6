"""
Cache key derivation.

A key is the SHA-256 digest of a canonical request string, so equivalent
URLs (query order, host case, percent-encoding, default ports, tracking
parameters) collapse onto the same entry and key length stays bounded.
"""

import fnmatch
import hashlib
import re
from typing import Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, quote_from_bytes, urlsplit

from shared.errors import MalformedDescriptor
from .models import CacheKey, RequestDescriptor


_METHOD_RE = re.compile(r"^[A-Za-z]+$")
_DEFAULT_PORTS = {"http": 80, "https": 443}
PATH_SAFE = "/:@!$&'()*+,;=-._~"
_UNRESERVED = frozenset(b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~")
_ESCAPE_RE = re.compile(rb"%([0-9A-Fa-f]{2})")


def normalize_path(path: str) -> str:
    """Canonical percent-encoding of a URL path.

    Works on bytes so distinct octets never merge: escapes of unreserved
    characters are decoded, every other escape (including ``%2F``) is kept
    with upper-case hex, and raw characters outside the safe set are encoded
    from their UTF-8 bytes.
    """
    raw = path.encode("utf-8", "surrogateescape")
    parts = []
    pos = 0
    for match in _ESCAPE_RE.finditer(raw):
        parts.append(quote_from_bytes(raw[pos:match.start()], safe=PATH_SAFE))
        octet = int(match.group(1), 16)
        parts.append(chr(octet) if octet in _UNRESERVED else f"%{octet:02X}")
        pos = match.end()
    parts.append(quote_from_bytes(raw[pos:], safe=PATH_SAFE))
    return "".join(parts)


def _quote_component(value: str) -> str:
    return quote(value, safe="-._~", errors="surrogateescape")


class KeyDeriver:
    """Maps request descriptors to deterministic cache keys."""

    def __init__(
        self,
        ignored_query_params: Iterable[str] = (),
        vary_headers: Iterable[str] = (),
    ):
        self._ignored_exact = set()
        self._ignored_patterns: List[str] = []
        for name in ignored_query_params:
            if any(char in name for char in "*?["):
                self._ignored_patterns.append(name)
            else:
                self._ignored_exact.add(name)
        self.vary_headers = tuple(header.lower() for header in vary_headers)

    def derive(self, descriptor: RequestDescriptor, variation: Optional[Mapping[str, str]] = None) -> CacheKey:
        """Derive the cache key for a request and its variation attributes."""
        canonical = self.canonical_form(descriptor, variation)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def canonical_form(self, descriptor: RequestDescriptor, variation: Optional[Mapping[str, str]] = None) -> str:
        """Canonical string hashed by :meth:`derive`."""
        method = self._canonical_method(descriptor.method)
        origin, path, query = self._split_url(descriptor.url)

        lines = [method, f"{origin}{path}", query]
        for name, value in sorted((str(k).lower(), str(v)) for k, v in (variation or {}).items()):
            lines.append(f"{name}={value}")
        return "\n".join(lines)

    def canonical_path(self, descriptor: RequestDescriptor) -> str:
        """Normalized path used for prefix indexing."""
        _, path, _ = self._split_url(descriptor.url)
        return path

    def variation_for(self, headers: Mapping[str, str]) -> dict:
        """Pick the configured vary headers out of a request header mapping."""
        lowered = {str(name).lower(): value for name, value in headers.items()}
        return {name: lowered[name] for name in self.vary_headers if name in lowered}

    def is_ignored(self, param: str) -> bool:
        if param in self._ignored_exact:
            return True
        return any(fnmatch.fnmatchcase(param, pattern) for pattern in self._ignored_patterns)

    @staticmethod
    def _canonical_method(method: str) -> str:
        if not isinstance(method, str) or not _METHOD_RE.match(method):
            raise MalformedDescriptor("Invalid request method", {"method": repr(method)})
        return method.upper()

    def _split_url(self, url: str) -> Tuple[str, str, str]:
        if not isinstance(url, str) or not url:
            raise MalformedDescriptor("Request URL is empty", {"url": repr(url)})

        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise MalformedDescriptor("Unparseable request URL", {"url": url, "error": str(exc)})

        scheme = parts.scheme.lower()
        host = (parts.hostname or "").lower()
        if scheme and not host:
            raise MalformedDescriptor("Absolute URL without host", {"url": url})
        if host and not scheme:
            scheme = "http"

        origin = ""
        if host:
            if ":" in host:
                host = f"[{host}]"
            origin = f"{scheme}://{host}"
            if port is not None and port != _DEFAULT_PORTS.get(scheme):
                origin = f"{origin}:{port}"

        path = parts.path or "/"
        if not path.startswith("/"):
            raise MalformedDescriptor("Request path must be absolute", {"url": url})
        path = normalize_path(path)

        params = [
            (name, value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True, errors="surrogateescape")
            if not self.is_ignored(name)
        ]
        # Undecodable octets survive as surrogates and are re-encoded verbatim
        query = "&".join(f"{_quote_component(name)}={_quote_component(value)}" for name, value in sorted(params))
        return origin, path, query
