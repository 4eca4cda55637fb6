"""
Fragment splitting and reassembly.

The templating layer wraps per-request content in a pair of sentinel
markers. ``split`` swaps every such region for a placeholder so the rest of
the page can be cached; ``reassemble`` puts freshly rendered content back in
place of each placeholder on every serve.
"""

import inspect
import re
from typing import List, Sequence, Tuple, Union

from shared.errors import CorruptSkeleton
from shared.logging import get_logger
from .models import Fragment, FragmentRenderer


DEFAULT_MARKER_START = b"\x00DYNAMIC_START\x00"
DEFAULT_MARKER_END = b"\x00DYNAMIC_END\x00"

SLOT_PREFIX = b"\x00DYNAMIC_SLOT:"
SLOT_SUFFIX = b"\x00"
_SLOT_RE = re.compile(re.escape(SLOT_PREFIX) + rb"([^\x00]*)" + re.escape(SLOT_SUFFIX))


def placeholder_token(placeholder_id: str) -> bytes:
    """Bytes written into the skeleton for a placeholder id."""
    return SLOT_PREFIX + placeholder_id.encode("ascii") + SLOT_SUFFIX


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


class FragmentSplitter:
    """Separates dynamic regions from cacheable content and puts them back."""

    def __init__(self, marker_start: Union[str, bytes] = DEFAULT_MARKER_START,
                 marker_end: Union[str, bytes] = DEFAULT_MARKER_END):
        self.marker_start = _as_bytes(marker_start)
        self.marker_end = _as_bytes(marker_end)
        if not self.marker_start or not self.marker_end:
            raise ValueError("Dynamic region markers must not be empty")
        if self.marker_start in self.marker_end or self.marker_end in self.marker_start:
            raise ValueError("Dynamic region markers must not contain one another")
        self.logger = get_logger("pagecache.fragments")

    def split(self, raw_body: bytes) -> Tuple[bytes, Tuple[Fragment, ...]]:
        """Replace each well-formed dynamic region with a placeholder.

        Nested or unbalanced markers never fail the response: the offending
        region is kept as static content with its markers stripped.

        Raises:
            CorruptSkeleton: the body already contains placeholder tokens, so
                a skeleton built from it could not be reassembled reliably.
        """
        raw_body = bytes(raw_body)
        if SLOT_PREFIX in raw_body:
            raise CorruptSkeleton(
                "Response body already contains placeholder tokens",
                {"offset": raw_body.find(SLOT_PREFIX)},
            )

        start, end = self.marker_start, self.marker_end
        skeleton = bytearray()
        fragments: List[Fragment] = []
        pos = 0

        while True:
            next_start = raw_body.find(start, pos)
            next_end = raw_body.find(end, pos)

            if next_start == -1 and next_end == -1:
                skeleton += raw_body[pos:]
                break

            if next_end != -1 and (next_start == -1 or next_end < next_start):
                self.logger.warning("Stray dynamic end marker ignored", offset=next_end)
                skeleton += raw_body[pos:next_end]
                pos = next_end + len(end)
                continue

            skeleton += raw_body[pos:next_start]
            inner = next_start + len(start)
            close = raw_body.find(end, inner)
            reopen = raw_body.find(start, inner)

            if close == -1:
                self.logger.warning("Unterminated dynamic region kept static", offset=next_start)
                skeleton += self._strip_markers(raw_body[inner:])
                break

            if reopen == -1 or close < reopen:
                placeholder_id = str(len(fragments))
                fragments.append(Fragment(
                    placeholder_id=placeholder_id,
                    raw_markup=raw_body[inner:close],
                    position=len(skeleton),
                ))
                skeleton += placeholder_token(placeholder_id)
                pos = close + len(end)
                continue

            region_end, resume = self._matching_end(raw_body, inner)
            self.logger.warning(
                "Nested dynamic markers; region kept static",
                offset=next_start,
                length=region_end - next_start,
            )
            skeleton += self._strip_markers(raw_body[inner:region_end])
            pos = resume
            if resume >= len(raw_body):
                break

        return bytes(skeleton), tuple(fragments)

    async def reassemble(self, skeleton: bytes, fragments: Sequence[Fragment],
                         renderer: FragmentRenderer) -> bytes:
        """Substitute every placeholder, in encounter order, with rendered bytes.

        ``renderer`` receives a fragment's raw markup and may return bytes,
        str, or an awaitable of either.

        Raises:
            CorruptSkeleton: a placeholder is unknown or repeated, or a
                fragment has no placeholder in the skeleton.
        """
        table = {fragment.placeholder_id: fragment for fragment in fragments}
        if len(table) != len(fragments):
            raise CorruptSkeleton("Duplicate placeholder ids in fragment table")

        body = bytearray()
        seen = set()
        pos = 0
        matches = list(_SLOT_RE.finditer(skeleton))
        if len(matches) != skeleton.count(SLOT_PREFIX):
            raise CorruptSkeleton("Truncated placeholder token in skeleton")

        for match in matches:
            placeholder_id = match.group(1).decode("ascii", errors="replace")
            fragment = table.get(placeholder_id)
            if fragment is None:
                raise CorruptSkeleton("Unknown placeholder in skeleton", {"placeholder_id": placeholder_id})
            if placeholder_id in seen:
                raise CorruptSkeleton("Placeholder repeated in skeleton", {"placeholder_id": placeholder_id})
            seen.add(placeholder_id)

            body += skeleton[pos:match.start()]
            body += await self._render(renderer, fragment)
            pos = match.end()

        body += skeleton[pos:]

        missing = set(table) - seen
        if missing:
            raise CorruptSkeleton("Fragments without placeholders", {"placeholder_ids": sorted(missing)})

        return bytes(body)

    @staticmethod
    async def _render(renderer: FragmentRenderer, fragment: Fragment) -> bytes:
        rendered = renderer(fragment.raw_markup)
        if inspect.isawaitable(rendered):
            rendered = await rendered
        if isinstance(rendered, str):
            return rendered.encode("utf-8")
        if isinstance(rendered, (bytes, bytearray, memoryview)):
            return bytes(rendered)
        raise TypeError(f"Fragment renderer returned {type(rendered).__name__}, expected bytes or str")

    def _matching_end(self, raw_body: bytes, cursor: int) -> Tuple[int, int]:
        """Find the end marker closing a region that contains nested starts.

        Returns the offset of that marker and the offset just past it, or the
        body length twice when the region is never closed.
        """
        start, end = self.marker_start, self.marker_end
        depth = 1
        while depth:
            next_start = raw_body.find(start, cursor)
            next_end = raw_body.find(end, cursor)
            if next_end == -1:
                return len(raw_body), len(raw_body)
            if next_start != -1 and next_start < next_end:
                depth += 1
                cursor = next_start + len(start)
            else:
                depth -= 1
                cursor = next_end + len(end)
                if not depth:
                    return next_end, cursor
        return cursor, cursor

    def _strip_markers(self, region: bytes) -> bytes:
        return region.replace(self.marker_start, b"").replace(self.marker_end, b"")
