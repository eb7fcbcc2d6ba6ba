"""
spans.py - Resolve byte ranges into start/end positions.

Both ends are looked up independently: a span can begin in one file and end
in another (expanded or included code), so callers must not assume the two
positions share a file.
"""

from __future__ import annotations

import logging

from varscan.models import ByteRange, Position
from varscan.query import TypedProgramQuery

logger = logging.getLogger(__name__)


class SpanResolver:
    """Turns ByteRange values into (start, end) Position pairs for one unit."""

    def __init__(self, query: TypedProgramQuery, unit: str) -> None:
        self._query = query
        self._unit = unit

    def resolve(self, span: ByteRange) -> tuple[Position, Position]:
        """Return the positions of ``span.lo`` and ``span.hi``.

        ``end`` is the position just past the last character.  Raises
        SpanError when either offset lies outside every source buffer.
        """
        start = self._query.position_of(span.lo, self._unit)
        end = self._query.position_of(span.hi, self._unit)
        if start.file != end.file:
            logger.debug("Span %d..%d crosses buffers: %s -> %s", span.lo, span.hi, start.file, end.file)
        return start, end

    def resolve_node(self, handle: int) -> tuple[Position, Position]:
        return self.resolve(self._query.span_of(handle))
