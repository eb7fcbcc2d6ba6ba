"""
source_map.py - Global byte-offset space over the buffers of one unit.

Every buffer (a real file or a synthetic one, e.g. generated code) owns a
contiguous slice of a single offset space, so a span can start in one buffer
and end in another.  Lookups return 1-based lines and 1-based *display*
columns: a tab is 4 columns wide and wide characters count as 2.
"""

from __future__ import annotations

import bisect
import logging
from typing import Optional

from pydantic import BaseModel, Field
from rich.cells import cell_len

from varscan.errors import SpanError
from varscan.models import Position

logger = logging.getLogger(__name__)

TAB_WIDTH = 4


class SourceFile(BaseModel):
    """One buffer of the source map.

    ``path`` is the on-disk location; it is None for synthetic buffers,
    which still get a display ``name`` for logs.
    """
    name: str
    path: Optional[str] = None
    start_pos: int = Field(default=0, ge=0)
    text: str = ""

    @property
    def byte_len(self) -> int:
        return len(self.text.encode("utf-8"))

    @property
    def end_pos(self) -> int:
        """Last valid offset in this buffer (the position just past its final byte)."""
        return self.start_pos + self.byte_len


def display_width(text: str) -> int:
    """Terminal width of *text* as an editor would lay it out."""
    width = 0
    for ch in text:
        width += TAB_WIDTH if ch == "\t" else cell_len(ch)
    return width


class SourceMap:
    """Maps global byte offsets to (file, line, display column).

    Usage::

        sm = SourceMap()
        main = sm.add_file("src/main.rs", text, path="src/main.rs")
        pos = sm.lookup(main.start_pos + 17)
    """

    def __init__(self, files: Optional[list[SourceFile]] = None) -> None:
        self._files: list[SourceFile] = []
        self._starts: list[int] = []
        self._encoded: list[bytes] = []
        self._line_starts: list[list[int]] = []
        for f in files or []:
            self._register(f)

    @property
    def files(self) -> list[SourceFile]:
        return list(self._files)

    def add_file(self, name: str, text: str, path: Optional[str] = None) -> SourceFile:
        """Append a buffer after the last one and return it."""
        start = self._files[-1].end_pos + 1 if self._files else 0
        sf = SourceFile(name=name, path=path, start_pos=start, text=text)
        self._register(sf)
        logger.debug("SourceMap ADD : %s at %d (%d bytes)", name, start, sf.byte_len)
        return sf

    def _register(self, sf: SourceFile) -> None:
        if self._files and sf.start_pos <= self._files[-1].end_pos:
            raise ValueError(
                f"buffer '{sf.name}' starts at {sf.start_pos}, inside '{self._files[-1].name}'"
            )
        data = sf.text.encode("utf-8")
        starts = [0]
        starts.extend(i + 1 for i, b in enumerate(data) if b == 0x0A)
        self._files.append(sf)
        self._starts.append(sf.start_pos)
        self._encoded.append(data)
        self._line_starts.append(starts)

    def file_index(self, offset: int) -> int:
        idx = bisect.bisect_right(self._starts, offset) - 1
        if idx < 0 or offset > self._files[idx].end_pos:
            raise SpanError(offset)
        return idx

    def lookup(self, offset: int) -> Position:
        """Resolve *offset* to a Position.  Raises SpanError when unmapped."""
        idx = self.file_index(offset)
        sf = self._files[idx]
        local = offset - sf.start_pos
        starts = self._line_starts[idx]
        line_no = bisect.bisect_right(starts, local)
        prefix = self._encoded[idx][starts[line_no - 1]:local]
        column = display_width(prefix.decode("utf-8", errors="replace")) + 1
        return Position(line=line_no, column=column, file=sf.path)

    def slice(self, lo: int, hi: int) -> str:
        """Source text between two offsets of the same buffer."""
        idx = self.file_index(lo)
        base = self._files[idx].start_pos
        return self._encoded[idx][lo - base:hi - base].decode("utf-8", errors="replace")
