"""
test_source_map.py - Unit tests for SourceMap and SpanResolver.

Tests:
    1. Buffers are laid out back to back in one offset space.
    2. Offsets resolve to 1-based lines and display columns.
    3. Tabs count 4 columns, wide characters count 2.
    4. Offsets outside every buffer raise SpanError.
    5. Synthetic buffers resolve with file=None.
    6. A span's two ends resolve independently (cross-buffer spans).
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from varscan.errors import SpanError
from varscan.models import ByteRange
from varscan.source_map import SourceFile, SourceMap, display_width
from varscan.spans import SpanResolver
from varscan.typed_tree import TreeBuilder


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

class TestLayout:
    def test_files_are_contiguous(self):
        sm = SourceMap()
        a = sm.add_file("a.rs", "fn a() {}\n", path="a.rs")
        b = sm.add_file("b.rs", "fn b() {}\n", path="b.rs")
        assert a.start_pos == 0
        assert a.end_pos == 10
        assert b.start_pos == a.end_pos + 1

    def test_overlapping_buffers_rejected(self):
        files = [
            SourceFile(name="a.rs", start_pos=0, text="abc"),
            SourceFile(name="b.rs", start_pos=2, text="def"),
        ]
        with pytest.raises(ValueError):
            SourceMap(files)

    def test_rebuilt_from_files(self):
        sm = SourceMap()
        sm.add_file("a.rs", "let x = 1;\n", path="a.rs")
        sm.add_file("b.rs", "let y = 2;\n", path="b.rs")
        copy = SourceMap(sm.files)
        assert copy.lookup(sm.files[1].start_pos + 4) == sm.lookup(sm.files[1].start_pos + 4)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

class TestLookup:
    def test_first_byte(self):
        sm = SourceMap()
        sm.add_file("main.rs", "fn main() {}\n", path="src/main.rs")
        pos = sm.lookup(0)
        assert (pos.line, pos.column, pos.file) == (1, 1, "src/main.rs")

    def test_second_line(self):
        sm = SourceMap()
        sm.add_file("main.rs", "fn main() {\n    let a = 1;\n}\n", path="main.rs")
        pos = sm.lookup(len("fn main() {\n    let "))
        assert (pos.line, pos.column) == (2, 9)

    def test_end_of_buffer_is_valid(self):
        sm = SourceMap()
        sf = sm.add_file("main.rs", "ab", path="main.rs")
        pos = sm.lookup(sf.end_pos)
        assert (pos.line, pos.column) == (1, 3)

    def test_tab_counts_four(self):
        sm = SourceMap()
        sm.add_file("main.rs", "\tx", path="main.rs")
        assert sm.lookup(1).column == 5

    def test_wide_characters_count_two(self):
        text = "let 名 = 1;"
        sm = SourceMap()
        sm.add_file("main.rs", text, path="main.rs")
        after_name = len("let 名".encode("utf-8"))
        assert sm.lookup(after_name).column == 7

    def test_display_width(self):
        assert display_width("\t") == 4
        assert display_width("abc") == 3
        assert display_width("名前") == 4

    def test_out_of_range_raises(self):
        sm = SourceMap()
        sm.add_file("main.rs", "abc", path="main.rs")
        with pytest.raises(SpanError):
            sm.lookup(99)

    def test_empty_map_raises(self):
        with pytest.raises(SpanError):
            SourceMap().lookup(0)

    def test_lookup_in_second_buffer(self):
        sm = SourceMap()
        sm.add_file("a.rs", "abc\n", path="a.rs")
        b = sm.add_file("b.rs", "x\nyz", path="b.rs")
        pos = sm.lookup(b.start_pos + 3)
        assert (pos.line, pos.column, pos.file) == (2, 2, "b.rs")

    def test_synthetic_buffer_has_no_file(self):
        sm = SourceMap()
        sm.add_file("<expansion>", "x = 1")
        assert sm.lookup(0).file is None

    def test_slice(self):
        sm = SourceMap()
        sm.add_file("a.rs", "hello", path="a.rs")
        sf = sm.add_file("b.rs", "world", path="b.rs")
        assert sm.slice(sf.start_pos + 1, sf.start_pos + 4) == "orl"


# ---------------------------------------------------------------------------
# SpanResolver
# ---------------------------------------------------------------------------

class TestSpanResolver:
    def _tree(self):
        sm = SourceMap()
        sm.add_file("a.rs", "let first = 1;\n", path="a.rs")
        sm.add_file("b.rs", "second\n", path="b.rs")
        return TreeBuilder("unit", sm).build(), sm

    def test_resolves_both_ends(self):
        tree, _ = self._tree()
        start, end = SpanResolver(tree, "unit").resolve(ByteRange(lo=4, hi=9))
        assert (start.line, start.column, end.line, end.column) == (1, 5, 1, 10)
        assert start.file == end.file == "a.rs"

    def test_span_crossing_buffers(self):
        tree, sm = self._tree()
        b = sm.files[1]
        start, end = SpanResolver(tree, "unit").resolve(ByteRange(lo=4, hi=b.start_pos + 6))
        assert start.file == "a.rs"
        assert end.file == "b.rs"
        assert (end.line, end.column) == (1, 7)

    def test_unmapped_end_raises(self):
        tree, _ = self._tree()
        with pytest.raises(SpanError):
            SpanResolver(tree, "unit").resolve(ByteRange(lo=0, hi=10_000))
