"""
test_models.py - Unit tests for varscan data models.

Tests:
    1. VariableRecord validation (name, span order, cross-file spans).
    2. to_wire() output shape and omission of absent values.
    3. Configuration defaults and JSON loading.
    4. TypedTree JSON round-trip through load_typed_tree().
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent))

from varscan.errors import FrontEndError
from varscan.models import (
    ByteRange, Position, RecordKind, RuleKind, ScanConfig, SinkMode,
    TraversalConfig, VariableRecord,
)
from varscan.source_map import SourceMap
from varscan.typed_tree import (
    BindingPatNode, ExprNode, LetNode, TreeBuilder, TypedTree, load_typed_tree,
)


def _pos(line: int, column: int, file: str | None = "main.rs") -> Position:
    return Position(line=line, column=column, file=file)


# ---------------------------------------------------------------------------
# VariableRecord
# ---------------------------------------------------------------------------

class TestVariableRecord:
    def test_valid_record(self):
        r = VariableRecord(name="a", kind=RecordKind.DECLARATION, start=_pos(3, 5), end=_pos(3, 6), ty="i32")
        assert r.ty == "i32"
        assert r.kind == RecordKind.DECLARATION

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            VariableRecord(name="", kind=RecordKind.DECLARATION, start=_pos(1, 1), end=_pos(1, 2))

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            VariableRecord(name="a", kind=RecordKind.READ, start=_pos(4, 1), end=_pos(3, 9))

    def test_cross_file_span_not_ordered(self):
        r = VariableRecord(
            name="a", kind=RecordKind.READ,
            start=_pos(9, 9, "a.rs"), end=_pos(1, 1, "b.rs"),
        )
        assert r.start.file != r.end.file

    def test_zero_column_rejected(self):
        with pytest.raises(ValidationError):
            Position(line=1, column=0)

    def test_records_are_hashable_and_equal_by_value(self):
        a = VariableRecord(name="a", kind=RecordKind.READ, start=_pos(1, 1), end=_pos(1, 2), ty="i32")
        b = VariableRecord(name="a", kind=RecordKind.READ, start=_pos(1, 1), end=_pos(1, 2), ty="i32")
        assert a == b
        assert len({a, b}) == 1


class TestWireFormat:
    def test_full_record(self):
        r = VariableRecord(name="b", kind=RecordKind.REASSIGNMENT, start=_pos(2, 5), end=_pos(2, 6), ty="bool")
        assert r.to_wire() == {
            "name": "b",
            "kind": "reassignment",
            "start_line": 2,
            "start_col": 5,
            "start_file": "main.rs",
            "end_line": 2,
            "end_col": 6,
            "end_file": "main.rs",
            "ty": "bool",
        }

    def test_absent_values_omitted(self):
        r = VariableRecord(
            name="x", kind=RecordKind.DECLARATION,
            start=_pos(1, 5, None), end=_pos(1, 6, None),
        )
        wire = r.to_wire()
        assert "ty" not in wire
        assert "start_file" not in wire
        assert "end_file" not in wire
        assert wire["start_col"] == 5


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfig:
    def test_traversal_defaults(self):
        cfg = TraversalConfig()
        assert cfg.descend_into_nested_items is True
        assert cfg.descend_into_expressions is True
        assert cfg.active_rules == frozenset({RuleKind.DECLARATION, RuleKind.REASSIGNMENT})
        assert cfg.strict_patterns is False

    def test_traversal_is_frozen(self):
        cfg = TraversalConfig()
        with pytest.raises(ValidationError):
            cfg.strict_patterns = True

    def test_scan_config_from_json(self):
        raw = """
        {
          "traversal": {"active_rules": ["read"], "descend_into_nested_items": false},
          "sink": {"mode": "stream", "deduplicate": true},
          "metrics_port": 9105
        }
        """
        cfg = ScanConfig.model_validate_json(raw)
        assert cfg.traversal.active_rules == frozenset({RuleKind.READ})
        assert cfg.traversal.descend_into_nested_items is False
        assert cfg.sink.mode == SinkMode.STREAM
        assert cfg.sink.deduplicate is True
        assert cfg.sink.output_path == "output.json"
        assert cfg.metrics_port == 9105

    def test_byte_range_order(self):
        with pytest.raises(ValidationError):
            ByteRange(lo=5, hi=4)


# ---------------------------------------------------------------------------
# TypedTree serialization
# ---------------------------------------------------------------------------

class TestTypedTreeDump:
    def _tree(self) -> TypedTree:
        sm = SourceMap()
        sm.add_file("main.rs", "let a = 1;", path="main.rs")
        b = TreeBuilder("main.rs", sm)
        init = b.add(ExprNode(span=ByteRange(lo=8, hi=9), ty="i32", expr_kind="literal"))
        pat = b.add(BindingPatNode(span=ByteRange(lo=4, hi=5), name="a"))
        b.add_root_item(b.add(LetNode(span=ByteRange(lo=0, hi=10), pattern=pat, init=init)))
        return b.build()

    def test_round_trip(self, tmp_path):
        tree = self._tree()
        path = tmp_path / "tree.json"
        path.write_text(tree.model_dump_json(), encoding="utf-8")
        loaded = load_typed_tree(str(path))
        assert loaded.nodes == tree.nodes
        assert loaded.node_of(1).kind == "pat_binding"
        assert loaded.position_of(4, "main.rs") == tree.position_of(4, "main.rs")

    def test_unknown_unit_rejected(self):
        with pytest.raises(KeyError):
            self._tree().items_of("other.rs")

    def test_missing_dump(self, tmp_path):
        with pytest.raises(FrontEndError) as exc_info:
            load_typed_tree(str(tmp_path / "nope.json"))
        assert exc_info.value.stage == "front-end"

    def test_invalid_dump(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"unit": "x", "nodes": [{"kind": "bogus"}]}', encoding="utf-8")
        with pytest.raises(FrontEndError):
            load_typed_tree(str(path))
