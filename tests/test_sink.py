"""
test_sink.py - Unit tests for the batch and streaming record sinks.

Tests:
    1. BatchSink writes one JSON array, in acceptance order, atomically.
    2. Records that cannot be encoded as UTF-8 are dropped and counted.
    3. An unwritable target raises SinkError and leaves no temp file.
    4. StreamSink writes one flushed JSON line per record.
    5. The deduplicate mode keeps the first occurrence of each name, kind,
       file and type; off by default.
"""

from __future__ import annotations

import io
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from varscan.errors import SinkError
from varscan.models import Position, RecordKind, SinkConfig, SinkMode, VariableRecord
from varscan.sink import BatchSink, StreamSink, make_sink


def _record(name: str, line: int = 1, ty: str | None = "i32", kind: RecordKind = RecordKind.DECLARATION):
    return VariableRecord(
        name=name, kind=kind,
        start=Position(line=line, column=5, file="main.rs"),
        end=Position(line=line, column=5 + len(name), file="main.rs"),
        ty=ty,
    )


def _unencodable(name: str) -> VariableRecord:
    # A lone surrogate survives in a Python str but has no UTF-8 encoding.
    return VariableRecord.model_construct(
        name=name, kind=RecordKind.DECLARATION,
        start=Position(line=1, column=1, file="main.rs"),
        end=Position(line=1, column=2, file="main.rs"),
        ty="\ud800",
    )


# ---------------------------------------------------------------------------
# BatchSink
# ---------------------------------------------------------------------------

class TestBatchSink:
    def test_writes_array_in_order(self, tmp_path):
        target = tmp_path / "output.json"
        sink = BatchSink(str(target))
        for i, name in enumerate(["a", "b", "instance_b"], start=1):
            sink.accept(_record(name, line=i))
        report = sink.finalize()

        data = json.loads(target.read_text(encoding="utf-8"))
        assert [d["name"] for d in data] == ["a", "b", "instance_b"]
        assert data[0]["start_line"] == 1
        assert report.written == 3
        assert report.dropped == 0

    def test_empty_session_writes_empty_array(self, tmp_path):
        target = tmp_path / "output.json"
        BatchSink(str(target)).finalize()
        assert json.loads(target.read_text(encoding="utf-8")) == []

    def test_replaces_existing_file_without_leftovers(self, tmp_path):
        target = tmp_path / "output.json"
        target.write_text("stale", encoding="utf-8")
        sink = BatchSink(str(target))
        sink.accept(_record("x"))
        sink.finalize()
        assert json.loads(target.read_text(encoding="utf-8"))[0]["name"] == "x"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["output.json"]

    def test_non_ascii_kept_verbatim(self, tmp_path):
        target = tmp_path / "output.json"
        sink = BatchSink(str(target))
        sink.accept(_record("名前", ty="&str"))
        sink.finalize()
        assert "名前" in target.read_text(encoding="utf-8")

    def test_unencodable_record_dropped(self, tmp_path):
        target = tmp_path / "output.json"
        sink = BatchSink(str(target))
        sink.accept(_record("good"))
        sink.accept(_unencodable("bad"))
        sink.accept(_record("also_good", line=2))
        report = sink.finalize()

        data = json.loads(target.read_text(encoding="utf-8"))
        assert [d["name"] for d in data] == ["good", "also_good"]
        assert report.dropped == 1
        assert report.written == 2

    def test_unwritable_target_raises(self, tmp_path):
        sink = BatchSink(str(tmp_path / "missing_dir" / "output.json"))
        sink.accept(_record("a"))
        with pytest.raises(SinkError):
            sink.finalize()
        assert list(tmp_path.iterdir()) == []

    def test_indent(self, tmp_path):
        target = tmp_path / "output.json"
        sink = BatchSink(str(target), indent=2)
        sink.accept(_record("a"))
        sink.finalize()
        assert "\n  " in target.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# StreamSink
# ---------------------------------------------------------------------------

class TestStreamSink:
    def test_one_line_per_record(self):
        out = io.StringIO()
        sink = StreamSink(out)
        sink.accept(_record("a"))
        assert json.loads(out.getvalue())["name"] == "a"
        sink.accept(_record("b", kind=RecordKind.REASSIGNMENT))
        lines = out.getvalue().splitlines()
        assert [json.loads(line)["kind"] for line in lines] == ["declaration", "reassignment"]
        assert sink.finalize().written == 2

    def test_unencodable_record_dropped(self):
        out = io.StringIO()
        sink = StreamSink(out)
        sink.accept(_unencodable("bad"))
        sink.accept(_record("ok"))
        report = sink.finalize()
        assert [json.loads(line)["name"] for line in out.getvalue().splitlines()] == ["ok"]
        assert report.dropped == 1


# ---------------------------------------------------------------------------
# Deduplication and factory
# ---------------------------------------------------------------------------

class TestDeduplicate:
    def test_duplicates_kept_by_default(self):
        out = io.StringIO()
        sink = StreamSink(out)
        sink.accept(_record("a"))
        sink.accept(_record("a"))
        assert len(out.getvalue().splitlines()) == 2

    def test_duplicates_dropped_when_enabled(self, tmp_path):
        target = tmp_path / "out.json"
        sink = BatchSink(str(target), deduplicate=True)
        sink.accept(_record("a", line=1))
        sink.accept(_record("a", line=4))
        sink.accept(_record("a", line=5, kind=RecordKind.READ))
        sink.accept(_record("a", line=6, ty="u8"))
        report = sink.finalize()
        assert report.written == 3
        assert report.duplicates == 1
        data = json.loads(target.read_text(encoding="utf-8"))
        assert [d["start_line"] for d in data] == [1, 5, 6]

    def test_make_sink(self, tmp_path):
        assert isinstance(make_sink(SinkConfig(mode=SinkMode.STREAM), io.StringIO()), StreamSink)
        batch = make_sink(SinkConfig(output_path=str(tmp_path / "o.json")))
        assert isinstance(batch, BatchSink)
        assert batch.output_path == str(tmp_path / "o.json")
