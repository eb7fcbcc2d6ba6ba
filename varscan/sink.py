"""
sink.py - Collect records and turn them into an output artifact.

Two modes:

- BatchSink keeps every record of the session and, on finalize(), writes one
  JSON array to the target path through a temp file + os.replace, so readers
  never see a half-written document.
- StreamSink writes each record as one JSON line the moment it arrives.

A record that cannot be serialized (for example a type string carrying a
lone surrogate) is dropped on its own and counted; the count is logged and
returned in the SinkReport.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Optional, TextIO

from varscan.errors import SinkError
from varscan.metrics import DROPPED_RECORDS_TOTAL
from varscan.models import SinkConfig, SinkMode, SinkReport, VariableRecord

logger = logging.getLogger(__name__)


def encode_record(record: VariableRecord) -> dict[str, Any]:
    """Return the wire dict of *record* after proving it encodes as UTF-8 JSON."""
    wire = record.to_wire()
    json.dumps(wire, ensure_ascii=False).encode("utf-8")
    return wire


def dedupe_key(record: VariableRecord) -> tuple:
    """Identity of a repeated occurrence: same name, kind, file and type."""
    return (record.name, record.kind, record.start.file, record.ty)


class RecordSink(ABC):
    """Accepts records in production order."""

    def __init__(self, deduplicate: bool = False) -> None:
        self._deduplicate = deduplicate
        self._seen: set[tuple] = set()
        self.report = SinkReport()

    def accept(self, record: VariableRecord) -> None:
        if self._deduplicate:
            key = dedupe_key(record)
            if key in self._seen:
                self.report.duplicates += 1
                return
            self._seen.add(key)
        self._emit(record)

    def _drop(self, record: VariableRecord, exc: Exception) -> None:
        self.report.dropped += 1
        DROPPED_RECORDS_TOTAL.inc()
        logger.warning("Dropping record '%s' (%s): %s", record.name, record.kind.value, exc)

    @abstractmethod
    def _emit(self, record: VariableRecord) -> None:
        pass

    @abstractmethod
    def finalize(self) -> SinkReport:
        """Flush everything and report what was written and dropped."""
        pass


class BatchSink(RecordSink):
    """Buffers the whole session and writes one JSON array atomically."""

    def __init__(self, output_path: str, deduplicate: bool = False, indent: Optional[int] = None) -> None:
        super().__init__(deduplicate)
        self.output_path = output_path
        self._indent = indent
        self._records: list[VariableRecord] = []

    @property
    def records(self) -> list[VariableRecord]:
        return list(self._records)

    def _emit(self, record: VariableRecord) -> None:
        self._records.append(record)

    def render(self) -> bytes:
        """Serialize the accepted records, dropping the ones that fail."""
        wires: list[dict[str, Any]] = []
        for record in self._records:
            try:
                wires.append(encode_record(record))
            except (UnicodeEncodeError, TypeError, ValueError) as exc:
                self._drop(record, exc)
        self.report.written = len(wires)
        return json.dumps(wires, ensure_ascii=False, indent=self._indent).encode("utf-8")

    def finalize(self) -> SinkReport:
        self.report.dropped = 0
        payload = self.render()
        target = os.path.abspath(self.output_path)
        directory = os.path.dirname(target)
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(target)}.", suffix=".tmp", dir=directory)
        except OSError as exc:
            raise SinkError(self.output_path, str(exc)) from exc
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise SinkError(self.output_path, str(exc)) from exc

        if self.report.dropped:
            logger.warning(
                "Wrote %d record(s) to %s; dropped %d that could not be serialized",
                self.report.written, self.output_path, self.report.dropped,
            )
        else:
            logger.info("Wrote %d record(s) to %s", self.report.written, self.output_path)
        return self.report


class StreamSink(RecordSink):
    """Writes one JSON object per line as records arrive."""

    def __init__(self, stream: Optional[TextIO] = None, deduplicate: bool = False) -> None:
        super().__init__(deduplicate)
        self._stream = stream if stream is not None else sys.stdout

    def _emit(self, record: VariableRecord) -> None:
        try:
            line = json.dumps(encode_record(record), ensure_ascii=False)
            self._stream.write(line + "\n")
        except (UnicodeEncodeError, TypeError, ValueError) as exc:
            self._drop(record, exc)
            return
        self._stream.flush()
        self.report.written += 1

    def finalize(self) -> SinkReport:
        self._stream.flush()
        if self.report.dropped:
            logger.warning("Streamed %d record(s); dropped %d", self.report.written, self.report.dropped)
        return self.report


def make_sink(config: SinkConfig, stream: Optional[TextIO] = None) -> RecordSink:
    """Build the sink selected by *config*."""
    if config.mode == SinkMode.STREAM:
        return StreamSink(stream, deduplicate=config.deduplicate)
    return BatchSink(config.output_path, deduplicate=config.deduplicate, indent=config.indent)
