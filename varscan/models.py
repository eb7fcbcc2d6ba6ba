"""
models.py - Pydantic v2 data models for varscan.

Defines data structures for:
- Source positions and byte ranges
- Extracted variable records (the unit of output)
- Traversal, sink and scan configuration
- Skip events and run summaries
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class RecordKind(str, Enum):
    """What a record says about a variable binding."""
    DECLARATION = "declaration"
    REASSIGNMENT = "reassignment"
    READ = "read"


class RuleKind(str, Enum):
    """Selectable extraction rules. Each rule emits one RecordKind."""
    DECLARATION = "declaration"
    REASSIGNMENT = "reassignment"
    READ = "read"


class SinkMode(str, Enum):
    BATCH = "batch"    # one JSON array, written atomically at the end
    STREAM = "stream"  # one JSON line per record as soon as it is produced


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

class ByteRange(BaseModel):
    """A [lo, hi) extent in the global byte-offset space of a source map."""
    model_config = ConfigDict(frozen=True)

    lo: int = Field(ge=0)
    hi: int = Field(ge=0)

    @model_validator(mode="after")
    def check_order(self) -> "ByteRange":
        if self.hi < self.lo:
            raise ValueError(f"span end {self.hi} precedes start {self.lo}")
        return self


class Position(BaseModel):
    """One resolved endpoint of a span.

    ``column`` is a 1-based display column, not a byte offset.  ``file`` is
    None for synthetic buffers that have no on-disk file.
    """
    model_config = ConfigDict(frozen=True)

    line: int = Field(ge=1)
    column: int = Field(ge=1)
    file: Optional[str] = None

    def key(self) -> tuple[int, int]:
        return (self.line, self.column)


# ---------------------------------------------------------------------------
# Output record
# ---------------------------------------------------------------------------

class VariableRecord(BaseModel):
    """One extracted fact about a variable binding."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: RecordKind
    start: Position
    end: Position
    ty: Optional[str] = None

    @model_validator(mode="after")
    def check_span(self) -> "VariableRecord":
        same_file = self.start.file is not None and self.start.file == self.end.file
        if same_file and self.end.key() < self.start.key():
            raise ValueError(
                f"record '{self.name}' ends at {self.end.key()} before it starts at {self.start.key()}"
            )
        return self

    def to_wire(self) -> dict[str, Any]:
        """Flatten to the serialized record shape. Absent values are omitted."""
        wire: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "start_line": self.start.line,
            "start_col": self.start.column,
            "start_file": self.start.file,
            "end_line": self.end.line,
            "end_col": self.end.column,
            "end_file": self.end.file,
            "ty": self.ty,
        }
        return {k: v for k, v in wire.items() if v is not None}


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

class SkippedNode(BaseModel):
    """A node that matched a rule trigger but could not be extracted."""
    handle: int
    node_kind: str
    rule: Optional[RuleKind] = None
    reason: str
    start: Optional[Position] = None


class SinkReport(BaseModel):
    """What a sink did with the records it accepted."""
    written: int = 0
    dropped: int = 0     # failed to serialize
    duplicates: int = 0  # removed by the deduplicate mode


class AnalysisSummary(BaseModel):
    """Result of one analyze() run."""
    unit: str
    mode: SinkMode
    records: int = 0
    skipped_nodes: list[SkippedNode] = Field(default_factory=list)
    dropped_records: int = 0
    duplicates: int = 0
    output_path: Optional[str] = None

    @property
    def skipped_count(self) -> int:
        return len(self.skipped_nodes)


# ---------------------------------------------------------------------------
# Configuration models
# ---------------------------------------------------------------------------

class TraversalConfig(BaseModel):
    """Depth and rule selection for one traversal session."""
    model_config = ConfigDict(frozen=True)

    descend_into_nested_items: bool = True
    descend_into_expressions: bool = True
    active_rules: frozenset[RuleKind] = Field(
        default_factory=lambda: frozenset({RuleKind.DECLARATION, RuleKind.REASSIGNMENT})
    )
    # Raise on unsupported binding patterns instead of skipping them.
    strict_patterns: bool = False


class SinkConfig(BaseModel):
    mode: SinkMode = SinkMode.BATCH
    output_path: str = "output.json"
    deduplicate: bool = False
    indent: Optional[int] = None  # batch mode only


class ScanConfig(BaseModel):
    """Top-level configuration for a varscan run."""
    traversal: TraversalConfig = Field(default_factory=TraversalConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    # When set, expose prometheus metrics on this port for the run.
    metrics_port: Optional[int] = None
