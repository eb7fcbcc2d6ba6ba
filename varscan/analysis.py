"""
analysis.py - One varscan run: front end -> traversal -> sink.

``analyze`` is the programmatic surface the CLI wraps.  A ``.json`` unit is
loaded as a TypedTree dump; anything else is treated as a Rust crate root.
"""

from __future__ import annotations

import logging
from typing import Optional, TextIO

from varscan.engine import TraversalEngine
from varscan.metrics import start_metrics_server
from varscan.models import AnalysisSummary, ScanConfig, SinkMode
from varscan.query import TypedProgramQuery
from varscan.rust_frontend import RustFrontEnd
from varscan.sink import make_sink
from varscan.typed_tree import TypedTree, load_typed_tree

logger = logging.getLogger(__name__)


def load_unit(unit_path: str) -> TypedTree:
    """Build the typed tree for *unit_path*.  Raises FrontEndError on setup failure."""
    if unit_path.endswith(".json"):
        return load_typed_tree(unit_path)
    return RustFrontEnd().load(unit_path)


def analyze_query(
    query: TypedProgramQuery,
    unit: str,
    config: Optional[ScanConfig] = None,
    stream: Optional[TextIO] = None,
) -> AnalysisSummary:
    """Run the engine over an already-built query and finalize the sink."""
    config = config or ScanConfig()
    sink = make_sink(config.sink, stream)
    engine = TraversalEngine(query, unit)
    records = engine.run(config.traversal, sink)
    report = sink.finalize()

    summary = AnalysisSummary(
        unit=unit,
        mode=config.sink.mode,
        records=len(records),
        skipped_nodes=engine.skipped_nodes,
        dropped_records=report.dropped,
        duplicates=report.duplicates,
        output_path=config.sink.output_path if config.sink.mode == SinkMode.BATCH else None,
    )
    if summary.skipped_count:
        logger.warning("%s: %d node(s) skipped", unit, summary.skipped_count)
    return summary


def analyze(
    unit_path: str,
    config: Optional[ScanConfig] = None,
    stream: Optional[TextIO] = None,
) -> AnalysisSummary:
    """Analyze one unit and write its records.

    Setup failures (unreadable input, syntax errors, missing modules) raise
    FrontEndError before anything is written.  Node-level problems are
    skipped or dropped and reported in the returned summary.
    """
    config = config or ScanConfig()
    if config.metrics_port:
        start_metrics_server(config.metrics_port)
    tree = load_unit(unit_path)
    return analyze_query(tree, tree.unit, config, stream)
