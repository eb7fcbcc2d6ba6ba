"""
output.py - Output formatters for CLI.

Abstraction layer for formatting CLI output. Supports:
- JSON (machine-friendly, default)
- Human-readable (Rich tables, with --humanize flag)
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod

from rich.console import Console
from rich.table import Table

from varscan.models import AnalysisSummary


console = Console()


class OutputFormatter(ABC):
    """Abstract base class for output formatters."""

    @abstractmethod
    def format_summary(self, summary: AnalysisSummary) -> None:
        """Format the outcome of one run."""
        pass


class JSONFormatter(OutputFormatter):
    """Machine-friendly JSON output (default)."""

    def format_summary(self, summary: AnalysisSummary) -> None:
        output = {
            "unit": summary.unit,
            "mode": summary.mode.value,
            "records": summary.records,
            "skipped": summary.skipped_count,
            "dropped": summary.dropped_records,
            "duplicates": summary.duplicates,
            "output": summary.output_path,
            "skipped_nodes": [
                {
                    "handle": s.handle,
                    "kind": s.node_kind,
                    "rule": s.rule.value if s.rule else None,
                    "reason": s.reason,
                    "line": s.start.line if s.start else None,
                }
                for s in summary.skipped_nodes
            ],
        }
        print(json.dumps(output, indent=2))


class HumanFormatter(OutputFormatter):
    """Human-readable output using Rich (table format)."""

    COLOR_MAP = {
        "declaration": "green",
        "reassignment": "yellow",
        "read": "cyan",
    }

    def _colorize_kind(self, kind: str) -> str:
        """Apply color styling to record kind based on COLOR_MAP."""
        color = self.COLOR_MAP.get(kind.lower())
        if not color:
            return kind
        return f"[{color}]{kind}[/{color}]"

    def format_summary(self, summary: AnalysisSummary) -> None:
        console.print(
            f"[bold]{summary.unit}[/bold]\n"
            f"  Records:    {summary.records}\n"
            f"  Skipped:    {summary.skipped_count}\n"
            f"  Dropped:    {summary.dropped_records}\n"
            + (f"  Duplicates: {summary.duplicates}\n" if summary.duplicates else "")
            + (f"  Output:     {summary.output_path}\n" if summary.output_path else "")
        )
        if summary.skipped_nodes:
            table = Table("Node", "Kind", "Rule", "Where", "Reason", title="Skipped nodes")
            for s in summary.skipped_nodes:
                where = f"{s.start.file or '<synthetic>'}:{s.start.line}:{s.start.column}" if s.start else ""
                rule = self._colorize_kind(s.rule.value) if s.rule else ""
                table.add_row(f"#{s.handle}", s.node_kind, rule, where, s.reason)
            console.print(table)


def get_formatter(humanize: bool = False) -> OutputFormatter:
    """Get the appropriate formatter based on flags."""
    if humanize:
        return HumanFormatter()
    return JSONFormatter()
