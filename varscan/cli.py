"""
cli.py - Typer-based CLI for varscan.

Commands:
  scan <path>    Inventory declarations / reassignments / reads of a unit
  dump <path>    Write the typed tree of a Rust crate as JSON
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from varscan.analysis import analyze, load_unit
from varscan.errors import FrontEndError, SinkError, UnsupportedNodeError
from varscan.models import RuleKind, ScanConfig, SinkMode
from varscan.output import get_formatter

app = typer.Typer(
    name="varscan",
    help="Inventory of variable declarations, reassignments and reads in typed source trees.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


humanize_option = typer.Option(
    False,
    "--humanize",
    "-H",
    help="Use human-readable output (tables) instead of JSON",
)

# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------


def _load_config(config_path: Optional[str] = None) -> ScanConfig:
    """Load scan config from JSON file or return defaults."""
    if config_path and Path(config_path).exists():
        return ScanConfig.model_validate_json(Path(config_path).read_text())
    # Check for varscan_config.json in CWD
    default = Path("varscan_config.json")
    if default.exists():
        return ScanConfig.model_validate_json(default.read_text())
    return ScanConfig()


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


# ---------------------------------------------------------------------------
# scan command
# ---------------------------------------------------------------------------


@app.command()
def scan(
    path: str = typer.Argument(..., help="Rust crate root (.rs) or typed tree dump (.json)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config JSON"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Batch output file"),
    stream: bool = typer.Option(False, "--stream", help="Write one JSON line per record to stdout"),
    rules: Optional[list[RuleKind]] = typer.Option(None, "--rule", "-r", help="Active rule (repeatable)"),
    nested: Optional[bool] = typer.Option(None, "--nested/--no-nested", help="Descend into nested items"),
    expressions: Optional[bool] = typer.Option(
        None, "--expressions/--no-expressions", help="Descend into sub-expressions"
    ),
    strict: bool = typer.Option(False, "--strict", help="Fail on unsupported binding patterns"),
    dedupe: bool = typer.Option(False, "--dedupe", help="Keep only the first occurrence of each name, kind, file and type"),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose prometheus metrics"),
    humanize: bool = humanize_option,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Scan the unit at PATH and write its variable records."""
    _setup_logging(verbose)
    cfg = _load_config(config)

    traversal: dict = {}
    if rules:
        traversal["active_rules"] = frozenset(rules)
    if nested is not None:
        traversal["descend_into_nested_items"] = nested
    if expressions is not None:
        traversal["descend_into_expressions"] = expressions
    if strict:
        traversal["strict_patterns"] = True

    sink = cfg.sink.model_copy()
    if output:
        sink.output_path = output
    if stream:
        sink.mode = SinkMode.STREAM
    if dedupe:
        sink.deduplicate = True

    cfg = cfg.model_copy(update={
        "traversal": cfg.traversal.model_copy(update=traversal),
        "sink": sink,
        "metrics_port": metrics_port if metrics_port is not None else cfg.metrics_port,
    })

    try:
        summary = analyze(path, cfg)
    except FrontEndError as exc:
        err_console.print(f"[red]{exc.stage} error:[/red] {exc}")
        raise typer.Exit(1)
    except UnsupportedNodeError as exc:
        err_console.print(f"[red]Unsupported pattern:[/red] {exc}")
        raise typer.Exit(1)
    except SinkError as exc:
        err_console.print(f"[red]Output error:[/red] {exc}")
        raise typer.Exit(1)

    if summary.mode == SinkMode.STREAM:
        # stdout carries the records; keep the summary off it.
        if summary.skipped_count or summary.dropped_records:
            err_console.print(
                f"[yellow]{summary.skipped_count} skipped, {summary.dropped_records} dropped[/yellow]"
            )
        return
    get_formatter(humanize).format_summary(summary)


# ---------------------------------------------------------------------------
# dump command
# ---------------------------------------------------------------------------


@app.command()
def dump(
    path: str = typer.Argument(..., help="Rust crate root"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Write the typed tree of the crate at PATH as JSON."""
    _setup_logging(verbose)
    try:
        tree = load_unit(path)
    except FrontEndError as exc:
        err_console.print(f"[red]{exc.stage} error:[/red] {exc}")
        raise typer.Exit(1)

    payload = tree.model_dump_json(indent=2)
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        console.print(f"[green]Wrote {len(tree.nodes)} nodes to {output}[/green]")
    else:
        print(payload)


if __name__ == "__main__":
    app()
