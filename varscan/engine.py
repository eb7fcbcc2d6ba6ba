"""
engine.py - The configurable typed-tree walker.

The walk is depth-first and pre-order, starting from the unit's top-level
items.  Every visited node is offered to every active rule.  Two flags in
TraversalConfig bound the walk:

- ``descend_into_nested_items``: items defined inside a body (a fn inside a
  fn, a struct inside a block) are visited only when set.  They are queued
  and walked after the enclosing item's own body and members.
- ``descend_into_expressions``: when unset, only the direct statements and
  tail expression of each body are offered to the rules; nothing below them
  is walked.

Module-like items (mod, impl, trait) expose ``members``; members are not
nested items and are always visited.  Let patterns are never visited.

The engine keeps no tree state of its own: the explicit stack holds
(handle, context) frames only.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple, Optional, Sequence, Union

from varscan.errors import SpanError, UnsupportedNodeError
from varscan.metrics import (
    NODES_VISITED, RECORDS_TOTAL, SKIPPED_NODES_TOTAL, TRAVERSAL_LATENCY, track_latency,
)
from varscan.models import Position, SkippedNode, TraversalConfig, VariableRecord
from varscan.query import TypedProgramQuery
from varscan.rules import Rule, build_rules
from varscan.spans import SpanResolver
from varscan.typed_tree import Node

if TYPE_CHECKING:
    from varscan.sink import RecordSink

logger = logging.getLogger(__name__)


class _Visit(NamedTuple):
    handle: int
    # Nested items found under this frame are queued here; None outside bodies.
    pending: Optional[list[int]] = None
    shallow: bool = False
    assign_target: bool = False


class _Flush(NamedTuple):
    """Marks the end of an item: its queued nested items are walked next."""
    pending: list[int]


_Frame = Union[_Visit, _Flush]


class TraversalEngine:
    """Walks one typed unit and applies the extraction rules.

    Usage::

        engine = TraversalEngine(tree, tree.unit)
        records = engine.traverse(tree.items_of(tree.unit), TraversalConfig())
        print(len(engine.skipped_nodes))
    """

    def __init__(self, query: TypedProgramQuery, unit: str) -> None:
        self._query = query
        self._unit = unit
        self._spans = SpanResolver(query, unit)
        self.skipped_nodes: list[SkippedNode] = []
        self.nodes_visited: int = 0

    def run(self, config: TraversalConfig, sink: Optional["RecordSink"] = None) -> list[VariableRecord]:
        """Traverse every top-level item of the unit."""
        return self.traverse(self._query.items_of(self._unit), config, sink)

    @track_latency(TRAVERSAL_LATENCY)
    def traverse(
        self,
        root_items: Sequence[int],
        config: TraversalConfig,
        sink: Optional["RecordSink"] = None,
    ) -> list[VariableRecord]:
        """Walk *root_items* in order and return records in visitation order.

        Each record is also handed to *sink* as soon as it is produced.
        """
        rules = build_rules(config.active_rules, self._query, self._spans)
        records: list[VariableRecord] = []
        self.skipped_nodes = []
        self.nodes_visited = 0

        stack: list[_Frame] = [_Visit(h) for h in reversed(root_items)]
        while stack:
            frame = stack.pop()
            if isinstance(frame, _Flush):
                stack.extend(_Visit(h) for h in reversed(frame.pending))
                continue

            node = self._query.node_of(frame.handle)
            if node.kind == "item" and frame.pending is not None:
                # Reached through a body: a nested item.
                if config.descend_into_nested_items:
                    frame.pending.append(frame.handle)
                else:
                    logger.debug("Skipping nested item #%d (%s %s)", frame.handle, node.item_kind, node.name)
                continue

            self.nodes_visited += 1
            for record in self._apply(rules, frame, node, config):
                records.append(record)
                RECORDS_TOTAL.labels(kind=record.kind.value).inc()
                if sink is not None:
                    sink.accept(record)

            if not frame.shallow:
                self._push_children(stack, frame, node, config)

        NODES_VISITED.set(self.nodes_visited)
        logger.info(
            "Traversed %s: %d nodes, %d records, %d skipped",
            self._unit, self.nodes_visited, len(records), len(self.skipped_nodes),
        )
        return records

    # ------------------------------------------------------------------
    # Rule application
    # ------------------------------------------------------------------

    def _apply(
        self,
        rules: list[Rule],
        frame: _Visit,
        node: Node,
        config: TraversalConfig,
    ) -> list[VariableRecord]:
        found: list[VariableRecord] = []
        for rule in rules:
            try:
                record = rule.extract(frame.handle, node, frame.assign_target)
            except UnsupportedNodeError as exc:
                if config.strict_patterns:
                    raise
                self._skip(frame.handle, node, rule, exc.reason)
                continue
            except SpanError as exc:
                self._skip(frame.handle, node, rule, str(exc))
                continue
            if record is not None:
                found.append(record)
        return found

    def _skip(self, handle: int, node: Node, rule: Rule, reason: str) -> None:
        start: Optional[Position] = None
        try:
            start = self._query.position_of(node.span.lo, self._unit)
        except SpanError:
            pass
        event = SkippedNode(handle=handle, node_kind=node.kind, rule=rule.kind, reason=reason, start=start)
        self.skipped_nodes.append(event)
        SKIPPED_NODES_TOTAL.inc()
        where = f"{start.file or '<synthetic>'}:{start.line}:{start.column}" if start else "<unknown>"
        logger.warning("Skipped %s node #%d at %s: %s", node.kind, handle, where, reason)

    # ------------------------------------------------------------------
    # Descent
    # ------------------------------------------------------------------

    def _push_children(
        self,
        stack: list[_Frame],
        frame: _Visit,
        node: Node,
        config: TraversalConfig,
    ) -> None:
        kind = node.kind
        pending = frame.pending

        if kind == "item":
            own: list[int] = []
            stack.append(_Flush(own))
            stack.extend(_Visit(m) for m in reversed(node.members))
            if node.body is not None:
                self._push_body(stack, node.body, own, config)
            return

        children: list[_Visit]
        if kind == "block":
            children = [_Visit(h, pending) for h in node.stmts]
            if node.tail is not None:
                children.append(_Visit(node.tail, pending))
        elif kind == "let":
            children = [_Visit(h, pending) for h in (node.init, node.els) if h is not None]
        elif kind == "assign":
            target = self._query.node_of(node.target)
            children = [
                _Visit(node.target, pending, assign_target=target.kind == "path"),
                _Visit(node.value, pending),
            ]
        elif kind == "field":
            children = [_Visit(node.base, pending)]
        elif kind == "expr":
            children = [_Visit(h, pending) for h in node.children]
        else:
            # path, patterns: leaves for the walk
            children = []
        stack.extend(reversed(children))

    def _push_body(self, stack: list[_Frame], body: int, pending: list[int], config: TraversalConfig) -> None:
        if config.descend_into_expressions:
            stack.append(_Visit(body, pending))
            return
        node = self._query.node_of(body)
        if node.kind != "block":
            stack.append(_Visit(body, pending, shallow=True))
            return
        direct = list(node.stmts)
        if node.tail is not None:
            direct.append(node.tail)
        stack.extend(_Visit(h, pending, shallow=True) for h in reversed(direct))
