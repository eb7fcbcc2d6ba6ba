"""
rules.py - Per-node extraction rules.

Each rule recognises one node shape and turns a match into at most one
VariableRecord:

- DeclarationRule   ``let x = init;``  -> name, pattern span, type of ``init``
- ReassignmentRule  ``x = value``      -> name, target span, type of ``value``
- ReadRule          ``x`` (a local)    -> name, occurrence span, its own type

A node that triggers a rule but whose inner shape the rule cannot handle
(``let (a, b) = ...``) raises UnsupportedNodeError; the engine decides
whether that is a skip or a failure.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from pydantic import ValidationError

from varscan.errors import UnsupportedNodeError
from varscan.models import RecordKind, RuleKind, VariableRecord
from varscan.query import TypedProgramQuery
from varscan.spans import SpanResolver
from varscan.typed_tree import Node, Resolution

logger = logging.getLogger(__name__)


class Rule(ABC):
    """Base class for extraction rules."""

    kind: RuleKind
    record_kind: RecordKind

    def __init__(self, query: TypedProgramQuery, spans: SpanResolver) -> None:
        self._query = query
        self._spans = spans

    @abstractmethod
    def extract(self, handle: int, node: Node, assign_target: bool = False) -> Optional[VariableRecord]:
        """Return a record when *node* matches, else None.

        ``assign_target`` is True when *node* is the direct left-hand side
        of an assignment.
        """
        pass

    def _record(self, handle: int, name: str, span_handle: int, ty: Optional[str]) -> VariableRecord:
        start, end = self._spans.resolve_node(span_handle)
        try:
            return VariableRecord(name=name, kind=self.record_kind, start=start, end=end, ty=ty)
        except ValidationError as exc:
            raise UnsupportedNodeError(handle, f"invalid record: {exc.errors()[0]['msg']}") from exc


class DeclarationRule(Rule):
    kind = RuleKind.DECLARATION
    record_kind = RecordKind.DECLARATION

    def extract(self, handle: int, node: Node, assign_target: bool = False) -> Optional[VariableRecord]:
        if node.kind != "let":
            return None
        pattern = self._query.node_of(node.pattern)
        if pattern.kind != "pat_binding":
            raise UnsupportedNodeError(handle, f"{pattern.shape} pattern does not bind a single name")
        if pattern.subpattern is not None:
            raise UnsupportedNodeError(handle, f"binding '{pattern.name} @ ...' has a sub-pattern")

        # Only the initializer type is recorded, never the annotation.
        ty: Optional[str] = None
        if node.init is not None:
            ty = self._query.type_of(node.init)
            if ty is None:
                raise UnsupportedNodeError(handle, f"initializer of '{pattern.name}' has no resolved type")
        return self._record(handle, pattern.name, node.pattern, ty)


class ReassignmentRule(Rule):
    kind = RuleKind.REASSIGNMENT
    record_kind = RecordKind.REASSIGNMENT

    def extract(self, handle: int, node: Node, assign_target: bool = False) -> Optional[VariableRecord]:
        if node.kind != "assign" or node.operator != "=":
            return None
        target = self._query.node_of(node.target)
        if target.kind != "path" or not target.is_bare:
            return None
        ty = self._query.type_of(node.value)
        if ty is None:
            raise UnsupportedNodeError(handle, f"right-hand side assigned to '{target.name}' has no resolved type")
        return self._record(handle, target.name, node.target, ty)


class ReadRule(Rule):
    kind = RuleKind.READ
    record_kind = RecordKind.READ

    def extract(self, handle: int, node: Node, assign_target: bool = False) -> Optional[VariableRecord]:
        if node.kind != "path" or assign_target:
            return None
        if not node.is_bare or node.resolution != Resolution.LOCAL:
            return None
        return self._record(handle, node.name, handle, self._query.type_of(handle))


RULE_CLASSES: dict[RuleKind, type[Rule]] = {
    RuleKind.DECLARATION:  DeclarationRule,
    RuleKind.REASSIGNMENT: ReassignmentRule,
    RuleKind.READ:         ReadRule,
}


def build_rules(
    active: Iterable[RuleKind],
    query: TypedProgramQuery,
    spans: SpanResolver,
) -> list[Rule]:
    """Instantiate the active rules in their fixed application order."""
    wanted = set(active)
    rules = [cls(query, spans) for kind, cls in RULE_CLASSES.items() if kind in wanted]
    logger.debug("Active rules: %s", [r.kind.value for r in rules])
    return rules
