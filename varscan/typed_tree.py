"""
typed_tree.py - In-memory typed syntax tree and its query implementation.

Nodes form a tagged union discriminated by ``kind``; a handle is the node's
index in ``TypedTree.nodes``.  Every node carries its byte span and, where
the front end resolved one, the display form of its type.

The whole tree is a pydantic model, so another front end can hand varscan a
JSON dump of a typed tree instead of going through the Rust front end::

    tree = load_typed_tree("crate.typed.json")
    engine = TraversalEngine(tree)
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field, PrivateAttr, ValidationError

from varscan.errors import FrontEndError
from varscan.models import ByteRange, Position
from varscan.query import TypedProgramQuery
from varscan.source_map import SourceFile, SourceMap

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    """What a path expression refers to."""
    LOCAL = "local"        # a let binding or parameter of the enclosing body
    ITEM = "item"          # fn, const, static, unit struct ... of this unit
    EXTERNAL = "external"  # anything defined outside the unit
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class _NodeBase(BaseModel):
    span: ByteRange
    ty: Optional[str] = None


class ItemNode(_NodeBase):
    """fn / mod / struct / impl / const ...

    ``body`` is the item's executable body (fn block, const initializer).
    ``members`` are items the item contains as a namespace (mod, impl, trait).
    """
    kind: Literal["item"] = "item"
    item_kind: str
    name: Optional[str] = None
    body: Optional[int] = None
    members: list[int] = Field(default_factory=list)


class BlockNode(_NodeBase):
    kind: Literal["block"] = "block"
    stmts: list[int] = Field(default_factory=list)
    tail: Optional[int] = None


class LetNode(_NodeBase):
    """``let <pattern>[: annotation] [= init] [else els];``"""
    kind: Literal["let"] = "let"
    pattern: int
    init: Optional[int] = None
    els: Optional[int] = None
    annotation: Optional[str] = None


class BindingPatNode(_NodeBase):
    """``[ref] [mut] name [@ subpattern]``"""
    kind: Literal["pat_binding"] = "pat_binding"
    name: str
    mutable: bool = False
    by_ref: bool = False
    subpattern: Optional[int] = None


class CompoundPatNode(_NodeBase):
    """Any other pattern: tuple, struct, slice, wildcard, literal, or-pattern ..."""
    kind: Literal["pat_compound"] = "pat_compound"
    shape: str
    children: list[int] = Field(default_factory=list)


class AssignNode(_NodeBase):
    kind: Literal["assign"] = "assign"
    target: int
    value: int
    operator: str = "="


class PathNode(_NodeBase):
    kind: Literal["path"] = "path"
    segments: list[str] = Field(min_length=1)
    resolution: Resolution = Resolution.UNRESOLVED

    @property
    def name(self) -> str:
        return self.segments[-1]

    @property
    def is_bare(self) -> bool:
        return len(self.segments) == 1


class FieldNode(_NodeBase):
    kind: Literal["field"] = "field"
    base: int
    field: str


class ExprNode(_NodeBase):
    """Every other expression; ``children`` are its sub-expressions in source order."""
    kind: Literal["expr"] = "expr"
    expr_kind: str
    children: list[int] = Field(default_factory=list)


Node = Annotated[
    Union[
        ItemNode, BlockNode, LetNode, BindingPatNode, CompoundPatNode,
        AssignNode, PathNode, FieldNode, ExprNode,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Tree + query
# ---------------------------------------------------------------------------

class TypedTree(BaseModel, TypedProgramQuery):
    """A complete typed unit: source buffers, nodes, and top-level items."""
    unit: str
    files: list[SourceFile] = Field(default_factory=list)
    items: list[int] = Field(default_factory=list)
    nodes: list[Node] = Field(default_factory=list)

    _source_map: Optional[SourceMap] = PrivateAttr(default=None)

    @property
    def source_map(self) -> SourceMap:
        if self._source_map is None:
            self._source_map = SourceMap(self.files)
        return self._source_map

    def items_of(self, unit: str) -> Sequence[int]:
        self._check_unit(unit)
        return list(self.items)

    def node_of(self, handle: int) -> Node:
        if not 0 <= handle < len(self.nodes):
            raise KeyError(f"no node #{handle} in unit '{self.unit}'")
        return self.nodes[handle]

    def type_of(self, handle: int) -> Optional[str]:
        return self.node_of(handle).ty

    def span_of(self, handle: int) -> ByteRange:
        return self.node_of(handle).span

    def position_of(self, offset: int, unit: str) -> Position:
        self._check_unit(unit)
        return self.source_map.lookup(offset)

    def _check_unit(self, unit: str) -> None:
        if unit != self.unit:
            raise KeyError(f"unit '{unit}' is not served by this tree ('{self.unit}')")


class TreeBuilder:
    """Allocates handles while a front end lowers its syntax tree.

    Children are added before their parents, so a parent can reference the
    handles returned for them.
    """

    def __init__(self, unit: str, source_map: Optional[SourceMap] = None) -> None:
        self.unit = unit
        self.source_map = source_map if source_map is not None else SourceMap()
        self._nodes: list[Node] = []
        self._items: list[int] = []

    def add(self, node: Node) -> int:
        self._nodes.append(node)
        return len(self._nodes) - 1

    def get(self, handle: int) -> Node:
        return self._nodes[handle]

    def add_root_item(self, handle: int) -> None:
        self._items.append(handle)

    def build(self) -> TypedTree:
        tree = TypedTree(
            unit=self.unit,
            files=self.source_map.files,
            items=list(self._items),
            nodes=list(self._nodes),
        )
        tree._source_map = self.source_map
        logger.debug("Built typed tree '%s': %d nodes, %d items", self.unit, len(self._nodes), len(self._items))
        return tree


def load_typed_tree(path: str) -> TypedTree:
    """Load a typed tree serialized with ``TypedTree.model_dump_json()``."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise FrontEndError("front-end", f"cannot read typed tree: {exc}", path) from exc
    try:
        return TypedTree.model_validate_json(raw)
    except ValidationError as exc:
        raise FrontEndError("front-end", f"invalid typed tree: {exc.error_count()} error(s)", path) from exc
