"""
query.py - The boundary between varscan and a front end.

A front end parses, resolves and type-checks a unit and then answers these
queries about it.  Handles are opaque ints valid for one query object only.
Implementations must be side-effect free: the engine may ask the same
question about the same node more than once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional, Sequence

from varscan.models import ByteRange, Position

if TYPE_CHECKING:
    from varscan.typed_tree import Node


class TypedProgramQuery(ABC):
    """Read-only view of one type-checked unit."""

    @abstractmethod
    def items_of(self, unit: str) -> Sequence[int]:
        """Top-level item handles of *unit*, in source order."""
        pass

    @abstractmethod
    def node_of(self, handle: int) -> "Node":
        """The tagged node behind *handle*."""
        pass

    @abstractmethod
    def type_of(self, handle: int) -> Optional[str]:
        """Display form of the node's resolved type, if it has one."""
        pass

    @abstractmethod
    def span_of(self, handle: int) -> ByteRange:
        pass

    @abstractmethod
    def position_of(self, offset: int, unit: str) -> Position:
        """File, line and display column of a byte offset."""
        pass
