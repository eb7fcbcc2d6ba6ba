"""varscan error types."""

from __future__ import annotations

from typing import Optional


class VarscanError(Exception):
    """Base error for varscan."""

    pass


class FrontEndError(VarscanError):
    """The front end could not produce a typed program.

    ``stage`` names what failed: ``"front-end"`` for unreadable or
    unsupported input, ``"compilation"`` for errors in the analyzed unit.
    """

    def __init__(self, stage: str, message: str, location: Optional[str] = None) -> None:
        where = f" at {location}" if location else ""
        super().__init__(f"{stage} failed{where}: {message}")
        self.stage = stage
        self.message = message
        self.location = location


class UnsupportedNodeError(VarscanError):
    """A node matched a rule trigger but its inner shape is not supported."""

    def __init__(self, handle: int, reason: str) -> None:
        super().__init__(f"Unsupported node #{handle}: {reason}")
        self.handle = handle
        self.reason = reason


class SpanError(VarscanError):
    """A byte offset does not fall inside any known source buffer."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Offset {offset} is outside every source buffer")
        self.offset = offset


class SinkError(VarscanError):
    """The batch output target could not be written."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Cannot write {target}: {reason}")
        self.target = target
        self.reason = reason
