"""
varscan - variable-binding inventory for type-checked programs.

Walks a typed syntax tree and reports every local declaration, simple
reassignment and (optionally) local read with its source span and
resolved type.  Front end: Rust via tree-sitter, or a serialized typed tree.
"""

__version__ = "0.1.0"
__author__ = "varscan contributors"
