"""
rust_frontend.py - Tree-sitter based front end for Rust crates.

Responsibilities:
- Parse the crate root and every out-of-line module (`mod name;`) it reaches,
  laying the files out in one SourceMap.
- Reject units with syntax errors or missing module files.
- Lower the tree-sitter CST into a TypedTree: items, blocks, let
  declarations, patterns and expressions.
- Resolve single-segment paths lexically (local binding / crate item /
  external) and infer a display type for each expression.

Type inference is local and best effort.  It covers literals (with the
expected type of an annotated `let`), struct and tuple-struct constructors,
calls to functions and methods declared in the crate, references, casts,
blocks, `if`/`match`, operators, field access on crate structs and reads of
local bindings.  Anything it cannot name is rendered as `_`, which means
"not inferred"; no expression is left without a type, so declarations are
never skipped for a missing initializer type when the tree comes from here.

Identifiers inside macro token trees are not parsed as expressions.  Those
that name a local binding become path children of the macro node.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

import tree_sitter_rust as tsrust
from tree_sitter import Language, Node, Parser, Tree

from varscan.errors import FrontEndError
from varscan.metrics import FRONTEND_LATENCY, track_latency
from varscan.models import ByteRange
from varscan.source_map import SourceFile, SourceMap
from varscan.typed_tree import (
    AssignNode, BindingPatNode, BlockNode, CompoundPatNode, ExprNode, FieldNode,
    ItemNode, LetNode, PathNode, Resolution, TreeBuilder, TypedTree,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Grammar vocabulary
# ---------------------------------------------------------------------------

ITEM_TYPES: dict[str, str] = {
    "function_item":             "fn",
    "function_signature_item":   "fn",
    "mod_item":                  "mod",
    "impl_item":                 "impl",
    "trait_item":                "trait",
    "struct_item":               "struct",
    "enum_item":                 "enum",
    "union_item":                "union",
    "type_item":                 "type",
    "const_item":                "const",
    "static_item":               "static",
    "use_declaration":           "use",
    "extern_crate_declaration":  "extern_crate",
    "macro_definition":          "macro_rules",
    "foreign_mod_item":          "extern_block",
}

# Named nodes that never carry program structure.
EXTRAS = frozenset({
    "line_comment", "block_comment", "attribute_item", "inner_attribute_item",
    "empty_statement", "label",
})

# Named nodes that are never expressions (used by the generic fallback).
NON_EXPRESSIONS = frozenset({
    "field_identifier", "type_identifier", "primitive_type", "mutable_specifier",
    "token_tree", "type_arguments", "type_parameters", "lifetime", "visibility_modifier",
    "shorthand_field_identifier", "escape_sequence", "string_content",
})

INT_TYPES = frozenset({
    "i8", "i16", "i32", "i64", "i128", "isize",
    "u8", "u16", "u32", "u64", "u128", "usize",
})
FLOAT_TYPES = frozenset({"f32", "f64"})
BOOL_OPERATORS = frozenset({"==", "!=", "<", ">", "<=", ">=", "&&", "||"})

# Return types of a few std methods, keyed by method name.  None = receiver type.
STD_METHODS: dict[str, Optional[str]] = {
    "to_string":   "std::string::String",
    "len":         "usize",
    "is_empty":    "bool",
    "contains":    "bool",
    "starts_with": "bool",
    "ends_with":   "bool",
    "is_some":     "bool",
    "is_none":     "bool",
    "is_ok":       "bool",
    "is_err":      "bool",
    "clone":       None,
}

MACRO_TYPES: dict[str, str] = {
    "println": "()", "print": "()", "eprintln": "()", "eprint": "()",
    "assert": "()", "assert_eq": "()", "assert_ne": "()",
    "debug_assert": "()", "debug_assert_eq": "()", "debug_assert_ne": "()",
    "format": "std::string::String",
    "panic": "!", "todo": "!", "unimplemented": "!", "unreachable": "!",
}

UNKNOWN = "_"

# Prelude variants that a bare identifier pattern matches instead of binding.
PRELUDE_UNIT_NAMES = frozenset({"None"})

_INT_SUFFIX = re.compile(r"(i8|i16|i32|i64|i128|isize|u8|u16|u32|u64|u128|usize)$")
_FLOAT_SUFFIX = re.compile(r"(f32|f64)$")
_GENERIC_ARGS = re.compile(r"<.*>")
_SELF = re.compile(r"\bSelf\b")
_ARRAY_TYPE = re.compile(r"^\[(.+); [^\]]+\]$")


def _node_text(node: Node, source: bytes) -> str:
    """Extract the UTF-8 text for a tree-sitter node."""
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace").strip()


def _type_text(node: Optional[Node], source: bytes) -> Optional[str]:
    if node is None:
        return None
    return " ".join(_node_text(node, source).split())


def _base_name(path_text: str) -> str:
    """`mod_a::StructB<T>` -> `StructB`."""
    return _GENERIC_ARGS.sub("", path_text).split("::")[-1].strip()


def _strip_refs(ty: str) -> str:
    while ty.startswith("&"):
        ty = ty[1:].lstrip()
        if ty.startswith("mut "):
            ty = ty[4:]
    return ty


def _split_tuple_type(ty: Optional[str]) -> Optional[list[str]]:
    """`(i32, bool)` -> ['i32', 'bool']; None when *ty* is not a tuple type."""
    if not ty or not (ty.startswith("(") and ty.endswith(")")):
        return None
    inner = ty[1:-1]
    parts: list[str] = []
    depth = 0
    current = ""
    for ch in inner:
        if ch in "(<[":
            depth += 1
        elif ch in ")>]":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


def _named(node: Node) -> Iterator[Node]:
    for child in node.named_children:
        if child.type not in EXTRAS:
            yield child


def _same(a: Optional[Node], b: Node) -> bool:
    return a is not None and (a.start_byte, a.end_byte, a.type) == (b.start_byte, b.end_byte, b.type)


# ---------------------------------------------------------------------------
# Parsed files and the crate-wide item registry
# ---------------------------------------------------------------------------

@dataclass
class ParsedFile:
    """One source file of the crate with its tree and global base offset."""
    source_file: SourceFile
    tree: Tree
    source: bytes
    mod_dir: str  # directory holding this file's out-of-line child modules


@dataclass
class ItemRegistry:
    """Signatures of crate items, keyed by simple name."""
    functions: dict[str, str] = field(default_factory=dict)              # fn -> return type
    methods: dict[str, list[str]] = field(default_factory=dict)          # method -> return types
    assoc: dict[tuple[str, str], str] = field(default_factory=dict)      # (Type, fn) -> return type
    structs: dict[str, dict[str, str]] = field(default_factory=dict)     # struct -> field types
    tuple_structs: dict[str, list[str]] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)                 # const/static -> type
    unit_names: set[str] = field(default_factory=set)                   # unit structs and unit variants
    names: set[str] = field(default_factory=set)

    def collect(self, node: Node, source: bytes, self_ty: Optional[str] = None) -> None:
        """Record every item under *node* (inline modules and fn bodies included)."""
        for child in _named(node):
            kind = child.type
            name_node = child.child_by_field_name("name")
            name = _node_text(name_node, source) if name_node is not None else None
            if name and (kind in ITEM_TYPES or kind == "enum_variant"):
                self.names.add(name)
            if name and kind in ("struct_item", "enum_variant") and child.child_by_field_name("body") is None:
                self.unit_names.add(name)

            if kind == "function_item" and name:
                ret = _type_text(child.child_by_field_name("return_type"), source) or "()"
                if self_ty is not None:
                    ret = _SELF.sub(self_ty, ret)
                    self.assoc[(_base_name(self_ty), name)] = ret
                    self.methods.setdefault(name, []).append(ret)
                else:
                    self.functions[name] = ret
            elif kind == "struct_item" and name:
                body = child.child_by_field_name("body")
                if body is not None and body.type == "field_declaration_list":
                    self.structs[name] = {
                        _node_text(f.child_by_field_name("name"), source):
                            _type_text(f.child_by_field_name("type"), source) or UNKNOWN
                        for f in _named(body)
                        if f.type == "field_declaration" and f.child_by_field_name("name") is not None
                    }
                elif body is not None and body.type == "ordered_field_declaration_list":
                    self.tuple_structs[name] = [
                        _type_text(t, source) or UNKNOWN for t in body.children_by_field_name("type")
                    ]
            elif kind in ("const_item", "static_item") and name:
                self.values[name] = _type_text(child.child_by_field_name("type"), source) or UNKNOWN

            if kind == "impl_item":
                impl_ty = _type_text(child.child_by_field_name("type"), source)
                self.collect(child, source, impl_ty)
            elif kind != "mod_item" or child.child_by_field_name("body") is not None:
                self.collect(child, source, self_ty if kind != "function_item" else None)


# ---------------------------------------------------------------------------
# Front end
# ---------------------------------------------------------------------------

class RustFrontEnd:
    """Builds a TypedTree for a Rust crate.

    Usage::

        fe = RustFrontEnd()
        tree = fe.load("src/main.rs")
        records = TraversalEngine(tree, tree.unit).run(TraversalConfig())
    """

    def __init__(self) -> None:
        self._language = Language(tsrust.language())
        self._parser = Parser(self._language)

    @track_latency(FRONTEND_LATENCY)
    def load(self, crate_root: str) -> TypedTree:
        """Parse, check and lower the crate rooted at *crate_root*.

        Raises FrontEndError when the root cannot be read, a module file is
        missing, any file has syntax errors, or an expression is nested deeper
        than the lowering recursion allows.
        """
        unit = os.path.normpath(crate_root)
        session = _Session(self._parser, unit)
        try:
            root = session.load_root(crate_root)
            tree = session.lower(root)
        except RecursionError as exc:
            raise FrontEndError("front-end", "syntax tree is nested too deeply to lower", unit) from exc
        logger.info(
            "Loaded crate %s: %d file(s), %d node(s)",
            unit, len(tree.files), len(tree.nodes),
        )
        return tree


class _Session:
    """State of one front-end run: files, registry, scopes, builder."""

    def __init__(self, parser: Parser, unit: str) -> None:
        self._parser = parser
        self.unit = unit
        self.source_map = SourceMap()
        self.builder = TreeBuilder(unit, self.source_map)
        self.registry = ItemRegistry()
        self._files: dict[str, ParsedFile] = {}
        self._file: Optional[ParsedFile] = None
        self._scopes: list[dict[str, str]] = []
        self._self_ty: Optional[str] = None
        self._mod_dir = ""

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_root(self, path: str) -> ParsedFile:
        try:
            with open(path, "rb") as fh:
                source = fh.read()
        except OSError as exc:
            raise FrontEndError("front-end", f"cannot read crate root: {exc}", path) from exc
        root = self._add_file(path, source, os.path.dirname(os.path.abspath(path)))
        self._discover(root, root.tree.root_node, root.mod_dir)
        for parsed in self._files.values():
            self.registry.collect(parsed.tree.root_node, parsed.source)
        return root

    def _add_file(self, path: str, source: bytes, mod_dir: str) -> ParsedFile:
        try:
            text = source.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrontEndError("front-end", "source is not valid UTF-8", path) from exc
        sf = self.source_map.add_file(path, text, path=path)
        tree = self._parser.parse(source)
        parsed = ParsedFile(sf, tree, source, mod_dir)
        self._check_syntax(parsed)
        self._files[os.path.abspath(path)] = parsed
        logger.debug("Parsed %s (%d bytes)", path, len(source))
        return parsed

    def _check_syntax(self, parsed: ParsedFile) -> None:
        root = parsed.tree.root_node
        if not root.has_error:
            return
        bad = _first_error(root)
        where = bad if bad is not None else root
        pos = self.source_map.lookup(parsed.source_file.start_pos + where.start_byte)
        what = f"missing `{where.type}`" if where.is_missing else "syntax error"
        raise FrontEndError("compilation", what, f"{pos.file}:{pos.line}:{pos.column}")

    def _discover(self, parsed: ParsedFile, node: Node, mod_dir: str) -> None:
        """Load out-of-line modules declared under *node*."""
        for child in _named(node):
            if child.type != "mod_item":
                continue
            name = _node_text(child.child_by_field_name("name"), parsed.source)
            body = child.child_by_field_name("body")
            if body is not None:
                self._discover(parsed, body, os.path.join(mod_dir, name))
                continue
            path = self._module_path(parsed, child, mod_dir, name)
            if os.path.abspath(path) in self._files:
                continue
            try:
                with open(path, "rb") as fh:
                    source = fh.read()
            except OSError as exc:
                raise FrontEndError("front-end", f"cannot read module `{name}`: {exc}", path) from exc
            sub = self._add_file(path, source, os.path.join(mod_dir, name))
            self._discover(sub, sub.tree.root_node, sub.mod_dir)

    def _module_path(self, parsed: ParsedFile, decl: Node, mod_dir: str, name: str) -> str:
        candidates = [os.path.join(mod_dir, f"{name}.rs"), os.path.join(mod_dir, name, "mod.rs")]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        pos = self.source_map.lookup(parsed.source_file.start_pos + decl.start_byte)
        raise FrontEndError(
            "compilation",
            f"file not found for module `{name}` (looked for {', '.join(candidates)})",
            f"{pos.file}:{pos.line}:{pos.column}",
        )

    # ------------------------------------------------------------------
    # Lowering: items
    # ------------------------------------------------------------------

    def lower(self, root: ParsedFile) -> TypedTree:
        for handle in self._lower_file(root):
            self.builder.add_root_item(handle)
        return self.builder.build()

    def _lower_file(self, parsed: ParsedFile) -> list[int]:
        saved = (self._file, self._mod_dir)
        self._file, self._mod_dir = parsed, parsed.mod_dir
        try:
            return self._lower_items(parsed.tree.root_node)
        finally:
            self._file, self._mod_dir = saved

    def _lower_items(self, container: Node) -> list[int]:
        handles = []
        for child in _named(container):
            if child.type in ITEM_TYPES or child.type == "macro_invocation":
                handles.append(self._lower_item(child))
            else:
                logger.debug("Ignoring %s at item level", child.type)
        return handles

    def _lower_item(self, node: Node) -> int:
        kind = ITEM_TYPES.get(node.type, "macro")
        name_node = node.child_by_field_name("name")
        name = self._text(name_node) if name_node is not None else None
        body: Optional[int] = None
        members: list[int] = []

        if node.type == "function_item":
            body = self._lower_fn_body(node)
        elif node.type == "mod_item":
            members = self._lower_module(node, name or "")
        elif node.type in ("impl_item", "trait_item"):
            saved_self = self._self_ty
            self._self_ty = self._type_text(node.child_by_field_name("type")) or name
            decls = node.child_by_field_name("body")
            members = self._lower_items(decls) if decls is not None else []
            self._self_ty = saved_self
            if node.type == "impl_item":
                name = self._type_text(node.child_by_field_name("type"))
        elif node.type == "foreign_mod_item":
            decls = node.child_by_field_name("body")
            members = self._lower_items(decls) if decls is not None else []
        elif node.type in ("const_item", "static_item"):
            value = node.child_by_field_name("value")
            if value is not None:
                expected = self._type_text(node.child_by_field_name("type"))
                body = self._isolated(lambda: self._lower_expr(value, expected), {})

        return self.builder.add(ItemNode(
            span=self._span(node), item_kind=kind, name=name, body=body, members=members,
        ))

    def _lower_module(self, node: Node, name: str) -> list[int]:
        body = node.child_by_field_name("body")
        mod_dir = self._mod_dir
        if body is not None:
            self._mod_dir = os.path.join(mod_dir, name)
            try:
                return self._lower_items(body)
            finally:
                self._mod_dir = mod_dir
        for candidate in (os.path.join(mod_dir, f"{name}.rs"), os.path.join(mod_dir, name, "mod.rs")):
            parsed = self._files.get(os.path.abspath(candidate))
            if parsed is not None:
                return self._lower_file(parsed)
        return []

    def _lower_fn_body(self, node: Node) -> Optional[int]:
        block = node.child_by_field_name("body")
        if block is None:
            return None
        params: dict[str, str] = {}
        plist = node.child_by_field_name("parameters")
        if plist is not None:
            for param in _named(plist):
                if param.type == "self_parameter":
                    words = self._text(param).replace("&", "& ").split()
                    base = self._self_ty or UNKNOWN
                    if "&" not in words:
                        params["self"] = base
                    else:
                        params["self"] = f"&mut {base}" if "mut" in words else f"&{base}"
                elif param.type == "parameter":
                    pattern = param.child_by_field_name("pattern")
                    if pattern is not None:
                        self._collect_bindings(pattern, self._type_text(param.child_by_field_name("type")), params)
        return self._isolated(lambda: self._lower_block(block), params)

    def _isolated(self, lower, scope: dict[str, str]) -> int:
        """Lower a body that cannot see the enclosing locals."""
        saved = self._scopes
        self._scopes = [scope]
        try:
            return lower()
        finally:
            self._scopes = saved

    # ------------------------------------------------------------------
    # Lowering: blocks and statements
    # ------------------------------------------------------------------

    def _lower_block(self, node: Node) -> int:
        entries = list(_named(node))
        tail_node: Optional[Node] = None
        if entries:
            last = entries[-1]
            if last.type == "expression_statement" and last.children and last.children[-1].type != ";":
                tail_node = next(_named(last), None)
                entries.pop()
            elif last.type not in ITEM_TYPES and last.type not in ("let_declaration", "expression_statement", "macro_invocation"):
                tail_node = last
                entries.pop()

        self._scopes.append({})
        stmts: list[int] = []
        for entry in entries:
            if entry.type == "let_declaration":
                stmts.append(self._lower_let(entry))
            elif entry.type == "expression_statement":
                inner = next(_named(entry), None)
                if inner is not None:
                    stmts.append(self._lower_expr(inner))
            elif entry.type in ITEM_TYPES:
                stmts.append(self._isolated(lambda e=entry: self._lower_item(e), {}))
            else:
                stmts.append(self._lower_expr(entry))
        tail = self._lower_expr(tail_node) if tail_node is not None else None
        self._scopes.pop()

        ty = self.builder.get(tail).ty if tail is not None else "()"
        return self.builder.add(BlockNode(span=self._span(node), ty=ty, stmts=stmts, tail=tail))

    def _lower_let(self, node: Node) -> int:
        annotation = self._type_text(node.child_by_field_name("type"))
        value = node.child_by_field_name("value")
        init = self._lower_expr(value, annotation) if value is not None else None
        alternative = node.child_by_field_name("alternative")
        els = self._lower_expr(alternative) if alternative is not None else None

        pattern_node = node.child_by_field_name("pattern")
        mutable = any(c.type == "mutable_specifier" for c in node.children)
        pattern = self._lower_pattern(pattern_node, mutable)
        bound_ty = annotation or (self.builder.get(init).ty if init is not None else None) or UNKNOWN
        self._collect_bindings(pattern_node, bound_ty, self._scopes[-1])
        return self.builder.add(LetNode(
            span=self._span(node), pattern=pattern, init=init, els=els, annotation=annotation,
        ))

    # ------------------------------------------------------------------
    # Lowering: patterns
    # ------------------------------------------------------------------

    def _lower_pattern(self, node: Node, mutable: bool = False) -> int:
        kind = node.type
        if kind == "identifier" and self._is_binding_name(self._text(node)):
            return self.builder.add(BindingPatNode(span=self._span(node), name=self._text(node), mutable=mutable))
        if kind in ("mut_pattern", "ref_pattern"):
            parts = list(_named(node))
            inner = next((c for c in parts if c.type != "mutable_specifier"), None)
            if inner is not None and inner.type == "identifier":
                return self.builder.add(BindingPatNode(
                    span=self._span(inner), name=self._text(inner),
                    mutable=any(c.type == "mutable_specifier" for c in parts),
                    by_ref=kind == "ref_pattern",
                ))
        if kind == "captured_pattern":
            parts = list(_named(node))
            if len(parts) == 2 and parts[0].type == "identifier":
                sub = self._lower_pattern(parts[1])
                return self.builder.add(BindingPatNode(
                    span=self._span(parts[0]), name=self._text(parts[0]), subpattern=sub,
                ))
        if kind == "_":
            shape = "wildcard"
        else:
            shape = kind[:-len("_pattern")] if kind.endswith("_pattern") else kind
        excluded = node.child_by_field_name("type")
        children = [
            self._lower_pattern(c) for c in _named(node)
            if not _same(excluded, c) and c.type not in ("field_identifier", "scoped_identifier")
        ]
        return self.builder.add(CompoundPatNode(span=self._span(node), shape=shape, children=children))

    def _collect_bindings(self, node: Node, ty: Optional[str], scope: dict[str, str]) -> None:
        """Bind every name a pattern introduces into *scope*."""
        ty = ty or UNKNOWN
        kind = node.type
        if kind == "identifier":
            name = self._text(node)
            if self._is_binding_name(name):
                scope[name] = ty
        elif kind == "shorthand_field_identifier":
            scope[self._text(node)] = UNKNOWN
        elif kind in ("mut_pattern", "ref_pattern"):
            for child in _named(node):
                self._collect_bindings(child, ty, scope)
        elif kind == "reference_pattern":
            for child in _named(node):
                self._collect_bindings(child, _strip_refs(ty) if ty.startswith("&") else UNKNOWN, scope)
        elif kind == "captured_pattern":
            parts = list(_named(node))
            if parts:
                self._collect_bindings(parts[0], ty, scope)
            for rest in parts[1:]:
                self._collect_bindings(rest, UNKNOWN, scope)
        elif kind == "tuple_pattern":
            elements = list(_named(node))
            types = _split_tuple_type(ty)
            if types is None or len(types) != len(elements):
                types = [UNKNOWN] * len(elements)
            for child, child_ty in zip(elements, types):
                self._collect_bindings(child, child_ty, scope)
        elif kind == "field_pattern":
            pattern = node.child_by_field_name("pattern")
            if pattern is not None:
                self._collect_bindings(pattern, UNKNOWN, scope)
            else:
                for child in _named(node):
                    if child.type == "shorthand_field_identifier":
                        scope[self._text(child)] = UNKNOWN
        elif kind not in ("scoped_identifier", "field_identifier"):
            excluded = node.child_by_field_name("type")
            for child in _named(node):
                if not _same(excluded, child):
                    self._collect_bindings(child, UNKNOWN, scope)

    def _is_binding_name(self, name: str) -> bool:
        # A bare identifier naming a const, static, unit struct or unit variant matches it.
        return (
            bool(name)
            and name not in PRELUDE_UNIT_NAMES
            and name not in self.registry.unit_names
            and name not in self.registry.values
        )

    # ------------------------------------------------------------------
    # Lowering: expressions
    # ------------------------------------------------------------------

    def _lower_expr(self, node: Node, expected: Optional[str] = None) -> int:
        kind = node.type
        span = self._span(node)
        handler = getattr(self, f"_expr_{kind}", None)
        if handler is not None:
            return handler(node, span, expected)
        if kind in ("unsafe_block", "async_block", "const_block"):
            inner = next((c for c in _named(node) if c.type == "block"), None)
            if inner is not None:
                block = self._lower_block(inner)
                ty = self.builder.get(block).ty if kind != "async_block" else UNKNOWN
                return self.builder.add(ExprNode(span=span, ty=ty, expr_kind=kind, children=[block]))
        children = [self._lower_expr(c) for c in self._expr_children(node)]
        return self.builder.add(ExprNode(span=span, ty=UNKNOWN, expr_kind=kind, children=children))

    def _expr_children(self, node: Node) -> list[Node]:
        return [
            c for c in _named(node)
            if c.type not in NON_EXPRESSIONS
            and not c.type.endswith("_type")
            and not c.type.endswith("_pattern")
        ]

    def _expr_block(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self._lower_block(node)

    def _expr_identifier(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self._path(span, [self._text(node)])

    def _expr_self(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self._path(span, ["self"])

    def _expr_scoped_identifier(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        segments = [s.strip() for s in _GENERIC_ARGS.sub("", self._text(node)).split("::") if s.strip()]
        return self._path(span, segments or [self._text(node)])

    def _expr_generic_function(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        function = node.child_by_field_name("function")
        return self._lower_expr(function) if function is not None else self._path(span, [self._text(node)])

    def _path(self, span: ByteRange, segments: list[str]) -> int:
        name = segments[-1]
        if len(segments) == 1:
            local = self._lookup(name)
            if local is not None:
                return self.builder.add(PathNode(span=span, ty=local, segments=segments, resolution=Resolution.LOCAL))
        if name in self.registry.names:
            return self.builder.add(PathNode(
                span=span, ty=self._item_value_type(segments), segments=segments, resolution=Resolution.ITEM,
            ))
        return self.builder.add(PathNode(span=span, ty=UNKNOWN, segments=segments, resolution=Resolution.EXTERNAL))

    def _item_value_type(self, segments: list[str]) -> str:
        name = segments[-1]
        if name in self.registry.values:
            return self.registry.values[name]
        if name in self.registry.structs or name in self.registry.tuple_structs:
            return "::".join(segments)
        if name in self.registry.functions:
            return f"fn() -> {self.registry.functions[name]}"
        return UNKNOWN

    def _lookup(self, name: str) -> Optional[str]:
        for scope in reversed(self._scopes):
            if name in scope:
                return scope[name]
        return None

    # -- literals --------------------------------------------------------

    def _expr_integer_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        m = _INT_SUFFIX.search(self._text(node))
        ty = m.group(1) if m else (expected if expected in INT_TYPES else "i32")
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="literal"))

    def _expr_float_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        m = _FLOAT_SUFFIX.search(self._text(node))
        ty = m.group(1) if m else (expected if expected in FLOAT_TYPES else "f64")
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="literal"))

    def _expr_boolean_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self.builder.add(ExprNode(span=span, ty="bool", expr_kind="literal"))

    def _expr_char_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        ty = "u8" if self._text(node).startswith("b") else "char"
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="literal"))

    def _expr_string_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        text = self._text(node)
        ty = "&str"
        if text.startswith("b"):
            body = text[2:-1]
            ty = f"&[u8; {len(body.encode('utf-8'))}]" if "\\" not in body else UNKNOWN
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="literal"))

    def _expr_raw_string_literal(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self.builder.add(ExprNode(span=span, ty="&str", expr_kind="literal"))

    def _expr_unit_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self.builder.add(ExprNode(span=span, ty="()", expr_kind="tuple"))

    # -- compound expressions --------------------------------------------

    def _expr_struct_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        name = self._type_text(node.child_by_field_name("name")) or UNKNOWN
        if name == "Self" or name.startswith("Self::"):
            name = name.replace("Self", self._self_ty or "Self", 1)
        fields = self.registry.structs.get(_base_name(name), {})
        children: list[int] = []
        body = node.child_by_field_name("body")
        for init in (_named(body) if body is not None else []):
            if init.type == "field_initializer":
                value = init.child_by_field_name("value")
                field_node = init.child_by_field_name("field")
                field_name = self._text(field_node) if field_node is not None else ""
                if value is not None:
                    children.append(self._lower_expr(value, fields.get(field_name)))
            elif init.type == "shorthand_field_initializer":
                ident = next(_named(init), None)
                if ident is not None:
                    children.append(self._lower_expr(ident))
            else:
                for child in self._expr_children(init):
                    children.append(self._lower_expr(child))
        return self.builder.add(ExprNode(span=span, ty=name, expr_kind="struct", children=children))

    def _expr_call_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        function = node.child_by_field_name("function")
        arguments = node.child_by_field_name("arguments")
        callee = self._lower_expr(function)
        args = [self._lower_expr(a) for a in self._expr_children(arguments)] if arguments is not None else []
        ty = self._call_type(function, callee)
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="call", children=[callee, *args]))

    def _call_type(self, function: Node, callee: int) -> str:
        callee_node = self.builder.get(callee)
        if callee_node.kind == "path":
            segments = callee_node.segments
            name = segments[-1]
            if len(segments) >= 2:
                owner = segments[-2] if segments[-2] != "Self" else _base_name(self._self_ty or "Self")
                if (owner, name) in self.registry.assoc:
                    return self.registry.assoc[(owner, name)]
            if callee_node.resolution == Resolution.LOCAL:
                return UNKNOWN
            if name in self.registry.functions:
                return self.registry.functions[name]
            if name in self.registry.tuple_structs:
                return "::".join(segments)
            return UNKNOWN
        if callee_node.kind == "field":
            method = callee_node.field
            receiver = _strip_refs(self.builder.get(callee_node.base).ty or UNKNOWN)
            if (_base_name(receiver), method) in self.registry.assoc:
                return self.registry.assoc[(_base_name(receiver), method)]
            candidates = set(self.registry.methods.get(method, []))
            if len(candidates) == 1:
                return candidates.pop()
            if method in STD_METHODS:
                return STD_METHODS[method] or receiver
        return UNKNOWN

    def _expr_field_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        base = self._lower_expr(node.child_by_field_name("value"))
        field_name = self._text(node.child_by_field_name("field"))
        base_ty = _strip_refs(self.builder.get(base).ty or UNKNOWN)
        ty = UNKNOWN
        if field_name.isdigit():
            parts = _split_tuple_type(base_ty)
            tuple_fields = parts if parts is not None else self.registry.tuple_structs.get(_base_name(base_ty), [])
            if int(field_name) < len(tuple_fields):
                ty = tuple_fields[int(field_name)]
        else:
            ty = self.registry.structs.get(_base_name(base_ty), {}).get(field_name, UNKNOWN)
        return self.builder.add(FieldNode(span=span, ty=ty, base=base, field=field_name))

    def _expr_assignment_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        target = self._lower_expr(node.child_by_field_name("left"))
        value = self._lower_expr(node.child_by_field_name("right"), self.builder.get(target).ty)
        return self.builder.add(AssignNode(span=span, ty="()", target=target, value=value))

    def _expr_compound_assignment_expr(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        target = self._lower_expr(node.child_by_field_name("left"))
        value = self._lower_expr(node.child_by_field_name("right"), self.builder.get(target).ty)
        operator = self._text(node.child_by_field_name("operator"))
        return self.builder.add(AssignNode(span=span, ty="()", target=target, value=value, operator=operator))

    def _expr_binary_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        left = self._lower_expr(node.child_by_field_name("left"), expected)
        right = self._lower_expr(node.child_by_field_name("right"), self.builder.get(left).ty)
        operator = self._text(node.child_by_field_name("operator"))
        if operator in BOOL_OPERATORS:
            ty = "bool"
        else:
            ty = self.builder.get(left).ty
            if ty == UNKNOWN:
                ty = self.builder.get(right).ty
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="binary", children=[left, right]))

    def _expr_unary_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        operand = self._lower_expr(next(_named(node)), expected)
        ty = self.builder.get(operand).ty or UNKNOWN
        if self._text(node).startswith("*"):
            ty = _strip_refs(ty) if ty.startswith("&") else UNKNOWN
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="unary", children=[operand]))

    def _expr_reference_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        value = self._lower_expr(node.child_by_field_name("value"))
        mutable = any(c.type == "mutable_specifier" for c in node.children)
        inner = self.builder.get(value).ty or UNKNOWN
        ty = f"&mut {inner}" if mutable else f"&{inner}"
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="reference", children=[value]))

    def _expr_parenthesized_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        inner = self._lower_expr(next(_named(node)), expected)
        return self.builder.add(ExprNode(span=span, ty=self.builder.get(inner).ty, expr_kind="paren", children=[inner]))

    def _expr_tuple_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        expected_parts = _split_tuple_type(expected) or []
        elements = self._expr_children(node)
        children = [
            self._lower_expr(c, expected_parts[i] if i < len(expected_parts) else None)
            for i, c in enumerate(elements)
        ]
        types = [self.builder.get(c).ty or UNKNOWN for c in children]
        ty = f"({types[0]},)" if len(types) == 1 else f"({', '.join(types)})"
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="tuple", children=children))

    def _expr_array_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        m = _ARRAY_TYPE.match(expected or "")
        element_expected = m.group(1) if m else None
        length = node.child_by_field_name("length")
        elements = [c for c in self._expr_children(node) if not _same(length, c)]
        children = [self._lower_expr(c, element_expected) for c in elements]
        element_ty = self.builder.get(children[0]).ty if children else UNKNOWN
        if length is not None:
            children.append(self._lower_expr(length, "usize"))
            ty = f"[{element_ty}; {self._text(length)}]"
        else:
            ty = f"[{element_ty}; {len(children)}]"
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="array", children=children))

    def _expr_index_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        children = [self._lower_expr(c) for c in self._expr_children(node)]
        ty = UNKNOWN
        if children:
            m = _ARRAY_TYPE.match(_strip_refs(self.builder.get(children[0]).ty or ""))
            if m:
                ty = m.group(1)
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="index", children=children))

    def _expr_type_cast_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        value = self._lower_expr(node.child_by_field_name("value"))
        ty = self._type_text(node.child_by_field_name("type")) or UNKNOWN
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="cast", children=[value]))

    def _expr_macro_invocation(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        macro = node.child_by_field_name("macro")
        name = _base_name(self._text(macro)) if macro is not None else ""
        children = [self._path(self._span(ident), [self._text(ident)]) for ident in self._macro_locals(node)]
        return self.builder.add(ExprNode(
            span=span, ty=MACRO_TYPES.get(name, UNKNOWN), expr_kind="macro", children=children,
        ))

    def _macro_locals(self, node: Node) -> list[Node]:
        """Identifiers in the macro token trees that name a local binding, in source order.

        Token trees are not parsed as expressions, so a bare identifier is taken
        as a path unless it follows `.` or `::` (a field, method or path segment).
        """
        found: list[Node] = []
        stack = [c for c in reversed(node.children) if c.type == "token_tree"]
        while stack:
            current = stack.pop()
            if current.type == "token_tree":
                stack.extend(reversed(current.children))
                continue
            if current.type not in ("identifier", "self"):
                continue
            prev = current.prev_sibling
            if prev is not None and _is_member_access(self._text(prev)):
                continue
            if self._lookup(self._text(current)) is not None:
                found.append(current)
        return found

    def _expr_return_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        children = [self._lower_expr(c) for c in self._expr_children(node)]
        return self.builder.add(ExprNode(span=span, ty="!", expr_kind=node.type, children=children))

    _expr_break_expression = _expr_return_expression

    def _expr_continue_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        return self.builder.add(ExprNode(span=span, ty="!", expr_kind="continue"))

    def _expr_range_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        children = [self._lower_expr(c) for c in self._expr_children(node)]
        ty = UNKNOWN
        if len(children) == 2:
            bound = self.builder.get(children[0]).ty or UNKNOWN
            ty = f"std::ops::RangeInclusive<{bound}>" if "..=" in self._text(node) else f"std::ops::Range<{bound}>"
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="range", children=children))

    # -- control flow ----------------------------------------------------

    def _lower_condition(self, node: Node) -> int:
        """Lower an `if`/`while` condition, binding `let` patterns into the current scope."""
        if node.type == "let_condition":
            value = self._lower_expr(node.child_by_field_name("value"))
            pattern = node.child_by_field_name("pattern")
            if pattern is not None:
                self._collect_bindings(pattern, None, self._scopes[-1])
            return self.builder.add(ExprNode(span=self._span(node), ty="bool", expr_kind="let", children=[value]))
        if node.type == "let_chain":
            parts = [self._lower_condition(c) for c in _named(node)]
            return self.builder.add(ExprNode(span=self._span(node), ty="bool", expr_kind="let_chain", children=parts))
        return self._lower_expr(node)

    def _expr_if_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        self._scopes.append({})
        condition = self._lower_condition(node.child_by_field_name("condition"))
        consequence = self._lower_expr(node.child_by_field_name("consequence"), expected)
        self._scopes.pop()
        children = [condition, consequence]
        ty = "()"
        alternative = node.child_by_field_name("alternative")
        if alternative is not None:
            branch = next(_named(alternative), None) if alternative.type == "else_clause" else alternative
            if branch is not None:
                children.append(self._lower_expr(branch, expected))
                ty = self.builder.get(consequence).ty
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="if", children=children))

    def _expr_while_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        self._scopes.append({})
        condition = self._lower_condition(node.child_by_field_name("condition"))
        body = self._lower_expr(node.child_by_field_name("body"))
        self._scopes.pop()
        return self.builder.add(ExprNode(span=span, ty="()", expr_kind="while", children=[condition, body]))

    def _expr_loop_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        body = self._lower_expr(node.child_by_field_name("body"))
        return self.builder.add(ExprNode(span=span, ty=UNKNOWN, expr_kind="loop", children=[body]))

    def _expr_for_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        value = self._lower_expr(node.child_by_field_name("value"))
        self._scopes.append({})
        self._collect_bindings(node.child_by_field_name("pattern"), None, self._scopes[-1])
        body = self._lower_expr(node.child_by_field_name("body"))
        self._scopes.pop()
        return self.builder.add(ExprNode(span=span, ty="()", expr_kind="for", children=[value, body]))

    def _expr_match_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        children = [self._lower_expr(node.child_by_field_name("value"))]
        arm_types: list[str] = []
        block = node.child_by_field_name("body")
        for arm in (_named(block) if block is not None else []):
            if arm.type != "match_arm":
                continue
            self._scopes.append({})
            pattern = arm.child_by_field_name("pattern")
            if pattern is not None:
                guard = pattern.child_by_field_name("condition")
                for part in _named(pattern):
                    if not _same(guard, part):
                        self._collect_bindings(part, None, self._scopes[-1])
                if guard is not None:
                    children.append(self._lower_condition(guard))
            value = arm.child_by_field_name("value")
            if value is not None:
                handle = self._lower_expr(value, expected)
                children.append(handle)
                arm_types.append(self.builder.get(handle).ty or UNKNOWN)
            self._scopes.pop()
        ty = next((t for t in arm_types if t not in ("!", UNKNOWN)), arm_types[0] if arm_types else "!")
        return self.builder.add(ExprNode(span=span, ty=ty, expr_kind="match", children=children))

    def _expr_closure_expression(self, node: Node, span: ByteRange, expected: Optional[str]) -> int:
        scope: dict[str, str] = {}
        params = node.child_by_field_name("parameters")
        for param in (_named(params) if params is not None else []):
            if param.type == "parameter":
                pattern = param.child_by_field_name("pattern")
                if pattern is not None:
                    self._collect_bindings(pattern, self._type_text(param.child_by_field_name("type")), scope)
            else:
                self._collect_bindings(param, None, scope)
        self._scopes.append(scope)
        body = self._lower_expr(node.child_by_field_name("body"))
        self._scopes.pop()
        return self.builder.add(ExprNode(span=span, ty=UNKNOWN, expr_kind="closure", children=[body]))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _span(self, node: Node) -> ByteRange:
        base = self._file.source_file.start_pos
        return ByteRange(lo=base + node.start_byte, hi=base + node.end_byte)

    def _text(self, node: Node) -> str:
        return _node_text(node, self._file.source)

    def _type_text(self, node: Optional[Node]) -> Optional[str]:
        return _type_text(node, self._file.source)


def _is_member_access(token: str) -> bool:
    """True for punctuation that makes the next identifier a field, method or path segment."""
    return token.endswith("::") or (token.endswith(".") and not token.endswith(".."))


def _first_error(node: Node) -> Optional[Node]:
    """Depth-first search for the first ERROR or MISSING node."""
    if node.type == "ERROR" or node.is_missing:
        return node
    for child in node.children:
        if child.has_error or child.is_missing:
            found = _first_error(child)
            if found is not None:
                return found
    return None
