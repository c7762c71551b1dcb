#!/usr/bin/env python3
"""
parsing.py

Parser adapters producing a language-neutral parse tree.

The graph engine never inspects a concrete AST library directly; it walks
:class:`ParseNode` trees.  Two adapters are provided:

- :class:`PythonAstParser` — stdlib ``ast`` for Python sources
- :class:`TreeSitterParser` — tree-sitter grammars (via
  ``tree-sitter-language-pack``) for JavaScript, TypeScript and TSX

``parse()`` returns ``None`` for an unsupported language or a source that
fails to parse; it never raises for bad input.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import ast
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PYTHON = "python"
TREE_SITTER_LANGUAGES = ("javascript", "typescript", "tsx")

# ============================================================================
# Parse tree
# ============================================================================


@dataclass(eq=False)
class ParseNode:
    """
    One node of a parse tree.

    :param type: Grammar node type (``FunctionDef``, ``class_declaration``, ...).
    :param text: Exact source text covered by the node.
    :param start_line: 1-based first line.
    :param end_line: 1-based last line.
    :param start_column: 0-based start column.
    :param end_column: 0-based end column.
    :param children: Child nodes in source order.
    :param field_name: Grammar field under which the parent holds this node.
    :param raw: Underlying library node (``ast.AST`` or tree-sitter node).
    """

    type: str
    text: str
    start_line: int
    end_line: int
    start_column: int = 0
    end_column: int = 0
    children: list[ParseNode] = field(default_factory=list)
    field_name: str | None = None
    raw: Any = field(default=None, repr=False)
    parent: ParseNode | None = field(default=None, repr=False)

    def walk(self) -> Iterator[ParseNode]:
        """Yield this node and all descendants in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def child_by_field(self, name: str) -> ParseNode | None:
        """Return the first child held under grammar field *name*."""
        for child in self.children:
            if child.field_name == name:
                return child
        return None

    def children_of_type(self, *types: str) -> list[ParseNode]:
        """Return the direct children whose type is one of *types*."""
        return [c for c in self.children if c.type in types]

    def previous_sibling(self) -> ParseNode | None:
        if self.parent is None:
            return None
        siblings = self.parent.children
        idx = next((i for i, c in enumerate(siblings) if c is self), 0)
        return siblings[idx - 1] if idx > 0 else None


class Parser(Protocol):
    """Anything that turns source text into a :class:`ParseNode` tree."""

    def parse(self, content: str, language: str) -> ParseNode | None: ...


def _link_parents(root: ParseNode) -> ParseNode:
    for node in root.walk():
        for child in node.children:
            child.parent = node
    return root


# ============================================================================
# Python (stdlib ast)
# ============================================================================


class PythonAstParser:
    """
    Parse Python source with the stdlib ``ast`` module.

    Node types are the ``ast`` class names.  Only positioned nodes become
    :class:`ParseNode` s; position-less helpers (``arguments``,
    ``comprehension``, operators) are flattened into their parent.
    """

    def parse(self, content: str, language: str = PYTHON) -> ParseNode | None:
        if language != PYTHON:
            return None
        try:
            tree = ast.parse(content)
        except (SyntaxError, ValueError) as exc:
            logger.debug("python parse failed: %s", exc)
            return None

        lines = content.splitlines(keepends=True)
        root = ParseNode(
            type=type(tree).__name__,
            text=content,
            start_line=1,
            end_line=max(len(lines), 1),
            children=list(self._children(tree, lines)),
            raw=tree,
        )
        return _link_parents(root)

    def _convert(self, node: ast.AST, lines: list[str], field_name: str | None) -> ParseNode:
        return ParseNode(
            type=type(node).__name__,
            text=_segment(lines, node),
            start_line=node.lineno,
            end_line=node.end_lineno or node.lineno,
            start_column=node.col_offset,
            end_column=node.end_col_offset or 0,
            children=list(self._children(node, lines)),
            field_name=field_name,
            raw=node,
        )

    def _children(self, node: ast.AST, lines: list[str]) -> Iterator[ParseNode]:
        for fname, value in ast.iter_fields(node):
            items = value if isinstance(value, list) else [value]
            for item in items:
                if not isinstance(item, ast.AST):
                    continue
                if getattr(item, "end_lineno", None) is None:
                    yield from self._children(item, lines)
                else:
                    yield self._convert(item, lines, fname)


def _segment(lines: list[str], node: ast.AST) -> str:
    """Source text of *node*; ``ast`` column offsets are UTF-8 byte offsets."""
    first, last = node.lineno - 1, node.end_lineno - 1
    col, end_col = node.col_offset, node.end_col_offset
    if first >= len(lines):
        return ""
    if first == last:
        return lines[first].encode()[col:end_col].decode(errors="replace")
    head = lines[first].encode()[col:].decode(errors="replace")
    tail = lines[last].encode()[:end_col].decode(errors="replace") if last < len(lines) else ""
    return "".join([head, *lines[first + 1 : last], tail])


# ============================================================================
# JavaScript / TypeScript (tree-sitter)
# ============================================================================


class TreeSitterParser:
    """
    Parse JavaScript, TypeScript and TSX with tree-sitter.

    Only named grammar nodes are kept; anonymous tokens (punctuation,
    keywords) are dropped.  Parsers are created lazily per language.
    """

    def __init__(self) -> None:
        self._parsers: dict[str, Any] = {}

    def _parser_for(self, language: str) -> Any:
        if language not in self._parsers:
            from tree_sitter_language_pack import get_parser

            self._parsers[language] = get_parser(language)
        return self._parsers[language]

    def parse(self, content: str, language: str) -> ParseNode | None:
        if language not in TREE_SITTER_LANGUAGES:
            return None
        source = content.encode("utf-8")
        tree = self._parser_for(language).parse(source)
        root = tree.root_node
        if root is None or root.has_error:
            logger.debug("tree-sitter reported syntax errors for %s source", language)
            return None
        return _link_parents(self._convert(root, source, None))

    def _convert(self, node: Any, source: bytes, field_name: str | None) -> ParseNode:
        children: list[ParseNode] = []
        cursor = node.walk()
        if cursor.goto_first_child():
            while True:
                child = cursor.node
                if child.is_named:
                    children.append(self._convert(child, source, cursor.field_name))
                if not cursor.goto_next_sibling():
                    break
        return ParseNode(
            type=node.type,
            text=source[node.start_byte : node.end_byte].decode("utf-8", errors="replace"),
            start_line=node.start_point[0] + 1,
            end_line=node.end_point[0] + 1,
            start_column=node.start_point[1],
            end_column=node.end_point[1],
            children=children,
            field_name=field_name,
            raw=node,
        )


# ============================================================================
# Dispatch
# ============================================================================


class DefaultParser:
    """Route each language to the adapter that understands it."""

    def __init__(self) -> None:
        self._python = PythonAstParser()
        self._tree_sitter = TreeSitterParser()

    def parse(self, content: str, language: str) -> ParseNode | None:
        if language == PYTHON:
            return self._python.parse(content, language)
        if language in TREE_SITTER_LANGUAGES:
            return self._tree_sitter.parse(content, language)
        return None
