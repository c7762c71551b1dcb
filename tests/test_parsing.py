"""
test_parsing.py

Tests for the parser adapters and the language-neutral ParseNode tree.
"""

from __future__ import annotations

import textwrap

import pytest

from code_cpg.parsing import DefaultParser, ParseNode, PythonAstParser

SRC = textwrap.dedent(
    """\
    import os


    class Greeter:
        def greet(self, name):
            return f"hi {name}"


    def main():
        Greeter().greet(os.getcwd())
    """
)


def _find(root: ParseNode, type_: str) -> list[ParseNode]:
    return [n for n in root.walk() if n.type == type_]


# ---------------------------------------------------------------------------
# PythonAstParser
# ---------------------------------------------------------------------------


def test_python_parse_root():
    root = PythonAstParser().parse(SRC)
    assert root is not None
    assert root.type == "Module"
    assert root.text == SRC
    assert root.start_line == 1
    assert root.parent is None


def test_python_positions_and_text():
    root = PythonAstParser().parse(SRC)
    (cls,) = _find(root, "ClassDef")
    assert cls.start_line == 4
    assert cls.end_line == 6
    assert cls.start_column == 0
    (method,) = [f for f in _find(root, "FunctionDef") if f.start_column == 4]
    assert method.text.startswith("def greet(self, name):")
    assert method.text.endswith('return f"hi {name}"')
    assert method.parent is cls
    assert method.field_name == "body"


def test_python_walk_is_preorder():
    root = PythonAstParser().parse(SRC)
    types = [n.type for n in root.walk()]
    assert types[0] == "Module"
    assert types.index("Import") < types.index("ClassDef") < types.index("FunctionDef")


def test_python_syntax_error_returns_none():
    assert PythonAstParser().parse("def broken(:\n") is None


def test_python_other_language_returns_none():
    assert PythonAstParser().parse("const x = 1;", "typescript") is None


def test_python_non_ascii_segments():
    src = 'LABEL = "héllo"\n\ndef f():\n    return "ünïcode"\n'
    root = PythonAstParser().parse(src)
    (assign,) = _find(root, "Assign")
    assert assign.text == 'LABEL = "héllo"'
    (fn,) = _find(root, "FunctionDef")
    assert fn.text.endswith('"ünïcode"')


def test_parse_node_helpers():
    leaf_a = ParseNode("identifier", "a", 1, 1, field_name="name")
    leaf_b = ParseNode("comment", "// b", 1, 1)
    parent = ParseNode("decl", "a // b", 1, 1, children=[leaf_b, leaf_a])
    for child in parent.children:
        child.parent = parent
    assert parent.child_by_field("name") is leaf_a
    assert parent.child_by_field("value") is None
    assert parent.children_of_type("comment") == [leaf_b]
    assert leaf_a.previous_sibling() is leaf_b
    assert leaf_b.previous_sibling() is None


# ---------------------------------------------------------------------------
# DefaultParser
# ---------------------------------------------------------------------------


def test_default_parser_unknown_language():
    assert DefaultParser().parse("anything", "cobol") is None


def test_default_parser_python():
    assert DefaultParser().parse(SRC, "python").type == "Module"


def test_default_parser_typescript():
    pytest.importorskip("tree_sitter_language_pack")
    root = DefaultParser().parse("export function add(a: number, b: number): number { return a + b; }\n", "typescript")
    assert root is not None
    assert root.type == "program"
    fns = [n for n in root.walk() if n.type == "function_declaration"]
    assert len(fns) == 1
    assert fns[0].child_by_field("name").text == "add"
    assert fns[0].parent.type == "export_statement"


def test_default_parser_typescript_syntax_error():
    pytest.importorskip("tree_sitter_language_pack")
    assert DefaultParser().parse("function (((\n", "typescript") is None
