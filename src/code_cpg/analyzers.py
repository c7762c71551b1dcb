#!/usr/bin/env python3
"""
analyzers.py

Per-language knowledge for graph extraction.

A :class:`LanguageAnalyzer` decides which parse nodes are *significant*
(become graph nodes), extracts their semantic attributes and scores their
cyclomatic complexity.  Analyzers are looked up by language id through a
small registry, so the builder never branches on language.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from code_cpg.models import NodeType, Parameter
from code_cpg.parsing import ParseNode

# ============================================================================
# Semantic info
# ============================================================================


@dataclass
class SemanticInfo:
    """
    Attributes extracted from one significant parse node.

    :param imported_names: Local bindings introduced by an import.
    :param function_calls: Callee names invoked inside the node.
    :param base_classes: Names of extended classes (classes only).
    """

    node_type: NodeType
    name: str | None = None
    signature: str | None = None
    parameters: list[Parameter] = field(default_factory=list)
    return_type: str | None = None
    visibility: str | None = None
    is_async: bool = False
    is_static: bool = False
    is_abstract: bool = False
    docstring: str | None = None
    dependencies: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    imported_names: list[str] = field(default_factory=list)
    function_calls: list[str] = field(default_factory=list)
    base_classes: list[str] = field(default_factory=list)


class LanguageAnalyzer:
    """
    Base analyzer.

    Subclasses set :attr:`significant_types` and implement
    :meth:`extract_semantic_info` and :meth:`complexity`.
    """

    language: str = ""
    significant_types: dict[str, NodeType] = {}

    def is_significant(self, node: ParseNode) -> bool:
        return node.type in self.significant_types

    def extract_significant_nodes(self, tree: ParseNode) -> list[ParseNode]:
        """Significant nodes of *tree* in pre-order (source order)."""
        return [n for n in tree.walk() if self.is_significant(n)]

    def extract_semantic_info(self, node: ParseNode) -> SemanticInfo:
        raise NotImplementedError

    def complexity(self, node: ParseNode) -> int:
        raise NotImplementedError


def _unique(items) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        if item:
            seen.setdefault(item, None)
    return list(seen)


def _visibility(name: str | None) -> str:
    if not name:
        return "public"
    if name.startswith("#") or (name.startswith("__") and not name.endswith("__")):
        return "private"
    if name.startswith("_"):
        return "protected"
    return "public"


# ============================================================================
# Python
# ============================================================================


def expr_to_name(expr: ast.AST) -> str | None:
    """
    Convert AST expression to dotted name (best effort).

    :param expr: AST node
    """
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        left = expr_to_name(expr.value)
        return f"{left}.{expr.attr}" if left else expr.attr
    if isinstance(expr, ast.Call):
        return expr_to_name(expr.func)
    if isinstance(expr, ast.Subscript):
        return expr_to_name(expr.value)
    return None


def _unparse(expr: ast.AST | None) -> str | None:
    return ast.unparse(expr) if expr is not None else None


class PythonAnalyzer(LanguageAnalyzer):
    """
    Analyzer for trees produced by :class:`~code_cpg.parsing.PythonAstParser`.

    Functions, methods, classes and imports are significant anywhere;
    assignments only at module level (column 0).
    """

    language = "python"
    significant_types = {
        "FunctionDef": NodeType.FUNCTION,
        "AsyncFunctionDef": NodeType.FUNCTION,
        "ClassDef": NodeType.CLASS,
        "Import": NodeType.IMPORT,
        "ImportFrom": NodeType.IMPORT,
        "Assign": NodeType.VARIABLE,
        "AnnAssign": NodeType.VARIABLE,
    }

    def is_significant(self, node: ParseNode) -> bool:
        if node.type not in self.significant_types:
            return False
        if node.type in ("Assign", "AnnAssign"):
            return node.start_column == 0 and self._assign_name(node.raw) is not None
        return True

    def extract_semantic_info(self, node: ParseNode) -> SemanticInfo:
        raw = node.raw
        node_type = self.significant_types[node.type]
        top_level = node.start_column == 0

        if isinstance(raw, (ast.FunctionDef, ast.AsyncFunctionDef)):
            return self._function_info(raw, top_level)
        if isinstance(raw, ast.ClassDef):
            return self._class_info(raw, top_level)
        if isinstance(raw, (ast.Import, ast.ImportFrom)):
            return self._import_info(raw, node)

        name = self._assign_name(raw)
        value = raw.value
        return SemanticInfo(
            node_type=node_type,
            name=name,
            signature=node.text.splitlines()[0] if node.text else None,
            return_type=_unparse(getattr(raw, "annotation", None)),
            visibility=_visibility(name),
            dependencies=self._referenced_names(value) if value is not None else [],
            function_calls=self._calls(value) if value is not None else [],
            exports=[name] if top_level and name and not name.startswith("_") else [],
        )

    def complexity(self, node: ParseNode) -> int:
        """
        ``1`` plus one per branch point: ``if``/``elif``, a real ``else``,
        loops, ``except`` clauses, ``case`` arms, conditional expressions,
        comprehension filters and each extra boolean operand.
        """
        score = 1
        for sub in ast.walk(node.raw):
            if isinstance(sub, ast.If):
                score += 1
                if sub.orelse and not (len(sub.orelse) == 1 and isinstance(sub.orelse[0], ast.If)):
                    score += 1
            elif isinstance(sub, (ast.For, ast.AsyncFor, ast.While, ast.IfExp, ast.ExceptHandler)):
                score += 1
            elif isinstance(sub, ast.BoolOp):
                score += len(sub.values) - 1
            elif isinstance(sub, ast.comprehension):
                score += len(sub.ifs)
            elif type(sub).__name__ == "match_case":
                score += 1
        return score

    # ------------------------------------------------------------------

    def _function_info(self, fn: ast.FunctionDef | ast.AsyncFunctionDef, top_level: bool) -> SemanticInfo:
        decorators = [expr_to_name(d) or "" for d in fn.decorator_list]
        is_async = isinstance(fn, ast.AsyncFunctionDef)
        signature = f"{'async ' if is_async else ''}def {fn.name}({ast.unparse(fn.args)})"
        if fn.returns is not None:
            signature += f" -> {ast.unparse(fn.returns)}"

        body_deps: list[str] = []
        calls: list[str] = []
        for stmt in fn.body:
            body_deps.extend(self._referenced_names(stmt))
            calls.extend(self._calls(stmt))

        return SemanticInfo(
            node_type=NodeType.FUNCTION,
            name=fn.name,
            signature=signature,
            parameters=self._parameters(fn.args),
            return_type=_unparse(fn.returns),
            visibility=_visibility(fn.name),
            is_async=is_async,
            is_static=any(d.endswith("staticmethod") for d in decorators),
            is_abstract=any(d.endswith("abstractmethod") for d in decorators),
            docstring=ast.get_docstring(fn),
            dependencies=_unique([*[d.split(".")[0] for d in decorators], *body_deps]),
            function_calls=_unique(calls),
            exports=[fn.name] if top_level and not fn.name.startswith("_") else [],
        )

    def _class_info(self, cls: ast.ClassDef, top_level: bool) -> SemanticInfo:
        bases = [expr_to_name(b) for b in cls.bases]
        bases = [b for b in bases if b]
        abstract = any(b.split(".")[-1] in ("ABC", "Protocol") for b in bases) or any(
            isinstance(s, (ast.FunctionDef, ast.AsyncFunctionDef))
            and any((expr_to_name(d) or "").endswith("abstractmethod") for d in s.decorator_list)
            for s in cls.body
        )
        signature = f"class {cls.name}"
        if cls.bases or cls.keywords:
            signature += f"({', '.join(ast.unparse(b) for b in [*cls.bases, *cls.keywords])})"

        return SemanticInfo(
            node_type=NodeType.CLASS,
            name=cls.name,
            signature=signature,
            visibility=_visibility(cls.name),
            is_abstract=abstract,
            docstring=ast.get_docstring(cls),
            dependencies=_unique(
                [b.split(".")[0] for b in bases]
                + [(expr_to_name(d) or "").split(".")[0] for d in cls.decorator_list]
            ),
            base_classes=[b.split(".")[-1] for b in bases],
            exports=[cls.name] if top_level and not cls.name.startswith("_") else [],
        )

    def _import_info(self, imp: ast.Import | ast.ImportFrom, node: ParseNode) -> SemanticInfo:
        if isinstance(imp, ast.Import):
            module = imp.names[0].name
            bound = [a.asname or a.name.split(".")[0] for a in imp.names]
        else:
            module = "." * imp.level + (imp.module or "")
            bound = [a.asname or a.name for a in imp.names if a.name != "*"]
        return SemanticInfo(
            node_type=NodeType.IMPORT,
            name=module,
            signature=node.text.strip(),
            imported_names=_unique(bound),
        )

    @staticmethod
    def _assign_name(raw: ast.AST) -> str | None:
        if isinstance(raw, ast.AnnAssign):
            return raw.target.id if isinstance(raw.target, ast.Name) else None
        if isinstance(raw, ast.Assign):
            for target in raw.targets:
                if isinstance(target, ast.Name):
                    return target.id
        return None

    @staticmethod
    def _parameters(args: ast.arguments) -> list[Parameter]:
        params: list[Parameter] = []
        positional = [*args.posonlyargs, *args.args]
        defaults = [None] * (len(positional) - len(args.defaults)) + list(args.defaults)
        for arg, default in zip(positional, defaults):
            params.append(
                Parameter(
                    name=arg.arg,
                    type=_unparse(arg.annotation),
                    default_value=_unparse(default),
                    is_optional=default is not None,
                )
            )
        if args.vararg is not None:
            params.append(
                Parameter(name=args.vararg.arg, type=_unparse(args.vararg.annotation), is_optional=True, is_rest=True)
            )
        for arg, default in zip(args.kwonlyargs, args.kw_defaults):
            params.append(
                Parameter(
                    name=arg.arg,
                    type=_unparse(arg.annotation),
                    default_value=_unparse(default),
                    is_optional=default is not None,
                )
            )
        if args.kwarg is not None:
            params.append(
                Parameter(name=args.kwarg.arg, type=_unparse(args.kwarg.annotation), is_optional=True, is_rest=True)
            )
        return params

    @staticmethod
    def _referenced_names(tree: ast.AST) -> list[str]:
        names: list[str] = []
        for sub in ast.walk(tree):
            if isinstance(sub, ast.Name) and isinstance(sub.ctx, ast.Load):
                names.append(sub.id)
        return names

    @staticmethod
    def _calls(tree: ast.AST) -> list[str]:
        calls: list[str] = []
        for sub in ast.walk(tree):
            if not isinstance(sub, ast.Call):
                continue
            callee = expr_to_name(sub.func)
            if not callee:
                continue
            # self.helper() / cls.helper() resolve by bare method name
            head, _, tail = callee.partition(".")
            calls.append(tail if head in ("self", "cls") and tail and "." not in tail else callee)
        return calls


# ============================================================================
# JavaScript / TypeScript
# ============================================================================

_TS_BRANCH_RE = re.compile(r"\b(?:if|else|while|for|switch|catch|case)\b")
_TS_FUNCTION_VALUES = ("arrow_function", "function_expression", "function", "generator_function")


class TypeScriptAnalyzer(LanguageAnalyzer):
    """
    Analyzer for tree-sitter JavaScript, TypeScript and TSX trees.

    Top-level ``const``/``let``/``var`` declarations are significant unless
    every declarator holds a function, in which case the function itself is
    the node (named after its declarator).
    """

    significant_types = {
        "function_declaration": NodeType.FUNCTION,
        "generator_function_declaration": NodeType.FUNCTION,
        "method_definition": NodeType.FUNCTION,
        "arrow_function": NodeType.FUNCTION,
        "function_expression": NodeType.FUNCTION,
        "function": NodeType.FUNCTION,
        "class_declaration": NodeType.CLASS,
        "abstract_class_declaration": NodeType.CLASS,
        "class": NodeType.CLASS,
        "interface_declaration": NodeType.INTERFACE,
        "type_alias_declaration": NodeType.TYPE,
        "enum_declaration": NodeType.TYPE,
        "internal_module": NodeType.NAMESPACE,
        "import_statement": NodeType.IMPORT,
        "lexical_declaration": NodeType.VARIABLE,
        "variable_declaration": NodeType.VARIABLE,
    }

    def __init__(self, language: str = "typescript") -> None:
        self.language = language

    def is_significant(self, node: ParseNode) -> bool:
        if node.type not in self.significant_types:
            return False
        if node.type in ("lexical_declaration", "variable_declaration"):
            parent = node.parent
            if parent is None or parent.type not in ("program", "export_statement"):
                return False
            declarators = node.children_of_type("variable_declarator")
            return any(self._declarator_value_type(d) not in _TS_FUNCTION_VALUES for d in declarators)
        return True

    def extract_semantic_info(self, node: ParseNode) -> SemanticInfo:
        node_type = self.significant_types[node.type]
        if node_type is NodeType.IMPORT:
            return self._import_info(node)

        name = self._name_of(node)
        header = node.text.split("(", 1)[0].split("{", 1)[0]
        modifiers = set(header.split())
        visibility = next((m for m in ("private", "protected", "public") if m in modifiers), None)

        info = SemanticInfo(
            node_type=node_type,
            name=name,
            signature=self._signature(node),
            visibility=visibility or _visibility(name),
            is_async="async" in modifiers,
            is_static="static" in modifiers,
            is_abstract="abstract" in modifiers or node.type == "abstract_class_declaration",
            docstring=self._jsdoc(node),
            dependencies=self._identifiers(node, exclude=name),
            exports=[name] if name and self._is_exported(node) else [],
        )

        if node_type is NodeType.FUNCTION:
            params = node.child_by_field("parameters") or node.child_by_field("parameter")
            info.parameters = self._parameters(params) if params is not None else []
            ret = node.child_by_field("return_type")
            info.return_type = ret.text.lstrip(":").strip() if ret is not None else None
            info.function_calls = self._calls(node)
        elif node_type is NodeType.CLASS:
            info.base_classes = self._base_classes(node)
        elif node_type is NodeType.VARIABLE:
            info.function_calls = self._calls(node)
        return info

    def complexity(self, node: ParseNode) -> int:
        """``1`` plus each branching keyword and each ``&&`` / ``||``."""
        text = node.text
        return 1 + len(_TS_BRANCH_RE.findall(text)) + text.count("&&") + text.count("||")

    # ------------------------------------------------------------------

    @staticmethod
    def _declarator_value_type(declarator: ParseNode) -> str | None:
        value = declarator.child_by_field("value")
        return value.type if value is not None else None

    def _name_of(self, node: ParseNode) -> str | None:
        name = node.child_by_field("name")
        if name is not None:
            return name.text
        if node.type in ("lexical_declaration", "variable_declaration"):
            for decl in node.children_of_type("variable_declarator"):
                target = decl.child_by_field("name")
                if target is not None:
                    return target.text
            return None
        parent = node.parent
        if parent is not None and parent.type == "variable_declarator":
            target = parent.child_by_field("name")
            return target.text if target is not None else None
        if parent is not None and parent.type in ("pair", "public_field_definition", "assignment_expression"):
            key = parent.child_by_field("key") or parent.child_by_field("name") or parent.child_by_field("left")
            return key.text if key is not None else None
        return None

    @staticmethod
    def _signature(node: ParseNode) -> str:
        body = node.child_by_field("body")
        if body is not None and node.text.endswith(body.text):
            head = " ".join(node.text[: len(node.text) - len(body.text)].split())
            if head.endswith("=>"):
                head = head[:-2]
            if head.strip():
                return head.strip()
        return node.text.splitlines()[0].strip() if node.text else ""

    @staticmethod
    def _jsdoc(node: ParseNode) -> str | None:
        anchor = node
        while anchor.parent is not None and anchor.parent.type in (
            "export_statement",
            "variable_declarator",
            "lexical_declaration",
            "variable_declaration",
        ):
            anchor = anchor.parent
        prev = anchor.previous_sibling()
        if prev is None or prev.type != "comment" or not prev.text.startswith("/**"):
            return None
        lines = [ln.strip().lstrip("*").strip() for ln in prev.text[3:-2].splitlines()]
        return "\n".join(ln for ln in lines if ln) or None

    @staticmethod
    def _is_exported(node: ParseNode) -> bool:
        cur = node.parent
        while cur is not None and cur.type in ("variable_declarator", "lexical_declaration", "variable_declaration"):
            cur = cur.parent
        return cur is not None and cur.type == "export_statement"

    @staticmethod
    def _identifiers(node: ParseNode, exclude: str | None = None) -> list[str]:
        return _unique(
            n.text
            for n in node.walk()
            if n.type in ("identifier", "type_identifier") and n.text != exclude
        )

    @staticmethod
    def _calls(node: ParseNode) -> list[str]:
        calls: list[str] = []
        for n in node.walk():
            if n.type not in ("call_expression", "new_expression"):
                continue
            fn = n.child_by_field("function") or n.child_by_field("constructor")
            if fn is None:
                continue
            if fn.type == "member_expression":
                obj = fn.child_by_field("object")
                prop = fn.child_by_field("property")
                if obj is not None and obj.type == "this" and prop is not None:
                    calls.append(prop.text)
                    continue
            calls.append(fn.text)
        return _unique(calls)

    @staticmethod
    def _parameters(params: ParseNode) -> list[Parameter]:
        if params.type in ("identifier",):
            return [Parameter(name=params.text)]
        out: list[Parameter] = []
        for p in params.children:
            if p.type == "comment":
                continue
            type_node = p.child_by_field("type")
            ptype = type_node.text.lstrip(":").strip() if type_node is not None else None
            if p.type in ("required_parameter", "optional_parameter"):
                pattern = p.child_by_field("pattern")
                value = p.child_by_field("value")
                is_rest = pattern is not None and pattern.type == "rest_pattern"
                name = pattern.text if pattern is not None else p.text
                out.append(
                    Parameter(
                        name=name.lstrip(".") if is_rest else name,
                        type=ptype,
                        default_value=value.text if value is not None else None,
                        is_optional=p.type == "optional_parameter" or value is not None,
                        is_rest=is_rest,
                    )
                )
            elif p.type == "assignment_pattern":
                left = p.child_by_field("left")
                right = p.child_by_field("right")
                out.append(
                    Parameter(
                        name=left.text if left is not None else p.text,
                        default_value=right.text if right is not None else None,
                        is_optional=True,
                    )
                )
            elif p.type == "rest_pattern":
                out.append(Parameter(name=p.text.lstrip("."), is_optional=True, is_rest=True))
            else:
                out.append(Parameter(name=p.text, type=ptype))
        return out

    @staticmethod
    def _base_classes(node: ParseNode) -> list[str]:
        heritage = next((c for c in node.children if c.type == "class_heritage"), None)
        if heritage is None:
            return []
        extends = heritage.children_of_type("extends_clause")
        candidates = extends[0].children if extends else heritage.children[:1]
        bases: list[str] = []
        for c in candidates:
            if c.type in ("identifier", "type_identifier"):
                bases.append(c.text)
            elif c.type == "member_expression":
                bases.append(c.text.rsplit(".", 1)[-1])
        return bases

    @staticmethod
    def _import_info(node: ParseNode) -> SemanticInfo:
        source = node.child_by_field("source")
        module = source.text.strip("'\"`") if source is not None else None
        bound: list[str] = []
        for clause in node.children_of_type("import_clause"):
            for part in clause.children:
                if part.type == "identifier":
                    bound.append(part.text)
                elif part.type == "namespace_import":
                    bound.extend(c.text for c in part.children if c.type == "identifier")
                elif part.type == "named_imports":
                    for spec in part.children_of_type("import_specifier"):
                        alias = spec.child_by_field("alias") or spec.child_by_field("name")
                        if alias is not None:
                            bound.append(alias.text)
        return SemanticInfo(
            node_type=NodeType.IMPORT,
            name=module,
            signature=node.text.strip(),
            imported_names=_unique(bound),
        )


# ============================================================================
# Registry
# ============================================================================

EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
}

_ANALYZERS: dict[str, LanguageAnalyzer] = {
    "python": PythonAnalyzer(),
    "javascript": TypeScriptAnalyzer("javascript"),
    "typescript": TypeScriptAnalyzer("typescript"),
    "tsx": TypeScriptAnalyzer("tsx"),
}


def register_analyzer(language: str, analyzer: LanguageAnalyzer) -> None:
    """Register (or replace) the analyzer for *language*."""
    _ANALYZERS[language] = analyzer


def get_analyzer(language: str) -> LanguageAnalyzer | None:
    """Return the analyzer for *language*, or ``None`` if unsupported."""
    return _ANALYZERS.get(language)


def language_for_path(path: str) -> str | None:
    """
    Map a file path to a language id by extension.

    :param path: File path (only the suffix is inspected).
    :return: Language id or ``None``.
    """
    return EXTENSION_LANGUAGES.get(PurePosixPath(path).suffix.lower())
