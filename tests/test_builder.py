"""
test_builder.py

Tests for graph extraction and GraphBuilder persistence / project builds.
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from code_cpg.builder import (
    GraphBuilder,
    content_hash,
    extract_file_graph,
    iter_source_files,
    make_node_key,
    path_selected,
)
from code_cpg.models import EdgeQuery, EdgeType, GraphContext, NodeQuery, NodeType
from code_cpg.parsing import PythonAstParser
from code_cpg.store import GraphStore

PID = "proj"

MODULE = textwrap.dedent(
    """\
    import os


    class Base:
        pass


    class Loader(Base):
        def load(self, path):
            return self.read(os.path.join(path, "x"))

        def read(self, path):
            return path


    def main():
        return read(".")
    """
)


def _write_repo(tmp_path: Path, files: dict) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    for rel, src in files.items():
        p = repo / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(src, bytes):
            p.write_bytes(src)
        else:
            p.write_text(textwrap.dedent(src), encoding="utf-8")
    return repo


def _extract(src: str, rel: str = "pkg/mod.py"):
    tree = PythonAstParser().parse(textwrap.dedent(src))
    return extract_file_graph(tree, rel, "python", GraphContext(project_id=PID, version_id="v"))


def _edge_set(graph) -> set[tuple[str, str, str]]:
    return {(e.source_key, e.target_key, e.edge_type.value) for e in graph.edges}


# ---------------------------------------------------------------------------
# Keys and hashes
# ---------------------------------------------------------------------------


def test_make_node_key():
    assert make_node_key("src/a.py", 3, "run") == "src/a.py:3:run"
    assert make_node_key("src/a.ts", 7, None) == "src/a.ts:7:anonymous"


def test_content_hash_is_sha256():
    assert content_hash("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


# ---------------------------------------------------------------------------
# extract_file_graph
# ---------------------------------------------------------------------------


def test_extract_nodes():
    graph = _extract(MODULE)
    keys = [n.node_key for n in graph.nodes]
    assert keys == [
        "pkg/mod.py:1:os",
        "pkg/mod.py:4:Base",
        "pkg/mod.py:8:Loader",
        "pkg/mod.py:9:load",
        "pkg/mod.py:12:read",
        "pkg/mod.py:16:main",
    ]
    load = graph.node_by_key()["pkg/mod.py:9:load"]
    assert load.node_type is NodeType.FUNCTION
    assert load.version_id == "v"
    assert load.id is None
    assert load.hash == content_hash('def load(self, path):\n        return self.read(os.path.join(path, "x"))')


def test_extract_edges():
    edges = _edge_set(_extract(MODULE))
    assert ("pkg/mod.py:9:load", "pkg/mod.py:1:os", "USES") in edges
    assert ("pkg/mod.py:9:load", "pkg/mod.py:12:read", "CALLS") in edges
    assert ("pkg/mod.py:8:Loader", "pkg/mod.py:4:Base", "EXTENDS") in edges
    assert ("pkg/mod.py:8:Loader", "pkg/mod.py:9:load", "CONTAINS") in edges
    assert ("pkg/mod.py:8:Loader", "pkg/mod.py:12:read", "CONTAINS") in edges
    assert ("pkg/mod.py:16:main", "pkg/mod.py:12:read", "CALLS") in edges
    # Base contains nothing; main is not nested in any class
    assert not any(src == "pkg/mod.py:4:Base" for src, _, _ in edges)
    assert not any(dst == "pkg/mod.py:16:main" and rel == "CONTAINS" for _, dst, rel in edges)


def test_class_contains_its_last_method():
    graph = _extract(
        """\
        class Loader:
            def load(self):
                return 1

            def read(self):
                return 2
        """,
        rel="m.py",
    )
    contains = {(e.source_key, e.target_key) for e in graph.edges if e.edge_type is EdgeType.CONTAINS}
    assert contains == {("m.py:1:Loader", "m.py:2:load"), ("m.py:1:Loader", "m.py:5:read")}


def test_single_method_class_contains_its_method():
    graph = _extract("class A:\n    def run(self): return 1\n", rel="m.py")
    contains = [e for e in graph.edges if e.edge_type is EdgeType.CONTAINS]
    assert [(e.source_key, e.target_key) for e in contains] == [("m.py:1:A", "m.py:2:run")]


def test_extract_calls_are_direct_and_deduplicated():
    graph = _extract(
        """\
        def a():
            b()
            b()

        def b():
            return b()
        """
    )
    calls = [e for e in graph.edges if e.edge_type is EdgeType.CALLS]
    assert len(calls) == 1
    assert calls[0].call_type == "direct"
    # recursion is not a self edge
    assert all(e.source_key != e.target_key for e in graph.edges)


def test_extract_is_deterministic():
    first, second = _extract(MODULE), _extract(MODULE)
    assert [n.node_key for n in first.nodes] == [n.node_key for n in second.nodes]
    assert [n.hash for n in first.nodes] == [n.hash for n in second.nodes]
    assert _edge_set(first) == _edge_set(second)


def test_extract_unsupported_language_is_empty():
    tree = PythonAstParser().parse("x = 1\n")
    graph = extract_file_graph(tree, "a.rb", "ruby", GraphContext(project_id=PID, version_id="v"))
    assert graph.nodes == []
    assert graph.edges == []


def test_extract_duplicate_keys_are_skipped():
    graph = _extract("x = 1; x = 2\n")
    assert [n.node_key for n in graph.nodes] == ["pkg/mod.py:1:x"]


def test_extract_typescript():
    pytest.importorskip("tree_sitter_language_pack")
    from code_cpg.parsing import DefaultParser

    src = textwrap.dedent(
        """\
        import { format } from "./fmt";

        export class Animal {
            speak(): string { return format(this.name()); }
            name(): string { return "a"; }
        }

        export class Dog extends Animal {}
        """
    )
    tree = DefaultParser().parse(src, "typescript")
    graph = extract_file_graph(tree, "src/zoo.ts", "typescript", GraphContext(project_id=PID, version_id="v"))
    edges = _edge_set(graph)
    assert ("src/zoo.ts:4:speak", "src/zoo.ts:1:./fmt", "USES") in edges
    assert ("src/zoo.ts:4:speak", "src/zoo.ts:5:name", "CALLS") in edges
    assert ("src/zoo.ts:3:Animal", "src/zoo.ts:4:speak", "CONTAINS") in edges
    assert ("src/zoo.ts:8:Dog", "src/zoo.ts:3:Animal", "EXTENDS") in edges


# ---------------------------------------------------------------------------
# File selection
# ---------------------------------------------------------------------------


def test_path_selected():
    assert path_selected("src/a.py", [], [])
    assert path_selected("src/a.py", ["src/*"], [])
    assert not path_selected("lib/a.py", ["src/*"], [])
    assert not path_selected("src/test_a.py", [], ["*test_*"])


def test_iter_source_files(tmp_path):
    repo = _write_repo(
        tmp_path,
        {
            "a.py": "x = 1\n",
            "web/app.ts": "export const y = 1;\n",
            "README.md": "# hi\n",
            "node_modules/dep/index.js": "var z = 1;\n",
            ".venv/lib/site.py": "pass\n",
            "tests/test_a.py": "pass\n",
        },
    )
    ctx = GraphContext(project_id=PID, root_path=str(repo))
    rels = sorted(p.relative_to(repo).as_posix() for p in iter_source_files(ctx))
    assert rels == ["a.py", "tests/test_a.py", "web/app.ts"]

    ctx = GraphContext(project_id=PID, root_path=str(repo), exclude_patterns=["tests/*"], languages=["python"])
    assert [p.name for p in iter_source_files(ctx)] == ["a.py"]


# ---------------------------------------------------------------------------
# GraphBuilder
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path):
    s = GraphStore(tmp_path / "cpg.sqlite")
    yield s
    s.close()


def test_process_file_requires_version(store, tmp_path):
    with pytest.raises(ValueError):
        GraphBuilder(store).process_file("a.py", GraphContext(project_id=PID, root_path=str(tmp_path)), content="x = 1\n")


def test_process_file_persists_nodes_and_edges(store, tmp_path):
    vid = store.create_new_version(PID)
    ctx = GraphContext(project_id=PID, version_id=vid, root_path=str(tmp_path))
    res = GraphBuilder(store).process_file("pkg/mod.py", ctx, content=MODULE)
    assert res.file_path == "pkg/mod.py"
    assert res.nodes_added == 6
    assert res.edges_added == 6
    assert res.edges_dropped == 0
    assert len(res.node_ids) == 6
    assert store.get_graph_statistics(PID).total_edges == 6
    # no logging without a change reason
    assert store.get_operations(PID) == []


def test_process_file_unsupported_and_unparsable(store, tmp_path):
    vid = store.create_new_version(PID)
    ctx = GraphContext(project_id=PID, version_id=vid, root_path=str(tmp_path))
    builder = GraphBuilder(store)
    assert builder.process_file("notes.txt", ctx, content="hello").nodes_added == 0
    assert builder.process_file("bad.py", ctx, content="def (:\n").nodes_added == 0


def test_process_file_logs_operations_with_reason(store, tmp_path):
    vid = store.create_new_version(PID)
    ctx = GraphContext(project_id=PID, version_id=vid, root_path=str(tmp_path))
    res = GraphBuilder(store).process_file("pkg/mod.py", ctx, content=MODULE, change_reason="file_added")
    ops = store.get_operations(PID, vid)
    assert len(ops) == res.nodes_added + res.edges_added
    assert {o.change_reason for o in ops} == {"file_added"}
    assert ops[0].rollback_data == {"node_id": ops[0].node_id}


def test_persist_drops_edges_of_failed_nodes(store, tmp_path):
    vid = store.create_new_version(PID)
    ctx = GraphContext(project_id=PID, version_id=vid, root_path=str(tmp_path))
    builder = GraphBuilder(store)
    builder.process_file("pkg/mod.py", ctx, content=MODULE)
    # second persist of the same keys: every node conflicts, every edge is dropped
    res = builder.process_file("pkg/mod.py", ctx, content=MODULE)
    assert res.nodes_added == 0
    assert res.edges_added == 0
    assert res.edges_dropped == 6
    assert len(res.errors) == 6
    assert res.errors[0].startswith("pkg/mod.py:1:os")


def test_build_graph_from_project(store, tmp_path):
    repo = _write_repo(
        tmp_path,
        {
            "pkg/mod.py": MODULE,
            "pkg/util.py": "def helper():\n    return 1\n",
            "docs/readme.md": "# docs\n",
        },
    )
    ctx = GraphContext(project_id=PID, root_path=str(repo))
    result = GraphBuilder(store).build_graph_from_project(ctx)
    assert result.success
    assert result.errors == []
    assert result.nodes_affected == 7
    assert store.get_current_version(PID) == result.version_id
    version = store.get_version(result.version_id)
    assert version.metadata["kind"] == "full_build"
    stats = store.get_graph_statistics(PID)
    assert stats.total_files == 2
    for e in store.query_edges(EdgeQuery(project_id=PID)).data:
        assert store.get_node(e.source_node_id) is not None
        assert store.get_node(e.target_node_id) is not None


def test_rebuild_creates_child_version(store, tmp_path):
    repo = _write_repo(tmp_path, {"a.py": "def f():\n    pass\n"})
    ctx = GraphContext(project_id=PID, root_path=str(repo))
    builder = GraphBuilder(store)
    first = builder.build_graph_from_project(ctx)
    second = builder.build_graph_from_project(ctx)
    assert store.get_version(second.version_id).parent_version_id == first.version_id
    assert store.get_graph_statistics(PID, second.version_id).total_nodes == 1


def test_build_collects_file_errors(store, tmp_path):
    repo = _write_repo(
        tmp_path,
        {
            "good.py": "def ok():\n    pass\n",
            "bad.py": b"x = '\xff\xfe'\n",
        },
    )
    result = GraphBuilder(store).build_graph_from_project(GraphContext(project_id=PID, root_path=str(repo)))
    assert result.success is False
    assert len(result.errors) == 1
    assert result.errors[0].startswith("bad.py")
    names = [n.name for n in store.query_nodes(NodeQuery(project_id=PID)).data]
    assert names == ["ok"]


def test_build_runs_purpose_pass_in_foreground(store, tmp_path):
    class Upper:
        def purpose(self, descriptor):
            return descriptor["function_name"].upper()

    repo = _write_repo(tmp_path, {"a.py": "def f():\n    pass\n\ndef g():\n    pass\n"})
    builder = GraphBuilder(store, summarizer=Upper(), purpose_rate_limit_seconds=0.0, purpose_in_background=False)
    builder.build_graph_from_project(GraphContext(project_id=PID, root_path=str(repo)))
    purposes = {n.name: n.purpose for n in store.query_nodes(NodeQuery(project_id=PID)).data}
    assert purposes == {"f": "F", "g": "G"}
    assert builder.wait_for_annotations() is True


def test_build_runs_purpose_pass_in_background(store, tmp_path):
    class Echo:
        def purpose(self, descriptor):
            return "does " + descriptor["function_name"]

    repo = _write_repo(tmp_path, {"a.py": "def f():\n    pass\n"})
    builder = GraphBuilder(store, summarizer=Echo(), purpose_rate_limit_seconds=0.0)
    result = builder.build_graph_from_project(GraphContext(project_id=PID, root_path=str(repo)))
    assert result.success
    assert builder.wait_for_annotations(timeout=10) is True
    (node,) = store.query_nodes(NodeQuery(project_id=PID)).data
    assert node.purpose == "does f"
