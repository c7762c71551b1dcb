"""
test_store.py

Tests for GraphStore — versioned SQLite persistence, CRUD, cycle detection
and the operation log.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from code_cpg.errors import Conflict, StorageFailure
from code_cpg.models import (
    CodeLocation,
    EdgeQuery,
    EdgeType,
    GraphEdge,
    GraphNode,
    NodeQuery,
    NodeType,
    OperationType,
    UpdateOperation,
)
from code_cpg.store import GraphStore, cycle_severity

PID = "proj"


def _node(
    version_id: str,
    name: str,
    *,
    path: str = "src/mod.py",
    line: int = 1,
    node_type: NodeType = NodeType.FUNCTION,
    complexity: int = 1,
    node_id: str | None = None,
) -> GraphNode:
    return GraphNode(
        id=node_id,
        project_id=PID,
        version_id=version_id,
        node_key=f"{path}:{line}:{name}",
        node_type=node_type,
        location=CodeLocation(path, line, line + 2),
        language="python",
        hash=f"hash-{name}",
        name=name,
        complexity=complexity,
    )


def _edge(version_id: str, src: str, dst: str, edge_type: EdgeType = EdgeType.CALLS) -> GraphEdge:
    return GraphEdge(
        project_id=PID,
        version_id=version_id,
        source_node_id=src,
        target_node_id=dst,
        edge_type=edge_type,
    )


@pytest.fixture()
def store(tmp_path: Path):
    s = GraphStore(tmp_path / "cpg.sqlite")
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Construction / connection
# ---------------------------------------------------------------------------


def test_store_creates_db(tmp_path):
    db = tmp_path / "nested" / "test.sqlite"
    store = GraphStore(db)
    _ = store.con  # trigger lazy connect
    assert db.exists()
    store.close()


def test_store_context_manager(tmp_path):
    db = tmp_path / "test.sqlite"
    with GraphStore(db) as store:
        _ = store.con
    assert db.exists()
    assert store._con is None


def test_store_repr(store):
    assert "GraphStore" in repr(store)


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def test_versions_are_numbered_per_project(store):
    v1 = store.create_new_version(PID)
    v2 = store.create_new_version(PID, v1)
    other = store.create_new_version("other")
    assert store.get_version(v1).version_number == 1
    assert store.get_version(v2).version_number == 2
    assert store.get_version(v2).parent_version_id == v1
    assert store.get_version(other).version_number == 1
    assert store.get_current_version(PID) == v2


def test_current_version_none_for_unknown_project(store):
    assert store.get_current_version("nope") is None
    assert store.get_version("missing") is None


def test_version_history_newest_first(store):
    ids = [store.create_new_version(PID)]
    for _ in range(3):
        ids.append(store.create_new_version(PID, ids[-1]))
    history = store.get_version_history(PID, limit=2)
    assert [v.id for v in history] == [ids[3], ids[2]]


def test_version_metadata_and_checksum(store):
    vid = store.create_new_version(PID, checksum="abc", metadata={"kind": "full_build"})
    v = store.get_version(vid)
    assert v.checksum == "abc"
    assert v.metadata == {"kind": "full_build"}


def test_carry_forward_moves_rows(store):
    v1 = store.create_new_version(PID)
    a = store.add_node(_node(v1, "a"))
    b = store.add_node(_node(v1, "b", line=10))
    store.add_edge(_edge(v1, a, b))

    v2 = store.create_new_version(PID, v1, carry_forward=True)
    assert store.get_node(a).version_id == v2
    assert store.query_nodes(NodeQuery(project_id=PID, version_id=v1)).total_count == 0
    assert store.query_edges(EdgeQuery(project_id=PID, version_id=v2)).total_count == 1


def test_full_child_version_starts_empty(store):
    v1 = store.create_new_version(PID)
    store.add_node(_node(v1, "a"))
    v2 = store.create_new_version(PID, v1)
    assert store.get_graph_statistics(PID, v2).total_nodes == 0
    assert store.get_graph_statistics(PID, v1).total_nodes == 1


def test_carry_forward_requires_parent(store):
    with pytest.raises(ValueError):
        store.create_new_version(PID, carry_forward=True)


def test_parent_must_belong_to_project(store):
    other = store.create_new_version("other")
    with pytest.raises(ValueError):
        store.create_new_version(PID, other)


def test_parent_version_is_immutable(store):
    v1 = store.create_new_version(PID)
    v2 = store.create_new_version(PID, v1)
    v3 = store.create_new_version(PID, v2)
    with pytest.raises(sqlite3.DatabaseError):
        store.con.execute("UPDATE graph_versions SET parent_version_id = ? WHERE id = ?", (v1, v3))
    store.con.rollback()


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def test_add_and_get_node_round_trip(store):
    vid = store.create_new_version(PID)
    node = _node(vid, "parse", complexity=4)
    node.docstring = "Parse a file."
    node.dependencies = ["os"]
    nid = store.add_node(node)

    got = store.get_node(nid)
    assert got.id == nid
    assert got.node_key == "src/mod.py:1:parse"
    assert got.node_type is NodeType.FUNCTION
    assert got.location == CodeLocation("src/mod.py", 1, 3)
    assert got.complexity == 4
    assert got.docstring == "Parse a file."
    assert got.dependencies == ["os"]
    assert got.created_at and got.updated_at


def test_add_node_keeps_preset_id(store):
    vid = store.create_new_version(PID)
    assert store.add_node(_node(vid, "a", node_id="fixed")) == "fixed"


def test_add_node_requires_version(store):
    with pytest.raises(ValueError):
        store.add_node(_node("", "a"))


def test_duplicate_node_key_conflicts(store):
    vid = store.create_new_version(PID)
    store.add_node(_node(vid, "a"))
    with pytest.raises(Conflict):
        store.add_node(_node(vid, "a"))


def test_get_node_by_key_defaults_to_current_version(store):
    vid = store.create_new_version(PID)
    nid = store.add_node(_node(vid, "a"))
    assert store.get_node_by_key(PID, "src/mod.py:1:a").id == nid
    assert store.get_node_by_key(PID, "src/mod.py:99:zzz") is None
    assert store.get_node_by_key("nope", "src/mod.py:1:a") is None


def test_update_node_patches_fields(store):
    vid = store.create_new_version(PID)
    nid = store.add_node(_node(vid, "a"))
    assert store.update_node(
        nid,
        {
            "name": "b",
            "is_async": True,
            "location": {"file_path": "src/other.py", "start_line": 5, "end_line": 9},
        },
    )
    got = store.get_node(nid)
    assert got.name == "b"
    assert got.is_async is True
    assert got.location.file_path == "src/other.py"
    assert got.location.start_line == 5


def test_update_node_unknown_field(store):
    vid = store.create_new_version(PID)
    nid = store.add_node(_node(vid, "a"))
    with pytest.raises(ValueError):
        store.update_node(nid, {"bogus": 1})


def test_update_missing_node_returns_false(store):
    assert store.update_node("missing", {"name": "x"}) is False


def test_delete_node_cascades_edges(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    c = store.add_node(_node(vid, "c", line=20))
    store.add_edge(_edge(vid, a, b))
    store.add_edge(_edge(vid, c, a))
    keep = store.add_edge(_edge(vid, b, c))

    assert store.delete_node(a) == 2
    assert store.get_node(a) is None
    remaining = store.query_edges(EdgeQuery(project_id=PID)).data
    assert [e.id for e in remaining] == [keep]


def test_query_nodes_filters_and_pages(store):
    vid = store.create_new_version(PID)
    store.add_node(_node(vid, "parse_file", line=1))
    store.add_node(_node(vid, "parse_dir", line=10))
    store.add_node(_node(vid, "Render", line=20, node_type=NodeType.CLASS))
    store.add_node(_node(vid, "helper", path="src/util.py"))

    assert store.query_nodes(NodeQuery(project_id=PID)).total_count == 4
    classes = store.query_nodes(NodeQuery(project_id=PID, node_type=NodeType.CLASS)).data
    assert [n.name for n in classes] == ["Render"]
    in_util = store.query_nodes(NodeQuery(project_id=PID, file_path="src/util.py")).data
    assert [n.name for n in in_util] == ["helper"]
    assert store.query_nodes(NodeQuery(project_id=PID, name="parse_dir")).total_count == 1

    page = store.query_nodes(NodeQuery(project_id=PID, pattern="PARSE", limit=1))
    assert page.total_count == 2
    assert page.has_more is True
    assert page.data[0].name == "parse_file"  # ordered by path, line


def test_query_nodes_pattern_is_literal(store):
    vid = store.create_new_version(PID)
    store.add_node(_node(vid, "get_user", line=1))
    store.add_node(_node(vid, "getXuser", line=5))
    store.add_node(_node(vid, "pct", path="src/100%.py"))

    def names(pattern: str) -> list[str]:
        return [n.name for n in store.query_nodes(NodeQuery(project_id=PID, pattern=pattern)).data]

    assert names("get_user") == ["get_user"]
    assert names("100%") == ["pct"]
    assert names("%") == ["pct"]


def test_query_nodes_without_version(store):
    result = store.query_nodes(NodeQuery(project_id=PID))
    assert result.data == []
    assert result.total_count == 0


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


def test_add_edge_requires_endpoints_in_version(store):
    v1 = store.create_new_version(PID)
    a = store.add_node(_node(v1, "a"))
    with pytest.raises(ValueError):
        store.add_edge(_edge(v1, a, "missing"))


def test_duplicate_edge_conflicts(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    store.add_edge(_edge(vid, a, b))
    with pytest.raises(Conflict):
        store.add_edge(_edge(vid, a, b))
    # same endpoints, other type is fine
    store.add_edge(_edge(vid, a, b, EdgeType.USES))


def test_get_and_delete_edge(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    eid = store.add_edge(_edge(vid, a, b))
    assert store.get_edge(eid).edge_type is EdgeType.CALLS
    assert store.delete_edge(eid) is True
    assert store.delete_edge(eid) is False
    assert store.get_edge(eid) is None


def test_query_edges_by_type(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    store.add_edge(_edge(vid, a, b, EdgeType.CALLS))
    store.add_edge(_edge(vid, a, b, EdgeType.USES))
    store.add_edge(_edge(vid, b, a, EdgeType.CONTAINS))

    assert store.query_edges(EdgeQuery(project_id=PID, edge_type=EdgeType.USES)).total_count == 1
    both = store.query_edges(
        EdgeQuery(project_id=PID, edge_types=(EdgeType.CALLS, EdgeType.USES), source_node_id=a)
    )
    assert both.total_count == 2
    assert store.query_edges(EdgeQuery(project_id=PID, target_node_id=a)).total_count == 1


def test_edges_within(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    c = store.add_node(_node(vid, "c", line=20))
    inside = store.add_edge(_edge(vid, a, b))
    store.add_edge(_edge(vid, b, c))
    assert [e.id for e in store.edges_within({a, b})] == [inside]
    assert store.edges_within(set()) == []


def test_no_dangling_edges_after_deletes(store):
    vid = store.create_new_version(PID)
    ids = [store.add_node(_node(vid, f"n{i}", line=i * 10 + 1)) for i in range(5)]
    for i in range(4):
        store.add_edge(_edge(vid, ids[i], ids[i + 1]))
    store.add_edge(_edge(vid, ids[4], ids[0]))
    store.delete_node(ids[2])
    for e in store.query_edges(EdgeQuery(project_id=PID)).data:
        assert store.get_node(e.source_node_id) is not None
        assert store.get_node(e.target_node_id) is not None


def test_node_with_connections(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a"))
    b = store.add_node(_node(vid, "b", line=10))
    store.add_edge(_edge(vid, a, b))
    conns = store.get_node_with_connections(b)
    assert conns.node.id == b
    assert len(conns.incoming_edges) == 1
    assert conns.outgoing_edges == []
    assert store.get_node_with_connections("missing") is None


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


def test_cycle_reported_once_from_smallest_id(store):
    vid = store.create_new_version(PID)
    for i, name in enumerate(("c", "a", "b")):
        store.add_node(_node(vid, name, line=i * 10 + 1, node_id=name))
    store.add_edge(_edge(vid, "a", "b"))
    store.add_edge(_edge(vid, "b", "c", EdgeType.USES))
    store.add_edge(_edge(vid, "c", "a", EdgeType.IMPORTS))

    cycles = store.find_circular_dependencies(PID)
    assert len(cycles) == 1
    cycle = cycles[0]
    assert cycle.nodes == ["a", "b", "c"]
    assert cycle.cycle_length == 3
    assert cycle.edge_types == ["CALLS", "USES", "IMPORTS"]
    assert cycle.severity == "low"


def test_cycles_ignore_self_loops_and_other_types(store):
    vid = store.create_new_version(PID)
    store.add_node(_node(vid, "a", node_id="a"))
    store.add_node(_node(vid, "b", line=10, node_id="b"))
    store.add_edge(_edge(vid, "a", "a"))
    store.add_edge(_edge(vid, "a", "b", EdgeType.CONTAINS))
    store.add_edge(_edge(vid, "b", "a", EdgeType.CONTAINS))
    assert store.find_circular_dependencies(PID) == []


def test_cycles_respect_max_depth(store):
    vid = store.create_new_version(PID)
    names = ["a", "b", "c", "d"]
    for i, name in enumerate(names):
        store.add_node(_node(vid, name, line=i * 10 + 1, node_id=name))
    for src, dst in zip(names, names[1:] + names[:1]):
        store.add_edge(_edge(vid, src, dst))
    assert store.find_circular_dependencies(PID, max_depth=3) == []
    assert len(store.find_circular_dependencies(PID, max_depth=4)) == 1


def test_cycle_severity_tiers():
    assert cycle_severity(3) == "low"
    assert cycle_severity(6) == "medium"
    assert cycle_severity(11) == "high"


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def test_statistics_zero_without_version(store):
    stats = store.get_graph_statistics(PID)
    assert stats.version_id is None
    assert stats.total_nodes == 0
    assert stats.average_complexity == 0.0


def test_statistics_counts(store):
    vid = store.create_new_version(PID)
    a = store.add_node(_node(vid, "a", complexity=2))
    b = store.add_node(_node(vid, "B", line=10, node_type=NodeType.CLASS, complexity=4))
    store.add_node(_node(vid, "c", path="src/other.py", complexity=3))
    store.add_edge(_edge(vid, b, a, EdgeType.CONTAINS))

    stats = store.get_graph_statistics(PID)
    assert stats.version_number == 1
    assert stats.total_nodes == 3
    assert stats.total_edges == 1
    assert stats.total_files == 2
    assert stats.node_type_counts == {"FUNCTION": 2, "CLASS": 1}
    assert stats.edge_type_counts == {"CONTAINS": 1}
    assert stats.average_complexity == pytest.approx(3.0)


def test_stats_totals(store):
    vid = store.create_new_version(PID)
    store.add_node(_node(vid, "a"))
    s = store.stats()
    assert s["total_nodes"] == 1
    assert s["total_versions"] == 1
    assert s["node_counts"] == {"FUNCTION": 1}


# ---------------------------------------------------------------------------
# Operation log
# ---------------------------------------------------------------------------


def _op(version_id: str, **data) -> UpdateOperation:
    return UpdateOperation(
        project_id=PID,
        version_id=version_id,
        operation_type=OperationType.ADD_NODE,
        operation_data=data,
        rollback_data={"node_id": "x"},
        change_reason="file_added",
    )


def test_log_operation_counts_and_orders(store):
    vid = store.create_new_version(PID)
    first = store.log_update_operation(_op(vid, n=1))
    second = store.log_update_operation(_op(vid, n=2))
    assert first and second
    ops = store.get_operations(PID, vid)
    assert [o.id for o in ops] == [first, second]
    assert ops[0].operation_data == {"n": 1}
    assert ops[0].rollback_data == {"node_id": "x"}
    assert store.get_version(vid).operations_count == 2


def test_log_operation_failure_is_swallowed(store):
    vid = store.create_new_version(PID)
    nid = store.add_node(_node(vid, "a"))
    assert store.log_update_operation(_op(vid, bad=object())) is None
    # the store stays usable and nothing was half-written
    assert store.get_node(nid) is not None
    assert store.get_operations(PID) == []
    assert store.get_version(vid).operations_count == 0


def test_storage_failure_wraps_sqlite_error(store):
    store.create_new_version(PID)
    store.con.execute("DROP TABLE graph_edges")
    with pytest.raises(StorageFailure) as info:
        store.query_edges(EdgeQuery(project_id=PID))
    assert isinstance(info.value.__cause__, sqlite3.Error)
    assert info.value.code == "STORAGE_FAILURE"
