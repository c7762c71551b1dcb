"""
test_summarizer.py

Tests for DocstringSummarizer and the batched PurposeAnnotator.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from code_cpg.models import CodeLocation, GraphNode, NodeQuery, NodeType, Parameter
from code_cpg.store import GraphStore
from code_cpg.summarizer import DocstringSummarizer, PurposeAnnotator, node_descriptor

PID = "proj"


@pytest.fixture()
def store(tmp_path: Path):
    s = GraphStore(tmp_path / "cpg.sqlite")
    yield s
    s.close()


def _fn(vid: str, name: str, line: int, *, node_type: NodeType = NodeType.FUNCTION, purpose=None) -> GraphNode:
    return GraphNode(
        project_id=PID,
        version_id=vid,
        node_key=f"a.py:{line}:{name}",
        node_type=node_type,
        location=CodeLocation("a.py", line, line + 1),
        language="python",
        hash=f"h{line}",
        name=name,
        signature=f"def {name}(x)",
        parameters=[Parameter("x")],
        purpose=purpose,
    )


# ---------------------------------------------------------------------------
# DocstringSummarizer
# ---------------------------------------------------------------------------


def test_docstring_first_sentence():
    s = DocstringSummarizer()
    assert s.purpose({"docstring": "Load the index. Then cache it.", "function_name": "load"}) == "Load the index."
    assert s.purpose({"docstring": "Parse a file\nfrom disk.\n\nDetails.", "function_name": "p"}) == "Parse a file from disk."


def test_identifier_is_spelled_out():
    s = DocstringSummarizer()
    assert s.purpose({"function_name": "parseFile"}) == "Parse file."
    assert s.purpose({"function_name": "parse_file"}) == "Parse file."
    assert s.purpose({"function_name": "HTTPServer"}) == "Http server."
    assert s.purpose({"function_name": None}) == ""


def test_node_descriptor():
    d = node_descriptor(_fn("v", "run", 1))
    assert d == {
        "content": "def run(x)",
        "node_type": "function",
        "function_name": "run",
        "parameters": ["x"],
        "language": "python",
        "docstring": None,
    }


# ---------------------------------------------------------------------------
# PurposeAnnotator
# ---------------------------------------------------------------------------


class Recorder:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.seen = []
        self._lock = threading.Lock()

    def purpose(self, descriptor):
        with self._lock:
            self.seen.append(descriptor["function_name"])
        if descriptor["function_name"] in self.fail:
            raise RuntimeError("model unavailable")
        return f"purpose of {descriptor['function_name']}"


def test_annotator_rejects_bad_batch_size(store):
    with pytest.raises(ValueError):
        PurposeAnnotator(store, Recorder(), batch_size=0)


def test_annotator_batches_and_rate_limits(store):
    vid = store.create_new_version(PID)
    for i in range(7):
        store.add_node(_fn(vid, f"f{i}", i + 1))
    store.add_node(_fn(vid, "Cls", 50, node_type=NodeType.CLASS))
    store.add_node(_fn(vid, "done", 60, purpose="already set"))

    sleeps = []
    annotator = PurposeAnnotator(store, Recorder(), batch_size=3, rate_limit_seconds=0.5, sleep=sleeps.append)
    assert annotator.annotate_version(PID, vid) == 7
    # three batches, a pause between each pair
    assert sleeps == [0.5, 0.5]

    purposes = {n.name: n.purpose for n in store.query_nodes(NodeQuery(project_id=PID, version_id=vid)).data}
    assert purposes["f3"] == "purpose of f3"
    assert purposes["Cls"] is None
    assert purposes["done"] == "already set"


def test_annotator_tolerates_failures(store):
    vid = store.create_new_version(PID)
    for i, name in enumerate(("ok", "bad", "fine")):
        store.add_node(_fn(vid, name, i + 1))

    summarizer = Recorder(fail={"bad"})
    annotator = PurposeAnnotator(store, summarizer, batch_size=5, sleep=lambda _s: None)
    assert annotator.annotate_version(PID, vid) == 2
    assert sorted(summarizer.seen) == ["bad", "fine", "ok"]
    purposes = {n.name: n.purpose for n in store.query_nodes(NodeQuery(project_id=PID, version_id=vid)).data}
    assert purposes == {"ok": "purpose of ok", "bad": None, "fine": "purpose of fine"}


def test_annotator_respects_max_nodes(store):
    vid = store.create_new_version(PID)
    for i in range(4):
        store.add_node(_fn(vid, f"f{i}", i + 1))
    annotator = PurposeAnnotator(store, Recorder(), batch_size=2, max_nodes=2, sleep=lambda _s: None)
    assert annotator.annotate_version(PID, vid) == 2


def test_annotator_background_thread(store):
    vid = store.create_new_version(PID)
    store.add_node(_fn(vid, "f", 1))
    thread = PurposeAnnotator(store, Recorder(), sleep=lambda _s: None).start(PID, vid)
    thread.join(10)
    assert not thread.is_alive()
    (node,) = store.query_nodes(NodeQuery(project_id=PID, version_id=vid)).data
    assert node.purpose == "purpose of f"


def test_annotator_run_never_raises(store):
    class Echo:
        def purpose(self, descriptor):
            return "x"

    annotator = PurposeAnnotator(store, Echo(), sleep=lambda _s: None)
    store.con.execute("DROP TABLE graph_edges")
    store.con.execute("DROP TABLE graph_nodes")
    annotator.run(PID, "missing")
