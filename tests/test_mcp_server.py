"""
test_mcp_server.py

Tests for the MCP tool functions, called directly against a small graph.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

pytest.importorskip("mcp")

from code_cpg import mcp_server  # noqa: E402
from code_cpg.config import CPGSettings  # noqa: E402
from code_cpg.cpg import CodeCPG  # noqa: E402

SRC = "import re\n\n\ndef tokenize(text):\n    return re.split(' ', text)\n\n\ndef count(text):\n    return len(tokenize(text))\n"


@pytest.fixture()
def cpg(tmp_path: Path, monkeypatch):
    repo = tmp_path / "toolrepo"
    repo.mkdir()
    (repo / "words.py").write_text(SRC, encoding="utf-8")
    c = CodeCPG(repo, tmp_path / "mcp.sqlite", settings=CPGSettings(_env_file=None))
    monkeypatch.setattr(mcp_server, "_cpg", c)
    yield c
    c.close()


@pytest.fixture()
def built(cpg):
    json.loads(mcp_server.build_project_graph())
    return cpg


def test_tools_require_initialisation(monkeypatch):
    monkeypatch.setattr(mcp_server, "_cpg", None)
    with pytest.raises(RuntimeError):
        mcp_server.get_graph_stats()


def test_build_and_stats(cpg):
    result = json.loads(mcp_server.build_project_graph())
    assert result["success"] is True
    assert result["nodes_affected"] == 3

    stats = json.loads(mcp_server.get_graph_stats())
    assert stats["total_nodes"] == 3
    assert stats["version_id"] == result["version_id"]
    assert json.loads(mcp_server.get_graph_stats(result["version_id"]))["total_edges"] == 2


def test_search(built):
    hits = json.loads(mcp_server.search_graph_nodes("tokenize", node_types="FUNCTION"))
    assert hits[0]["node"]["name"] == "tokenize"
    assert hits[0]["match_reason"] == "fuzzy_name_match"
    assert "error" in json.loads(mcp_server.search_graph_nodes("x", node_types="NOPE"))


def test_relationships(built):
    data = json.loads(mcp_server.get_node_relationships("words.py:4:tokenize", "callers"))
    assert data["node"]["name"] == "tokenize"
    assert data["relationship"] == "callers"
    assert [n["name"] for n in data["related"]] == ["count"]

    deps = json.loads(mcp_server.get_node_relationships("words.py:8:count", "dependencies", max_depth=2))
    assert {n["name"] for n in deps["related"]} == {"tokenize", "re"}

    assert "error" in json.loads(mcp_server.get_node_relationships("words.py:4:tokenize", "siblings"))
    assert "error" in json.loads(mcp_server.get_node_relationships("nowhere", "callers"))


def test_impact(built):
    impact = json.loads(mcp_server.analyze_impact("words.py:4:tokenize"))
    assert impact["risk_level"] == "low"
    assert [n["name"] for n in impact["directly_affected"]] == ["count"]
    assert "error" in json.loads(mcp_server.analyze_impact("nowhere"))


def test_bottlenecks_and_cycles(built):
    ranked = json.loads(mcp_server.find_bottlenecks(limit=1))
    assert ranked[0]["node"]["name"] == "tokenize"
    assert json.loads(mcp_server.find_circular_dependencies()) == []


def test_incremental_update(built):
    changes = json.dumps(
        [
            {
                "file_path": "words.py",
                "change_type": "modified",
                "old_content": SRC,
                "new_content": SRC + "\n\ndef shout(text):\n    return text.upper()\n",
            }
        ]
    )
    result = json.loads(mcp_server.update_graph_incremental(changes))
    assert result["success"] is True
    assert result["nodes_affected"] == 1
    assert json.loads(mcp_server.get_graph_stats())["total_nodes"] == 4


def test_incremental_update_rejects_bad_payload(built):
    assert "error" in json.loads(mcp_server.update_graph_incremental("not json"))
    assert "error" in json.loads(mcp_server.update_graph_incremental('[{"file_path": "a.py"}]'))
    assert "error" in json.loads(
        mcp_server.update_graph_incremental('[{"file_path": "a.py", "change_type": "copied"}]')
    )
