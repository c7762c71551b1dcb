"""
test_cpg.py

End-to-end tests for the CodeCPG orchestrator: build, update, query,
statistics and rollback against a small on-disk repository.
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from code_cpg import CodeCPG, CPGSettings, FileChange
from code_cpg.models import NodeType
from code_cpg.summarizer import DocstringSummarizer

SERVICE = textwrap.dedent(
    '''\
    import json


    def load(path):
        """Load a config file."""
        return json.loads(read(path))


    def read(path):
        return open(path).read()


    class Service:
        def start(self):
            return load("cfg.json")

        def stop(self):
            pass
    '''
)


def _settings(**overrides) -> CPGSettings:
    return CPGSettings(_env_file=None, purpose_in_background=False, purpose_rate_limit_seconds=0.0, **overrides)


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "demo"
    (root / "app").mkdir(parents=True)
    (root / "app" / "service.py").write_text(SERVICE, encoding="utf-8")
    (root / "app" / "util.py").write_text("def helper():\n    return 42\n", encoding="utf-8")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "skip.js").write_text("function skipped() {}\n", encoding="utf-8")
    return root


@pytest.fixture()
def cpg(repo: Path, tmp_path: Path):
    with CodeCPG(repo, tmp_path / "graph.sqlite", settings=_settings()) as c:
        yield c


def test_defaults(repo, tmp_path):
    c = CodeCPG(repo, tmp_path / "g.sqlite", settings=_settings())
    assert c.project_id == "demo"
    assert c.repo_root == repo.resolve()
    assert "project_id='demo'" in repr(c)
    # layers are created on first use only
    assert c._store is None
    assert c.store is c.store
    assert c.query.store is c.store
    assert c.updater.builder is c.builder
    c.close()


def test_build_and_query(cpg):
    result = cpg.build()
    assert result.success
    assert result.errors == []

    stats = cpg.stats()
    assert stats.version_id == result.version_id
    assert stats.version_number == 1
    assert stats.total_files == 2
    assert stats.node_type_counts["FUNCTION"] == 5
    assert stats.node_type_counts["CLASS"] == 1
    assert stats.node_type_counts["IMPORT"] == 1

    q = cpg.query
    load = q.resolve_node(cpg.project_id, "app/service.py:4:load")
    assert load is not None
    assert load.docstring == "Load a config file."
    assert [n.name for n in q.find_callees(load.id)] == ["read"]
    assert [n.name for n in q.find_callers(load.id)] == ["start"]
    assert {n.name for n in q.find_dependencies(load.id)} == {"read", "json"}

    impact = q.analyze_impact(load.id)
    assert [n.name for n in impact.directly_affected] == ["start"]
    assert impact.affected_files == ["app/service.py"]

    names = [h.node.name for h in q.search_nodes(cpg.project_id, "helper")]
    assert names[0] == "helper"
    assert q.find_nodes_by_type(cpg.project_id, NodeType.CLASS)[0].name == "Service"


def test_build_with_purposes(repo, tmp_path):
    with CodeCPG(repo, tmp_path / "p.sqlite", settings=_settings(), summarizer=DocstringSummarizer()) as c:
        c.build()
        assert c.wait_for_annotations() is True
        load = c.query.resolve_node(c.project_id, "app/service.py:4:load")
        helper = c.query.find_nodes_by_name(c.project_id, "helper")[0].node
    assert load.purpose == "Load a config file."
    assert helper.purpose == "Helper."


def test_settings_select_files(repo, tmp_path):
    settings = _settings(exclude_patterns=["app/util.py"])
    with CodeCPG(repo, tmp_path / "s.sqlite", settings=settings) as c:
        c.build()
        assert c.stats().total_files == 1


def test_update_then_rollback(cpg, repo):
    cpg.build()
    before = cpg.stats()

    new_util = "def helper():\n    return 42\n\n\ndef extra():\n    return helper()\n"
    result = cpg.update(
        [FileChange("app/util.py", "modified", old_content="def helper():\n    return 42\n", new_content=new_util)]
    )
    assert result.success
    after = cpg.stats()
    assert after.version_number == 2
    assert after.total_nodes == before.total_nodes + 1
    assert after.total_edges == before.total_edges + 1

    history = cpg.store.get_version_history(cpg.project_id)
    assert [v.metadata["kind"] for v in history] == ["incremental", "full_build"]

    undo = cpg.rollback()
    assert undo.success, undo.errors
    assert undo.reversed == 2
    restored = cpg.stats()
    assert restored.total_nodes == before.total_nodes
    assert restored.total_edges == before.total_edges


def test_rebuild_is_a_new_version(cpg):
    first = cpg.build()
    second = cpg.build()
    assert first.version_id != second.version_id
    assert cpg.store.get_version(second.version_id).parent_version_id == first.version_id
    assert cpg.stats().version_number == 2
    # the earlier version keeps its own rows
    assert cpg.stats(first.version_id).total_nodes == cpg.stats().total_nodes


def test_rollback_without_versions(cpg):
    with pytest.raises(ValueError):
        cpg.rollback()
