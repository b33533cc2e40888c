"""Tests for the in-memory and YAML flow stores."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from conftest import build_flow, transform_node
from flow_runner.store import InMemoryFlowStore, YamlFlowStore


@pytest.fixture(params=["memory", "yaml"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryFlowStore()
    return YamlFlowStore(tmp_path / ".flow_runner")


def _flow(flow_id: str = "f1"):
    return build_flow([transform_node("n1"), transform_node("n2")], [("n1", "n2")], id=flow_id)


class TestFlowStore:
    def test_save_and_get(self, store):
        flow = _flow()
        store.save("proj", flow)
        assert store.get("proj") == flow

    def test_missing_project(self, store):
        assert store.get("nope") is None
        assert not store.delete("nope")

    def test_returns_copies(self, store):
        flow = _flow()
        saved = store.save("proj", flow)
        saved.nodes[0].label = "mutated"
        flow.nodes[1].label = "mutated too"
        fetched = store.get("proj")
        fetched.edges.clear()

        again = store.get("proj")
        assert again.nodes[0].label == "N1"
        assert again.nodes[1].label == "N2"
        assert len(again.edges) == 1

    def test_overwrite_delete_and_list(self, store):
        store.save("b", _flow("first"))
        store.save("a", _flow("second"))
        store.save("b", _flow("third"))
        assert store.list_ids() == ["a", "b"]
        assert store.get("b").id == "third"

        assert store.delete("a")
        assert store.list_ids() == ["b"]


class TestYamlFlowStore:
    def test_file_layout(self, tmp_path: Path):
        state_dir = tmp_path / ".flow_runner"
        store = YamlFlowStore(state_dir)
        store.save("proj", _flow())

        data = yaml.safe_load(store.path.read_text())
        assert data["version"] == 1
        assert data["flows"]["proj"]["edges"] == [{"from": "n1", "to": "n2"}]

    def test_persists_across_instances(self, tmp_path: Path):
        YamlFlowStore(tmp_path / ".flow_runner").save("proj", _flow())
        assert YamlFlowStore(tmp_path / ".flow_runner").get("proj") == _flow()

    def test_unreadable_file_is_treated_as_empty(self, tmp_path: Path):
        state_dir = tmp_path / ".flow_runner"
        state_dir.mkdir()
        (state_dir / "flows.yaml").write_text("- just\n- a list\n")
        store = YamlFlowStore(state_dir)
        assert store.list_ids() == []
        store.save("proj", _flow())
        assert store.list_ids() == ["proj"]
