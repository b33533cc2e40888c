"""Tests for structural validation and topological ordering."""

from __future__ import annotations

import pytest

from conftest import build_flow, transform_node
from flow_runner.errors import CycleError
from flow_runner.flowscript.validator import reachability, topological_order, validate


def _codes(flow) -> list[str]:
    return [e.code for e in validate(flow)]


class TestValidate:
    def test_valid_flow_has_no_errors(self):
        flow = build_flow(
            [transform_node("n1"), transform_node("n2"), transform_node("n3")],
            [("n1", "n2"), ("n2", "n3")],
        )
        assert validate(flow) == []

    def test_duplicate_node(self):
        flow = build_flow([{"id": "a"}, {"id": "a"}])
        errors = validate(flow)
        assert [e.code for e in errors] == ["duplicate_node"]
        assert errors[0].node_id == "a"

    def test_dangling_edge(self):
        flow = build_flow([{"id": "a"}], [("a", "ghost")])
        errors = validate(flow)
        assert [e.code for e in errors] == ["dangling_edge"]
        assert errors[0].node_id == "ghost"

    def test_cycle(self):
        flow = build_flow([{"id": "a"}, {"id": "b"}, {"id": "c"}], [("a", "b"), ("b", "c"), ("c", "b")])
        errors = validate(flow)
        assert "cycle" in [e.code for e in errors]
        cycle = next(e for e in errors if e.code == "cycle")
        assert "b" in cycle.message and "c" in cycle.message

    def test_api_call_without_tool(self):
        flow = build_flow([{"id": "call", "type": "api_call"}])
        assert _codes(flow) == ["missing_tool"]

    def test_api_call_without_endpoint(self):
        flow = build_flow([{"id": "call", "type": "api_call", "tool": "http.call", "inputs": {"method": "GET"}}])
        assert _codes(flow) == ["missing_endpoint"]

    def test_api_call_with_url_is_fine(self):
        flow = build_flow([{"id": "call", "type": "api_call", "tool": "api_call", "inputs": {"url": "https://x.test"}}])
        assert validate(flow) == []

    def test_file_operation_without_path(self):
        flow = build_flow([{"id": "f", "tool": "file.read", "inputs": {"operation": "read"}}])
        assert _codes(flow) == ["missing_path"]

    def test_unknown_tool_is_not_structural(self):
        flow = build_flow([{"id": "x", "tool": "teleport.now"}])
        assert validate(flow) == []

    def test_invalid_when(self):
        flow = build_flow([{"id": "a"}, {"id": "b"}], [("a", "b", "status == ")])
        assert _codes(flow) == ["invalid_when"]

    def test_output_conflict_between_parallel_nodes(self):
        flow = build_flow([
            transform_node("a", outputVariable="shared"),
            transform_node("b", outputVariable="shared"),
        ])
        errors = validate(flow)
        assert [e.code for e in errors] == ["output_conflict"]
        assert "shared" in errors[0].message

    def test_sequential_nodes_may_share_output(self):
        flow = build_flow(
            [transform_node("a", outputVariable="shared"), transform_node("b", outputVariable="shared")],
            [("a", "b")],
        )
        assert validate(flow) == []

    def test_output_variable_may_not_shadow_parallel_node_id(self):
        flow = build_flow([transform_node("a"), transform_node("b", outputVariable="a")])
        assert _codes(flow) == ["output_conflict"]

    def test_postcondition_key_may_not_clobber_parallel_output(self):
        flow = build_flow([
            transform_node("a", outputVariable="ready"),
            transform_node("b", post={"ready": True}),
        ])
        errors = validate(flow)
        assert [e.code for e in errors] == ["output_conflict"]
        assert "ready" in errors[0].message

    def test_sequential_postcondition_may_reuse_output_key(self):
        flow = build_flow(
            [transform_node("a", outputVariable="ready"), transform_node("b", post={"ready": True})],
            [("a", "b")],
        )
        assert validate(flow) == []

    def test_reports_every_problem(self):
        flow = build_flow(
            [{"id": "a"}, {"id": "a"}, {"id": "call", "type": "api_call"}],
            [("a", "nowhere")],
        )
        assert set(_codes(flow)) == {"duplicate_node", "dangling_edge", "missing_tool"}

    def test_does_not_mutate(self):
        flow = build_flow([{"id": "a"}, {"id": "a"}], [("a", "b")])
        before = flow.to_dict()
        validate(flow)
        assert flow.to_dict() == before


class TestTopologicalOrder:
    def test_linear(self):
        flow = build_flow([{"id": "c"}, {"id": "b"}, {"id": "a"}], [("a", "b"), ("b", "c")])
        assert topological_order(flow) == ["a", "b", "c"]

    def test_ties_follow_declaration_order(self):
        flow = build_flow(
            [{"id": "start"}, {"id": "z"}, {"id": "m"}, {"id": "a"}],
            [("start", "z"), ("start", "m"), ("start", "a")],
        )
        assert topological_order(flow) == ["start", "z", "m", "a"]

    def test_is_deterministic(self):
        flow = build_flow(
            [{"id": n} for n in "abcdef"],
            [("a", "d"), ("b", "d"), ("c", "e"), ("d", "f"), ("e", "f")],
        )
        first = topological_order(flow)
        assert all(topological_order(flow) == first for _ in range(5))
        assert first == ["a", "b", "c", "d", "e", "f"]

    def test_every_edge_respected(self):
        edges = [("a", "c"), ("b", "c"), ("c", "d"), ("b", "d")]
        flow = build_flow([{"id": n} for n in "dcba"], edges)
        order = topological_order(flow)
        for src, dst in edges:
            assert order.index(src) < order.index(dst)

    def test_cycle_raises(self):
        flow = build_flow([{"id": "a"}, {"id": "b"}], [("a", "b"), ("b", "a")])
        with pytest.raises(CycleError) as exc:
            topological_order(flow)
        assert exc.value.node_ids == ["a", "b"]


def test_reachability():
    flow = build_flow([{"id": n} for n in "abcd"], [("a", "b"), ("b", "c")])
    reach = reachability(flow)
    assert reach["a"] == {"b", "c"}
    assert reach["c"] == set()
    assert reach["d"] == set()
