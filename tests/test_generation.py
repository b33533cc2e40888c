"""Tests for generation, refinement and explanation."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import StubBackend, build_flow, transform_node
from flow_runner.config import EngineConfig
from flow_runner.errors import GenerationError, StepNotFound
from flow_runner.flowscript.model import Position
from flow_runner.flowscript.validator import validate
from flow_runner.generation import (
    FlowGenerator,
    OpenAIChatBackend,
    describe_node,
    fallback_flow,
    layout_nodes,
    preserve_node_ids,
)


def _signup_flow():
    return build_flow(
        [
            {"id": "n1", "label": "Collect email", "actor": "user", "type": "ui_action", "outputs": {"email": "string"}},
            {"id": "n2", "label": "Create account", "actor": "system", "type": "api_call", "tool": "http.call",
             "inputs": {"endpoint": "https://api.test/users", "body": {"email": "@n1.email"}}},
        ],
        [("n1", "n2")],
        id="signup",
        title="Sign up",
    )


class TestGenerate:
    def test_generates_and_lays_out(self):
        backend = StubBackend(_signup_flow().to_dict())
        flow = asyncio.run(FlowGenerator(backend).generate("Let users sign up", "proj-1"))

        assert flow.id == "signup"
        assert [(n.position.x, n.position.y) for n in flow.nodes] == [(0, 0), (320, 0)]
        assert backend.calls[0]["json_mode"] is True
        assert "Project: proj-1" in backend.calls[0]["messages"][1]["content"]

    def test_backend_failure_falls_back(self):
        backend = StubBackend(GenerationError("No AI credentials configured"))
        flow = asyncio.run(FlowGenerator(backend).generate("Book a meeting room"))
        assert flow.title == "Simple Task"
        assert [n.id for n in flow.nodes] == ["n1"]
        assert flow.nodes[0].label == "Book a meeting room"

    def test_invalid_json_falls_back(self):
        flow = asyncio.run(FlowGenerator(StubBackend("not json at all")).generate("Do it"))
        assert flow.title == "Simple Task"

    def test_structurally_invalid_graph_falls_back(self):
        reply = {"id": "bad", "nodes": [{"id": "a"}], "edges": [{"from": "a", "to": "ghost"}]}
        flow = asyncio.run(FlowGenerator(StubBackend(reply)).generate("Do it"))
        assert flow.title == "Simple Task"

    def test_missing_id_is_assigned(self):
        reply = {"title": "No id", "nodes": [{"id": "a"}]}
        flow = asyncio.run(FlowGenerator(StubBackend(reply)).generate("Do it"))
        assert flow.title == "No id"
        assert flow.id


class TestRefine:
    def test_refine_adds_step_and_keeps_ids(self):
        original = _signup_flow()
        refined_wire = original.to_dict()
        refined_wire["nodes"].append({
            "id": "n3", "label": "Notify team", "actor": "system", "type": "api_call",
            "tool": "slack.postMessage", "inputs": {"channel": "#signups", "message": "New user @n1.email"},
        })
        refined_wire["edges"].append({"from": "n2", "to": "n3"})

        refined = asyncio.run(FlowGenerator(StubBackend(refined_wire)).refine(original, "add a Slack notification step"))

        assert validate(refined) == []
        assert set(original.node_ids()) <= set(refined.node_ids())
        assert refined.node_ids() == ["n1", "n2", "n3"]
        assert original.node_ids() == ["n1", "n2"]

    def test_refine_restores_renamed_ids(self):
        original = _signup_flow()
        wire = original.to_dict()
        wire["nodes"][1]["id"] = "create_account"
        wire["edges"] = [{"from": "n1", "to": "create_account"}]
        refined = asyncio.run(FlowGenerator(StubBackend(wire)).refine(original, "tidy up"))

        assert refined.node_ids() == ["n1", "n2"]
        assert refined.edges[0].to == "n2"

    def test_refine_prompt_carries_feedback(self):
        backend = StubBackend(_signup_flow().to_dict())
        asyncio.run(FlowGenerator(backend).refine(_signup_flow(), "add retries"))
        prompt = backend.calls[0]["messages"][0]["content"]
        assert "add retries" in prompt
        assert '"id": "signup"' in prompt

    def test_refine_failure_raises(self):
        with pytest.raises(GenerationError):
            asyncio.run(FlowGenerator(StubBackend("{broken")).refine(_signup_flow(), "x"))

    def test_refine_invalid_result_raises(self):
        reply = {"id": "signup", "nodes": [{"id": "a"}, {"id": "a"}]}
        with pytest.raises(GenerationError):
            asyncio.run(FlowGenerator(StubBackend(reply)).refine(_signup_flow(), "x"))


class TestExplain:
    def test_uses_backend(self):
        backend = StubBackend("This step collects the email.")
        text = asyncio.run(FlowGenerator(backend).explain(_signup_flow(), "n1"))
        assert text == "This step collects the email."

    def test_offline_fallback(self):
        backend = StubBackend(GenerationError("offline"))
        text = asyncio.run(FlowGenerator(backend).explain(_signup_flow(), "n2", "developer"))
        assert "Step n2 (api_call, actor=system)." in text
        assert "Reads: n1." in text

    def test_unknown_step(self):
        with pytest.raises(StepNotFound):
            asyncio.run(FlowGenerator(StubBackend()).explain(_signup_flow(), "ghost"))

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            asyncio.run(FlowGenerator(StubBackend()).explain(_signup_flow(), "n1", "expert"))


def test_describe_node_user_level():
    node = _signup_flow().nodes[0]
    assert describe_node(node) == "Performed by you: 'Collect email'."


def test_layout_keeps_existing_positions():
    flow = build_flow([transform_node(f"n{i}") for i in range(6)])
    flow.nodes[1].position = Position(x=5, y=5)
    layout_nodes(flow)
    assert (flow.nodes[1].position.x, flow.nodes[1].position.y) == (5, 5)
    assert (flow.nodes[5].position.x, flow.nodes[5].position.y) == (320, 200)


def test_fallback_flow_is_valid():
    flow = fallback_flow("x" * 80)
    assert validate(flow) == []
    assert len(flow.nodes[0].label) == 50


def test_preserve_node_ids_leaves_known_ids():
    original = _signup_flow()
    refined = original.clone()
    assert preserve_node_ids(original, refined).node_ids() == ["n1", "n2"]


class TestOpenAIChatBackend:
    def test_requires_credentials(self):
        backend = OpenAIChatBackend(EngineConfig())
        with pytest.raises(GenerationError):
            asyncio.run(backend.complete([{"role": "user", "content": "hi"}]))

    def test_completion(self):
        def handler(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            assert payload["response_format"] == {"type": "json_object"}
            return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

        backend = OpenAIChatBackend(EngineConfig(ai_api_key="sk-test"), transport=httpx.MockTransport(handler))
        assert asyncio.run(backend.complete([{"role": "user", "content": "hi"}], json_mode=True)) == "{}"

    def test_http_error(self):
        backend = OpenAIChatBackend(
            EngineConfig(ai_api_key="sk-test"),
            transport=httpx.MockTransport(lambda request: httpx.Response(429)),
        )
        with pytest.raises(GenerationError):
            asyncio.run(backend.complete([{"role": "user", "content": "hi"}]))
