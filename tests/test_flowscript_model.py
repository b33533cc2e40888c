"""Tests for the FlowScript wire model."""

from __future__ import annotations

from flow_runner.flowscript.model import Actor, FlowScript, NodeType


def _wire() -> dict:
    return {
        "id": "onboarding",
        "title": "Onboard a customer",
        "assumptions": ["Customer has an email address"],
        "nodes": [
            {
                "id": "collect",
                "label": "Collect details",
                "actor": "user",
                "type": "ui_action",
                "outputs": {"email": "string"},
                "post": {"detailsCollected": True},
                "errors": [{"code": "E_EMPTY", "explanation": "Form left empty"}],
            },
            {
                "id": "welcome",
                "label": "Send welcome",
                "actor": "system",
                "type": "api_call",
                "tool": "email.send",
                "inputs": {"to": "@collect.email"},
                "pre": {"detailsCollected": True},
                "outputVariable": "welcomeResult",
            },
        ],
        "edges": [{"from": "collect", "to": "welcome", "when": "detailsCollected == true"}],
        "testcases": [{"name": "happy", "given": {"x": 1}, "expect": {"welcomeResult.delivered": True}}],
    }


class TestFlowScriptModel:
    def test_parses_wire_names(self):
        flow = FlowScript.from_dict(_wire())
        assert flow.nodes[0].actor == Actor.USER
        assert flow.nodes[1].type == NodeType.API_CALL
        assert flow.edges[0].from_ == "collect"
        assert flow.nodes[1].output_variable == "welcomeResult"
        assert flow.nodes[0].errors[0].explain == "Form left empty"

    def test_output_key_defaults_to_node_id(self):
        flow = FlowScript.from_dict(_wire())
        assert flow.nodes[0].output_key == "collect"
        assert flow.nodes[1].output_key == "welcomeResult"

    def test_to_dict_keeps_wire_names(self):
        data = FlowScript.from_dict(_wire()).to_dict()
        assert data["edges"][0]["from"] == "collect"
        assert "from_" not in data["edges"][0]
        assert data["nodes"][1]["outputVariable"] == "welcomeResult"
        # Unset optionals are dropped
        assert "tool" not in data["nodes"][0]
        assert "position" not in data["nodes"][0]

    def test_round_trip_is_stable(self):
        flow = FlowScript.from_dict(_wire())
        assert FlowScript.from_dict(flow.to_dict()) == flow

    def test_clone_is_deep(self):
        flow = FlowScript.from_dict(_wire())
        copy = flow.clone()
        copy.nodes[0].label = "changed"
        copy.nodes[1].inputs["to"] = "someone"
        assert flow.nodes[0].label == "Collect details"
        assert flow.nodes[1].inputs["to"] == "@collect.email"

    def test_lookups(self):
        flow = FlowScript.from_dict(_wire())
        assert flow.node_ids() == ["collect", "welcome"]
        assert flow.get_node("welcome").tool == "email.send"
        assert flow.get_node("missing") is None
        assert [e.to for e in flow.outgoing("collect")] == ["welcome"]
        assert [e.from_ for e in flow.incoming("welcome")] == ["collect"]
        assert flow.terminal_ids() == ["welcome"]
        assert flow.declaration_index() == {"collect": 0, "welcome": 1}

    def test_defaults(self):
        flow = FlowScript.from_dict({"id": "f", "nodes": [{"id": "a"}]})
        node = flow.nodes[0]
        assert node.actor == Actor.APP
        assert node.type == NodeType.UI_ACTION
        assert node.inputs == {} and node.pre == {} and node.post == {}
        assert flow.edges == [] and flow.testcases == []
