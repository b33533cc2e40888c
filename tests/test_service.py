"""Tests for the FlowService facade."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml

from conftest import StubBackend, build_flow, transform_node
from flow_runner.config import EngineConfig
from flow_runner.errors import GenerationError, InvalidFlowError
from flow_runner.flowscript.model import ExecutionMode, FlowTestCase
from flow_runner.generation import FlowGenerator
from flow_runner.runtime.trace import RunStatus
from flow_runner.service import FlowService, check_expectations
from flow_runner.tools.actions import ActionKind


def _service(tmp_path: Path, *replies, **kwargs) -> FlowService:
    return FlowService(
        config=EngineConfig(sandbox_root=tmp_path / "sandbox"),
        generator=FlowGenerator(StubBackend(*replies)),
        **kwargs,
    )


def _flow_with_cases():
    return build_flow(
        [
            transform_node("greet", {"name": "@user.name"}, "identity", outputVariable="greeting"),
            transform_node("shout", "@greeting"),
        ],
        [("greet", "shout")],
        testcases=[
            {"name": "ada", "given": {"user": {"name": "Ada"}}, "expect": {"greeting.name": "Ada", "@shout.NAME": "Ada"}},
            {"name": "wrong", "given": {"user": {"name": "Bob"}}, "expect": {"greeting.name": "Ada", "shout.MISSING": 1}},
        ],
    )


class TestTestcases:
    def test_run_testcases(self, tmp_path: Path):
        service = _service(tmp_path)
        results = asyncio.run(service.run_testcases(_flow_with_cases()))

        assert [r.name for r in results] == ["ada", "wrong"]
        assert results[0].passed and results[0].failures == []
        assert results[0].status == "completed"
        assert not results[1].passed
        assert len(results[1].failures) == 2
        assert results[0].run_id != results[1].run_id

    def test_explicit_cases(self, tmp_path: Path):
        service = _service(tmp_path)
        cases = [FlowTestCase(name="only", given={"user": {"name": "Cy"}}, expect={"greeting": {"name": "Cy"}})]
        results = asyncio.run(service.run_testcases(_flow_with_cases(), testcases=cases))
        assert [r.to_dict()["name"] for r in results] == ["only"]
        assert results[0].passed

    def test_invalid_flow(self, tmp_path: Path):
        flow = build_flow([{"id": "a"}, {"id": "a"}])
        with pytest.raises(InvalidFlowError):
            asyncio.run(_service(tmp_path).run_testcases(flow))

    def test_scalar_comparison_is_lenient(self, tmp_path: Path):
        service = _service(tmp_path)
        runtime = asyncio.run(service.execute(build_flow([transform_node("n", {"count": "3"}, "identity")])))
        assert check_expectations(runtime, {"n.count": 3}) == []
        assert check_expectations(runtime, {"n": {"count": 3}}) == ["n: expected {'count': 3}, got {'count': '3'}"]


class TestExecution:
    def test_live_overrides(self, tmp_path: Path):
        async def canned(action, request):
            return {"status": 200, "total": 42}

        service = _service(tmp_path, overrides={ExecutionMode.LIVE: {ActionKind.API_CALL: canned}})
        flow = build_flow([{"id": "fetch", "actor": "system", "type": "api_call", "tool": "http.call",
                            "inputs": {"endpoint": "https://api.test/stats"}}])
        runtime = asyncio.run(service.execute(flow, "live"))
        assert runtime.variables["fetch"] == {"status": 200, "total": 42}
        assert service.get_runtime(runtime.run_id).status == RunStatus.COMPLETED
        assert not service.cancel(runtime.run_id)

    def test_step_and_order(self, tmp_path: Path):
        service = _service(tmp_path)
        flow = build_flow([transform_node("b"), transform_node("a")], [("a", "b")])
        assert service.order(flow) == ["a", "b"]
        assert service.validate(flow) == []
        trace = asyncio.run(service.execute_step(flow, "a"))
        assert trace.success

    def test_activity_is_recorded(self, tmp_path: Path):
        service = _service(tmp_path)
        runtime = asyncio.run(service.execute(build_flow([transform_node("n1")])))
        assert [e["type"] for e in service.activity.for_run(runtime.run_id)] == [
            "workflow_run", "workflow_node", "workflow_run",
        ]


class TestGeneration:
    def test_generate_saves_to_project(self, tmp_path: Path):
        wire = build_flow([transform_node("n1")], id="generated").to_dict()
        service = _service(tmp_path, wire)
        flow = asyncio.run(service.generate("Uppercase things", "proj"))
        assert service.get_flow("proj") == flow
        assert service.activity.by_type("workflow_generated")[0]["details"]["project_id"] == "proj"

    def test_refine_failure_keeps_stored_flow(self, tmp_path: Path):
        service = _service(tmp_path, "{not json")
        original = build_flow([transform_node("n1")], id="kept")
        service.save_flow("proj", original)

        with pytest.raises(GenerationError):
            asyncio.run(service.refine(original, "make it better", "proj"))
        assert service.get_flow("proj") == original
        assert service.activity.by_type("workflow_refined") == []

    def test_refine_saves(self, tmp_path: Path):
        original = build_flow([transform_node("n1")], id="f")
        wire = original.to_dict()
        wire["nodes"].append(transform_node("n2"))
        wire["edges"] = [{"from": "n1", "to": "n2"}]
        service = _service(tmp_path, wire)

        refined = asyncio.run(service.refine(original, "add a step", "proj"))
        assert service.get_flow("proj").node_ids() == ["n1", "n2"] == refined.node_ids()

    def test_explain(self, tmp_path: Path):
        service = _service(tmp_path, GenerationError("offline"))
        text = asyncio.run(service.explain(build_flow([transform_node("n1")]), "n1"))
        assert text == "Performed by the system: 'N1'."


class TestPersistence:
    def test_save_flow_rejects_invalid(self, tmp_path: Path):
        service = _service(tmp_path)
        with pytest.raises(InvalidFlowError):
            service.save_flow("proj", build_flow([{"id": "a"}], [("a", "ghost")]))
        assert service.get_flow("proj") is None

    def test_project_dir_wiring(self, tmp_path: Path):
        state = tmp_path / ".flow_runner"
        state.mkdir()
        (state / "config.yaml").write_text(yaml.safe_dump({"engine": {"max_concurrency": 2, "sandbox_root": "box"}}))

        service = FlowService(tmp_path, generator=FlowGenerator(StubBackend()))
        assert service.config.max_concurrency == 2
        assert service.config.sandbox_root == (tmp_path / "box").resolve()

        service.save_flow("proj", build_flow([transform_node("n1")]))
        runtime = asyncio.run(service.execute(service.get_flow("proj")))

        assert (state / "flows.yaml").exists()
        assert (state / "runs" / f"{runtime.run_id}.jsonl").exists()
        assert (state / "activity.jsonl").exists()
        assert FlowService(tmp_path, generator=FlowGenerator(StubBackend())).get_flow("proj") is not None
