from __future__ import annotations

import json
from pathlib import Path

import yaml

from conftest import build_flow, transform_node
from flow_runner.cli import _parse_vars, main


def _write(tmp_path: Path, flow, name: str = "flow.json") -> str:
    path = tmp_path / name
    if name.endswith((".yaml", ".yml")):
        path.write_text(yaml.safe_dump(flow.to_dict()))
    else:
        path.write_text(json.dumps(flow.to_dict()))
    return str(path)


def _chain():
    return build_flow([transform_node("n1"), transform_node("n2")], [("n1", "n2")], id="chain")


def test_validate(tmp_path: Path, capsys) -> None:
    assert main(['validate', _write(tmp_path, _chain())]) == 0
    assert "chain: OK (2 nodes, 1 edges)" in capsys.readouterr().out

    bad = build_flow([{"id": "a"}], [("a", "ghost")])
    assert main(['validate', _write(tmp_path, bad, "bad.yaml")]) == 1
    assert "dangling_edge [ghost]" in capsys.readouterr().out


def test_order(tmp_path: Path, capsys) -> None:
    flow = build_flow([{"id": "b"}, {"id": "a"}], [("a", "b")])
    assert main(['order', _write(tmp_path, flow)]) == 0
    assert capsys.readouterr().out.splitlines() == ["a", "b"]

    cyclic = build_flow([{"id": "a"}, {"id": "b"}], [("a", "b"), ("b", "a")])
    assert main(['order', _write(tmp_path, cyclic)]) == 1


def test_run(tmp_path: Path, capsys) -> None:
    flow = build_flow([transform_node("greet", {"who": "@user"}, "identity")])
    rc = main(['--project-dir', str(tmp_path), 'run', _write(tmp_path, flow), '--var', 'user="Ada"', '--json'])
    assert rc == 0
    runtime = json.loads(capsys.readouterr().out)
    assert runtime["status"] == "completed"
    assert runtime["variables"]["greet"] == {"who": "Ada"}
    assert (tmp_path / ".flow_runner" / "runs" / f"{runtime['runId']}.jsonl").exists()


def test_run_summary_and_failure(tmp_path: Path, capsys) -> None:
    flow = build_flow([{"id": "x", "actor": "system", "type": "analysis", "tool": "teleport"}])
    assert main(['--project-dir', str(tmp_path), 'run', _write(tmp_path, flow)]) == 1
    out = capsys.readouterr().out
    assert '"error_type": "UnknownTool"' in out
    assert '"status": "failed"' in out


def test_run_records_background_nodes(tmp_path: Path, capsys) -> None:
    flow = build_flow(
        [
            transform_node("n1"),
            {"id": "ping", "actor": "system", "type": "background", "tool": "notification",
             "inputs": {"message": "started"}},
        ],
        [("n1", "ping")],
    )
    assert main(['--project-dir', str(tmp_path), 'run', _write(tmp_path, flow), '--json']) == 0
    runtime = json.loads(capsys.readouterr().out)
    assert [t["stepId"] for t in runtime["traces"]] == ["n1", "ping"]
    assert runtime["nodes"]["ping"]["status"] == "completed"


def test_test_command(tmp_path: Path, capsys) -> None:
    flow = build_flow(
        [transform_node("n1"), transform_node("n2")],
        [("n1", "n2")],
        testcases=[{"name": "passes", "expect": {"n2.A": 1}}, {"name": "fails", "expect": {"n2.A": 5}}],
    )
    assert main(['--project-dir', str(tmp_path), 'test', _write(tmp_path, flow)]) == 1
    out = capsys.readouterr().out
    assert "PASS passes" in out
    assert "FAIL fails" in out
    assert "1/2 passed" in out


def test_unreadable_input(tmp_path: Path, capsys) -> None:
    assert main(['validate', str(tmp_path / "missing.json")]) == 2
    (tmp_path / "list.json").write_text("[1, 2]")
    assert main(['validate', str(tmp_path / "list.json")]) == 2
    assert "ValueError" in capsys.readouterr().err


def test_parse_vars() -> None:
    assert _parse_vars(["n=3", "flag=true", "name=Ada", "obj={\"a\": 1}"]) == {
        "n": 3, "flag": True, "name": "Ada", "obj": {"a": 1},
    }
