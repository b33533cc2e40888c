"""Shared fixtures for flow_runner tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from flow_runner.config import EngineConfig
from flow_runner.flowscript.model import FlowScript
from flow_runner.runtime.engine import ExecutionEngine


def build_flow(nodes: list[dict[str, Any]], edges: list[tuple] | None = None, **extra: Any) -> FlowScript:
    """FlowScript from terse node dicts and ``(from, to[, when])`` tuples."""
    wire_edges = []
    for edge in edges or []:
        item: dict[str, Any] = {"from": edge[0], "to": edge[1]}
        if len(edge) > 2 and edge[2] is not None:
            item["when"] = edge[2]
        wire_edges.append(item)
    return FlowScript.from_dict({"id": extra.pop("id", "flow-test"), "nodes": nodes, "edges": wire_edges, **extra})


def transform_node(node_id: str, body: Any = None, transform: str = "uppercase_keys", **extra: Any) -> dict[str, Any]:
    return {
        "id": node_id,
        "label": node_id.upper(),
        "actor": "system",
        "type": "analysis",
        "tool": "data_transform",
        "inputs": {"body": {"a": 1} if body is None else body, "transform": transform},
        **extra,
    }


class StubBackend:
    """Chat backend returning canned replies in order; records every request."""

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, messages, *, model=None, json_mode=False, temperature=0.7) -> str:
        self.calls.append({"messages": messages, "json_mode": json_mode})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(sandbox_root=tmp_path / "sandbox", tool_timeout_seconds=5.0)


@pytest.fixture
def engine(config: EngineConfig) -> ExecutionEngine:
    return ExecutionEngine(config=config)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
