"""Provide the public `flow_runner` package exports."""

from __future__ import annotations

from .flowscript.model import ExecutionMode, FlowEdge, FlowNode, FlowScript
from .flowscript.validator import topological_order, validate
from .runtime.engine import ExecutionEngine
from .service import FlowService

__all__ = [
    "ExecutionEngine",
    "ExecutionMode",
    "FlowEdge",
    "FlowNode",
    "FlowScript",
    "FlowService",
    "topological_order",
    "validate",
]
