"""Execution traces and live runtime state.

Each execution gets its own :class:`FlowRuntime` under a fresh run id.  The
:class:`TraceRecorder` keeps runtimes in memory, appends traces in completion
order, and optionally mirrors every trace to ``runs/<runId>.jsonl`` so a run
can be replayed after the process exits.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..errors import RunNotFound
from ..flowscript.model import ExecutionMode, FlowScript
from ..io_utils import _append_jsonl, _read_jsonl
from ..utils import _now_iso


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def settled(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.ERROR, NodeStatus.SKIPPED)


@dataclass(frozen=True)
class FlowTrace:
    """Immutable record of one node's execution attempt within one run."""

    run_id: str
    step_id: str
    timestamp: str
    input: dict[str, Any]
    success: bool
    output: Any = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def error_type(self) -> Optional[str]:
        return self.metrics.get("error_type")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "runId": self.run_id,
            "stepId": self.step_id,
            "timestamp": self.timestamp,
            "input": copy.deepcopy(self.input),
            "success": self.success,
        }
        if self.output is not None:
            data["output"] = copy.deepcopy(self.output)
        if self.latency_ms is not None:
            data["latency_ms"] = self.latency_ms
        if self.error is not None:
            data["error"] = self.error
        if self.metrics:
            data["metrics"] = dict(self.metrics)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FlowTrace":
        return cls(
            run_id=str(data.get("runId", "")),
            step_id=str(data.get("stepId", "")),
            timestamp=str(data.get("timestamp", "")),
            input=dict(data.get("input") or {}),
            success=bool(data.get("success", False)),
            output=data.get("output"),
            latency_ms=data.get("latency_ms"),
            error=data.get("error"),
            metrics=dict(data.get("metrics") or {}),
        )


@dataclass
class NodeState:
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    reason: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class FlowRuntime:
    """The live, queryable state of one execution of a FlowScript."""

    run_id: str
    flow_id: str
    mode: ExecutionMode
    status: RunStatus = RunStatus.IDLE
    current_step: Optional[str] = None
    traces: list[FlowTrace] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    nodes: dict[str, NodeState] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)

    def node_status(self, node_id: str) -> Optional[NodeStatus]:
        state = self.nodes.get(node_id)
        return state.status if state else None

    def visited(self) -> list[str]:
        """Node ids that were entered (not skipped), in completion order."""
        return [t.step_id for t in self.traces]

    def sorted_traces(self, flow: FlowScript) -> list[FlowTrace]:
        """Traces re-ordered by the nodes' declaration position."""
        index = flow.declaration_index()
        return sorted(self.traces, key=lambda t: index.get(t.step_id, len(index)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "flowId": self.flow_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "currentStep": self.current_step,
            "traces": [t.to_dict() for t in self.traces],
            "variables": copy.deepcopy(self.variables),
            "nodes": {nid: s.to_dict() for nid, s in self.nodes.items()},
            "cancelled": self.cancelled,
            "error": self.error,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


class TraceRecorder:
    """Append-only per-run trace ledger plus live runtime snapshots."""

    def __init__(self, runs_dir: Optional[Path] = None) -> None:
        self.runs_dir = runs_dir
        self._runtimes: dict[str, FlowRuntime] = {}
        self._lock = threading.Lock()

    def start(self, runtime: FlowRuntime) -> FlowRuntime:
        with self._lock:
            if runtime.run_id in self._runtimes:
                raise ValueError(f"Run {runtime.run_id} already exists")
            runtime.started_at = runtime.started_at or _now_iso()
            self._runtimes[runtime.run_id] = runtime
        return runtime

    def live(self, run_id: str) -> FlowRuntime:
        """The mutable runtime (engine use only)."""
        runtime = self._runtimes.get(run_id)
        if runtime is None:
            raise RunNotFound(f"Run not found: {run_id}")
        return runtime

    def append(self, run_id: str, trace: FlowTrace) -> None:
        with self._lock:
            runtime = self.live(run_id)
            runtime.traces.append(trace)
        if self.runs_dir is not None:
            _append_jsonl(self.runs_dir / f"{run_id}.jsonl", trace.to_dict())

    def get_runtime(self, run_id: str) -> FlowRuntime:
        """Deep-copied snapshot; repeated calls without new activity are equal."""
        with self._lock:
            return copy.deepcopy(self.live(run_id))

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runtimes

    def list_runs(self, flow_id: Optional[str] = None) -> list[str]:
        with self._lock:
            return [rid for rid, rt in self._runtimes.items() if flow_id is None or rt.flow_id == flow_id]

    def load_traces(self, run_id: str) -> list[FlowTrace]:
        """Replay a run's traces from disk (empty when nothing was persisted)."""
        if self.runs_dir is None:
            return []
        return [FlowTrace.from_dict(d) for d in _read_jsonl(self.runs_dir / f"{run_id}.jsonl")]
