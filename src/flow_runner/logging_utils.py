"""Format and summarize traces and runtimes for logs and the CLI."""

import json
from typing import Any, Optional

from .runtime.trace import FlowRuntime, FlowTrace, NodeStatus
from .utils import _format_duration, _parse_iso

_MAX_DETAIL = 240


def _clip(text: str) -> str:
    return (text[:_MAX_DETAIL] + "…") if len(text) > _MAX_DETAIL else text


def summarize_trace(trace: FlowTrace) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of one trace.

    Args:
        trace: Trace to summarize.

    Returns:
        A dictionary with the step id, outcome, timing and (on failure) the
        clipped error.
    """
    d: dict[str, Any] = {
        "step": trace.step_id,
        "success": trace.success,
    }
    if trace.latency_ms is not None:
        d["latency"] = _format_duration(trace.latency_ms)
    action = trace.metrics.get("action")
    if action:
        d["action"] = action
    if not trace.success:
        d["error_type"] = trace.error_type
        d["error"] = _clip(str(trace.error or ""))
    return d


def summarize_runtime(runtime: FlowRuntime) -> dict[str, Any]:
    """Counts per node status plus the run outcome."""
    counts: dict[str, int] = {s.value: 0 for s in NodeStatus}
    skipped: dict[str, str] = {}
    for state in runtime.nodes.values():
        counts[state.status.value] += 1
        if state.status == NodeStatus.SKIPPED and state.reason:
            skipped[state.node_id] = state.reason
    d: dict[str, Any] = {
        "run_id": runtime.run_id,
        "flow_id": runtime.flow_id,
        "mode": runtime.mode.value,
        "status": runtime.status.value,
        "nodes": counts,
        "visited": runtime.visited(),
    }
    started, finished = _parse_iso(runtime.started_at), _parse_iso(runtime.finished_at)
    if started and finished:
        d["duration"] = _format_duration((finished - started).total_seconds() * 1000)
    if skipped:
        d["skipped"] = skipped
    if runtime.cancelled:
        d["cancelled"] = True
    if runtime.error:
        d["error"] = _clip(runtime.error)
    return d


def pretty(obj: Any, *, indent: Optional[int] = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
