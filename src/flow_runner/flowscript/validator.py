"""Structural validation and ordering for FlowScript graphs.

Validation never mutates the script.  It reports every problem it finds so
the caller (or the generator's refine loop) can decide what to do.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from itertools import combinations

from ..errors import ConditionSyntaxError, CycleError, StructuralError
from ..tools.actions import ActionKind, resolve_action_kind
from .conditions import parse_condition
from .model import FlowScript, NodeType

logger = logging.getLogger(__name__)


def _adjacency(flow: FlowScript, known: set[str]) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = defaultdict(list)
    for edge in flow.edges:
        if edge.from_ in known and edge.to in known and edge.to not in adj[edge.from_]:
            adj[edge.from_].append(edge.to)
    return adj


def _kahn(flow: FlowScript) -> tuple[list[str], list[str]]:
    """Stable Kahn's algorithm; ties break on declaration order.

    Returns ``(ordered_ids, ids_left_in_cycles)``.
    """
    index = flow.declaration_index()
    known = set(index)
    adj = _adjacency(flow, known)
    in_degree: dict[str, int] = {nid: 0 for nid in index}
    for targets in adj.values():
        for target in targets:
            in_degree[target] += 1

    heap = [(index[nid], nid) for nid, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, nid = heapq.heappop(heap)
        order.append(nid)
        for target in adj.get(nid, []):
            in_degree[target] -= 1
            if in_degree[target] == 0:
                heapq.heappush(heap, (index[target], target))

    remaining = sorted((nid for nid, deg in in_degree.items() if deg > 0), key=index.__getitem__)
    return order, remaining


def topological_order(flow: FlowScript) -> list[str]:
    """Return node ids in a deterministic topological order.

    Nodes with no ordering constraint between them keep their declaration
    order.  Raises :class:`CycleError` if the graph is not a DAG.
    """
    order, remaining = _kahn(flow)
    if remaining:
        raise CycleError(remaining)
    return order


def reachability(flow: FlowScript) -> dict[str, set[str]]:
    """Map each node id to the set of node ids reachable from it."""
    known = set(flow.node_ids())
    adj = _adjacency(flow, known)
    reach: dict[str, set[str]] = {}
    for start in known:
        seen: set[str] = set()
        stack = list(adj.get(start, []))
        while stack:
            nid = stack.pop()
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(adj.get(nid, []))
        reach[start] = seen
    return reach


def validate(flow: FlowScript) -> list[StructuralError]:
    """Check a FlowScript for structural problems.

    Detects duplicate node ids, edges referencing missing nodes, cycles,
    api_call/file_operation nodes missing a tool, endpoint or path,
    malformed ``when`` expressions, and output variables shared by nodes
    that may run concurrently.
    """
    errors: list[StructuralError] = []

    seen: set[str] = set()
    for node in flow.nodes:
        if node.id in seen:
            errors.append(StructuralError("duplicate_node", f"Duplicate node id '{node.id}'", node.id))
        seen.add(node.id)

    for edge in flow.edges:
        for end, label in ((edge.from_, "from"), (edge.to, "to")):
            if end not in seen:
                errors.append(StructuralError(
                    "dangling_edge",
                    f"Edge {edge.from_} -> {edge.to} references missing node '{end}' ({label})",
                    end,
                ))
        if edge.when and edge.when.strip():
            try:
                parse_condition(edge.when.strip())
            except ConditionSyntaxError as exc:
                errors.append(StructuralError(
                    "invalid_when",
                    f"Edge {edge.from_} -> {edge.to} has an unparsable condition: {exc}",
                    edge.from_,
                ))

    _, cyclic = _kahn(flow)
    if cyclic:
        errors.append(StructuralError("cycle", f"Cycle detected among nodes: {', '.join(cyclic)}", cyclic[0]))

    for node in flow.nodes:
        kind = resolve_action_kind(node.tool, node.inputs)
        if node.type == NodeType.API_CALL and not node.tool and kind is None:
            errors.append(StructuralError("missing_tool", f"api_call node '{node.id}' has no tool", node.id))
        if kind == ActionKind.API_CALL and not (node.inputs.get("endpoint") or node.inputs.get("url")):
            errors.append(StructuralError("missing_endpoint", f"Node '{node.id}' calls an API without an endpoint", node.id))
        if kind == ActionKind.FILE_OPERATION and not (node.inputs.get("path") or node.inputs.get("filePath")):
            errors.append(StructuralError("missing_path", f"Node '{node.id}' operates on a file without a path", node.id))

    if not cyclic:
        errors.extend(_output_conflicts(flow))

    if errors:
        logger.debug("FlowScript %s has %d structural error(s)", flow.id, len(errors))
    return errors


def _output_conflicts(flow: FlowScript) -> list[StructuralError]:
    """Nodes with no path between them must not write the same context key."""
    by_key: dict[str, list[str]] = defaultdict(list)
    for node in flow.nodes:
        for key in (node.output_key, *node.post):
            if node.id not in by_key[key]:
                by_key[key].append(node.id)

    reach = reachability(flow)
    errors: list[StructuralError] = []
    for key, node_ids in by_key.items():
        for a, b in combinations(node_ids, 2):
            if b in reach.get(a, set()) or a in reach.get(b, set()):
                continue
            errors.append(StructuralError(
                "output_conflict",
                f"Nodes '{a}' and '{b}' may run concurrently but both write '{key}'",
                b,
            ))
    return errors
