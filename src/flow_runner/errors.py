"""Error taxonomy for FlowScript validation, execution and generation.

Structural problems are reported as :class:`StructuralError` records by the
validator and raised together as :class:`InvalidFlowError` when a caller tries
to execute an unrunnable graph.  Tool failures derive from
:class:`ToolExecutionError` and never escape the engine: the dispatcher turns
them into failed traces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class FlowError(Exception):
    """Base class for all flow_runner errors."""


@dataclass(frozen=True)
class StructuralError:
    """One structural problem found in a FlowScript."""

    code: str
    message: str
    node_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "node_id": self.node_id}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidFlowError(FlowError):
    """Raised when an operation needs a structurally valid flow."""

    def __init__(self, errors: list[StructuralError]) -> None:
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors[:5])
        super().__init__(f"FlowScript failed validation ({len(self.errors)} error(s)): {summary}")


class CycleError(FlowError):
    """The edge set contains a cycle, so no topological order exists."""

    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = list(node_ids)
        super().__init__(f"Cycle detected among nodes: {', '.join(self.node_ids)}")


class ConditionSyntaxError(FlowError):
    """A `when` expression could not be tokenized or parsed."""


class PreconditionUnmet(FlowError):
    """A node's `pre` assertions do not hold against the current context."""

    def __init__(self, node_id: str, unmet: list[str]) -> None:
        self.node_id = node_id
        self.unmet = list(unmet)
        super().__init__(f"Preconditions not met for {node_id}: {', '.join(self.unmet)}")


class CancellationError(FlowError):
    """The run was cancelled before every node was visited."""


class GenerationError(FlowError):
    """The generation collaborator failed or returned an unusable graph."""


class StepNotFound(FlowError, KeyError):
    """No node with the requested id exists in the flow."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Step not found"


class RunNotFound(FlowError, KeyError):
    """No runtime is recorded for the requested run id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Run not found"


class RunConflict(FlowError):
    """A step was aimed at a run recorded for a different flow."""


# ---------------------------------------------------------------------------
# Tool execution errors
# ---------------------------------------------------------------------------

class ToolExecutionError(FlowError):
    """A tool dispatch failed. ``error_type`` is what the trace records."""

    error_type = "ToolExecutionError"


class ToolInputError(ToolExecutionError):
    error_type = "ToolInputError"


class UnknownTool(ToolExecutionError):
    error_type = "UnknownTool"


class NetworkError(ToolExecutionError):
    error_type = "NetworkError"


class ParseError(ToolExecutionError):
    error_type = "ParseError"


class PathViolation(ToolExecutionError):
    error_type = "PathViolation"


class ToolTimeoutError(ToolExecutionError):
    error_type = "TimeoutError"
