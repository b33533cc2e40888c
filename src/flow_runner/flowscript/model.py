"""FlowScript graph model.

A FlowScript is a human-readable JSON document describing a multi-actor
process as a directed graph of nodes and edges.  Field names on the wire
(``pre``, ``post``, ``when``, ``tool``, ``outputs``, ``from``) are consumed
verbatim by graph renderers and generators, so the models keep them through
pydantic aliases.  The model itself accepts structurally broken graphs
(duplicate ids, dangling edges); :mod:`flow_runner.flowscript.validator`
reports those.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Actor(str, Enum):
    """Who performs a node."""

    USER = "user"
    APP = "app"
    AI = "ai"
    SYSTEM = "system"


class NodeType(str, Enum):
    UI_ACTION = "ui_action"
    API_CALL = "api_call"
    DECISION = "decision"
    ANALYSIS = "analysis"
    WAIT = "wait"
    BACKGROUND = "background"


class ExecutionMode(str, Enum):
    """``simulate`` dispatches to mocked handlers, ``live`` to real ones."""

    SIMULATE = "simulate"
    LIVE = "live"


# ---------------------------------------------------------------------------
# Graph parts
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with wire field names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Position(_WireModel):
    x: float = 0
    y: float = 0


class NodeErrorSpec(_WireModel):
    """A failure mode the node author anticipated."""

    code: str
    explain: str = Field(default="", validation_alias=AliasChoices("explain", "explanation"))


class FlowNode(_WireModel):
    id: str
    label: str = ""
    actor: Actor = Actor.APP
    type: NodeType = NodeType.UI_ACTION
    tool: Optional[str] = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    pre: dict[str, bool] = Field(default_factory=dict)
    post: dict[str, bool] = Field(default_factory=dict)
    errors: list[NodeErrorSpec] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    position: Optional[Position] = None
    output_variable: Optional[str] = Field(default=None, alias="outputVariable")
    timeout: Optional[float] = None

    @property
    def output_key(self) -> str:
        """Context key the node's output is stored under."""
        return self.output_variable or self.id


class FlowEdge(_WireModel):
    from_: str = Field(alias="from")
    to: str
    when: Optional[str] = None
    label: Optional[str] = None


class FlowTestCase(_WireModel):
    name: str
    given: dict[str, Any] = Field(default_factory=dict)
    expect: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# FlowScript
# ---------------------------------------------------------------------------

class FlowScript(_WireModel):
    id: str
    title: str = ""
    description: str = ""
    assumptions: list[str] = Field(default_factory=list)
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    testcases: list[FlowTestCase] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FlowScript":
        return cls.model_validate(data)

    def clone(self) -> "FlowScript":
        return self.model_copy(deep=True)

    # -- lookups -------------------------------------------------------------

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.from_ == node_id]

    def incoming(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.to == node_id]

    def terminal_ids(self) -> list[str]:
        """Nodes with no outgoing edges, in declaration order."""
        sources = {e.from_ for e in self.edges}
        return [n.id for n in self.nodes if n.id not in sources]

    def declaration_index(self) -> dict[str, int]:
        index: dict[str, int] = {}
        for i, node in enumerate(self.nodes):
            index.setdefault(node.id, i)
        return index
