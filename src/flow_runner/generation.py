"""Natural-language generation, refinement and explanation of FlowScripts.

The :class:`FlowGenerator` owns prompting, JSON parsing, node layout and id
preservation; the model call itself goes through a :class:`ChatBackend` so
tests (and offline setups) can plug in a canned backend.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Protocol

import httpx
from loguru import logger
from pydantic import ValidationError

from .config import EngineConfig
from .constants import LAYOUT_COLUMNS, LAYOUT_X_SPACING, LAYOUT_Y_SPACING
from .errors import GenerationError, StepNotFound
from .flowscript.model import Actor, FlowNode, FlowScript, NodeType, Position
from .flowscript.references import referenced_roots
from .flowscript.validator import validate
from .prompts import (
    EXPLAIN_SYSTEM_PROMPT,
    _build_explain_prompt,
    _build_generate_system_prompt,
    _build_generate_user_prompt,
    _build_refine_prompt,
)

EXPLAIN_LEVELS = ("user", "developer")


class ChatBackend(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: Optional[str] = None,
        json_mode: bool = False,
        temperature: float = 0.7,
    ) -> str: ...


class OpenAIChatBackend:
    """Chat-completions client over httpx.

    Raises :class:`GenerationError` for missing credentials, transport
    failures, HTTP errors and empty responses.
    """

    def __init__(self, config: EngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self.transport = transport

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: Optional[str] = None,
        json_mode: bool = False,
        temperature: float = 0.7,
    ) -> str:
        if not self.config.ai_api_key:
            raise GenerationError("No AI credentials configured")
        payload: dict[str, Any] = {
            "model": model or self.config.generation_model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.config.ai_api_key}"}
        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=httpx.Timeout(max(self.config.tool_timeout_seconds, 60.0)),
            ) as client:
                resp = await client.post(self.config.ai_endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise GenerationError(f"AI request failed: {exc}") from None
        if resp.status_code >= 400:
            raise GenerationError(f"AI endpoint returned HTTP {resp.status_code}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise GenerationError("AI endpoint returned an unexpected body") from None
        if not content:
            raise GenerationError("No response from AI")
        return str(content)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_flow(content: str, default_id: Optional[str] = None) -> FlowScript:
    """Parse model output into a FlowScript, raising GenerationError."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"Model returned invalid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise GenerationError("Model returned a non-object FlowScript")
    if not data.get("id"):
        data["id"] = default_id or str(uuid.uuid4())
    try:
        return FlowScript.from_dict(data)
    except ValidationError as exc:
        raise GenerationError(f"Model returned a malformed FlowScript: {exc.error_count()} error(s)") from None


def layout_nodes(flow: FlowScript) -> FlowScript:
    """Place nodes without a position on a fixed grid (in place)."""
    for index, node in enumerate(flow.nodes):
        if node.position is None:
            node.position = Position(
                x=(index % LAYOUT_COLUMNS) * LAYOUT_X_SPACING,
                y=(index // LAYOUT_COLUMNS) * LAYOUT_Y_SPACING,
            )
    return flow


def fallback_flow(text: str) -> FlowScript:
    """Single-step flow used when generation fails."""
    return FlowScript(
        id=str(uuid.uuid4()),
        title="Simple Task",
        description=f"Workflow for: {text}",
        assumptions=["Could not parse user input, created simple task"],
        nodes=[
            FlowNode(
                id="n1",
                label=text[:50],
                actor=Actor.USER,
                type=NodeType.UI_ACTION,
                position=Position(x=0, y=0),
            )
        ],
        edges=[],
    )


def preserve_node_ids(previous: FlowScript, refined: FlowScript) -> FlowScript:
    """Carry old node ids over to renamed-but-equivalent nodes (in place).

    A refined node whose id is unknown to *previous* but whose label matches
    a node that disappeared takes that node's id; edges follow the rename.
    """
    old_ids = set(previous.node_ids())
    new_ids = set(refined.node_ids())
    removed_by_label: dict[str, str] = {}
    for node in previous.nodes:
        if node.id not in new_ids and node.label:
            removed_by_label.setdefault(node.label.strip().lower(), node.id)

    renames: dict[str, str] = {}
    for node in refined.nodes:
        if node.id in old_ids:
            continue
        old_id = removed_by_label.pop(node.label.strip().lower(), None) if node.label else None
        if old_id is not None:
            renames[node.id] = old_id
            node.id = old_id

    if renames:
        for edge in refined.edges:
            edge.from_ = renames.get(edge.from_, edge.from_)
            edge.to = renames.get(edge.to, edge.to)
        logger.debug("Preserved node ids across refinement: {}", renames)
    return refined


def describe_node(node: FlowNode, level: str = "user") -> str:
    """Offline explanation built from the node's own fields."""
    who = {
        Actor.USER: "you",
        Actor.APP: "the app",
        Actor.AI: "the AI assistant",
        Actor.SYSTEM: "the system",
    }[node.actor]
    text = f"Performed by {who}: '{node.label or node.id}'."
    if level != "developer":
        if node.pre:
            text += " This happens once " + ", ".join(node.pre) + " are satisfied."
        return text

    parts = [f"Step {node.id} ({node.type.value}, actor={node.actor.value})."]
    if node.tool:
        parts.append(f"Tool: {node.tool}.")
    if node.inputs:
        parts.append(f"Inputs: {json.dumps(node.inputs, sort_keys=True)}.")
    depends = sorted(referenced_roots(node.inputs))
    if depends:
        parts.append(f"Reads: {', '.join(depends)}.")
    if node.outputs:
        parts.append(f"Outputs: {', '.join(node.outputs)} (stored under '{node.output_key}').")
    if node.pre:
        parts.append(f"Preconditions: {json.dumps(node.pre, sort_keys=True)}.")
    if node.post:
        parts.append(f"Postconditions: {json.dumps(node.post, sort_keys=True)}.")
    if node.errors:
        parts.append("Anticipated errors: " + ", ".join(e.code for e in node.errors) + ".")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class FlowGenerator:
    def __init__(self, backend: ChatBackend, *, model: Optional[str] = None) -> None:
        self.backend = backend
        self.model = model

    async def generate(self, text: str, project_id: Optional[str] = None) -> FlowScript:
        """Compose a FlowScript from a description; never raises.

        Anything that goes wrong (backend error, bad JSON, structural
        errors) yields :func:`fallback_flow` instead.
        """
        messages = [
            {"role": "system", "content": _build_generate_system_prompt()},
            {"role": "user", "content": _build_generate_user_prompt(text, project_id)},
        ]
        try:
            content = await self.backend.complete(messages, model=self.model, json_mode=True, temperature=0.7)
            flow = _parse_flow(content)
            errors = validate(flow)
            if errors:
                raise GenerationError("Generated flow is invalid: " + "; ".join(e.message for e in errors))
        except GenerationError as exc:
            logger.warning("Workflow generation failed, using fallback: {}", exc)
            return fallback_flow(text)
        return layout_nodes(flow)

    async def refine(self, flow: FlowScript, feedback: str) -> FlowScript:
        """Return a refined copy of *flow*; raises GenerationError on failure."""
        messages = [{"role": "system", "content": _build_refine_prompt(flow.to_dict(), feedback)}]
        content = await self.backend.complete(messages, model=self.model, json_mode=True, temperature=0.5)
        refined = _parse_flow(content, default_id=flow.id)
        preserve_node_ids(flow, refined)
        errors = validate(refined)
        if errors:
            raise GenerationError("Refined flow is invalid: " + "; ".join(e.message for e in errors))
        return layout_nodes(refined)

    async def explain(self, flow: FlowScript, step_id: str, level: str = "user") -> str:
        node = flow.get_node(step_id)
        if node is None:
            raise StepNotFound(f"Step not found: {step_id}")
        if level not in EXPLAIN_LEVELS:
            raise ValueError(f"level must be one of {EXPLAIN_LEVELS}")
        messages = [
            {"role": "system", "content": EXPLAIN_SYSTEM_PROMPT},
            {"role": "user", "content": _build_explain_prompt(node.to_dict(), level)},
        ]
        try:
            return await self.backend.complete(messages, model=self.model, temperature=0.3)
        except GenerationError as exc:
            logger.info("Explaining {} offline: {}", step_id, exc)
            return describe_node(node, level)
