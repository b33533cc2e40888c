"""Build the chat prompts used to generate, refine and explain FlowScripts."""

from __future__ import annotations

import json
from typing import Any

from .tools.actions import TOOL_ALIASES, ActionKind


def _tool_names() -> str:
    return ", ".join([k.value for k in ActionKind] + sorted(TOOL_ALIASES))


def _build_generate_system_prompt() -> str:
    return f"""You are a Conversational Workflow Composer. Convert natural language descriptions into FlowScript workflows.

FlowScript is a human-readable JSON format with these key elements:
- nodes: Steps with id, label, actor (user/app/ai/system), type, tool, inputs, outputs, pre/post conditions
- edges: Connections between steps ("from", "to") with optional "when" conditions
- assumptions: What you inferred from the user's description

Available tools: {_tool_names()}

Rules:
1. Use clear, descriptive labels for each step.
2. Set the actor (user=human action, app=UI action, ai=AI processing, system=automated).
3. Set the type (ui_action, api_call, decision, analysis, wait, background).
4. Reference earlier outputs with @nodeId.outputField.
5. Use pre and post conditions (boolean flags) for flow control.
6. Include error handling scenarios.
7. List the assumptions you made.
8. Add realistic test cases under "testcases" ({{"name", "given", "expect"}}).

Respond with valid FlowScript JSON only.
"""


def _build_generate_user_prompt(text: str, project_id: str | None = None) -> str:
    project_block = f"\nProject: {project_id}\n" if project_id else ""
    return f"""Create a workflow for: "{text}"
{project_block}
Consider:
- Break the work down into clear, actionable steps
- Identify which tools or APIs are needed
- Add error handling for common failure cases
- Make assumptions explicit
- Make sure steps flow logically with proper conditions
"""


def _build_refine_prompt(flow: dict[str, Any], feedback: str) -> str:
    return f"""You are refining a FlowScript workflow based on user feedback.

Current workflow:
{json.dumps(flow, indent=2)}

User feedback: "{feedback}"

Update the workflow to address the feedback. Keep the existing node ids for
steps that still exist; modify nodes, edges or assumptions, or add new steps,
as needed.

Respond with the complete updated FlowScript JSON.
"""


def _build_explain_prompt(node: dict[str, Any], level: str) -> str:
    body = json.dumps(node, indent=2)
    if level == "developer":
        return f"Provide a technical explanation of this workflow step for a developer:\n{body}"
    return f"Explain this workflow step in simple terms for an end user:\n{body}"


EXPLAIN_SYSTEM_PROMPT = "You are a helpful assistant explaining workflow steps."
