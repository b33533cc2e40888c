"""Typed action variants for tool dispatch.

A node's ``tool`` names either an action kind directly (``api_call``) or a
catalog tool (``http.call``) that maps onto one.  Each kind has its own
dataclass carrying only the inputs it needs, built from the node's resolved
inputs by :func:`build_action`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from ..errors import ToolInputError, UnknownTool


class ActionKind(str, Enum):
    AI_PROMPT = "ai_prompt"
    API_CALL = "api_call"
    FILE_OPERATION = "file_operation"
    DATA_TRANSFORM = "data_transform"
    NOTIFICATION = "notification"


# Catalog tool ids understood by the generator, mapped to the action they run.
TOOL_ALIASES: dict[str, ActionKind] = {
    "http.call": ActionKind.API_CALL,
    "http.request": ActionKind.API_CALL,
    "openai.chat": ActionKind.AI_PROMPT,
    "ai.prompt": ActionKind.AI_PROMPT,
    "file.read": ActionKind.FILE_OPERATION,
    "file.write": ActionKind.FILE_OPERATION,
    "file.upload": ActionKind.FILE_OPERATION,
    "json.transform": ActionKind.DATA_TRANSFORM,
    "email.send": ActionKind.NOTIFICATION,
    "slack.postMessage": ActionKind.NOTIFICATION,
    "sms.send": ActionKind.NOTIFICATION,
}

FILE_OPERATIONS = ("read", "write", "delete", "copy")
TRANSFORMS = ("uppercase_keys", "lowercase_keys", "pick", "identity")


def resolve_action_kind(tool: Optional[str], inputs: Optional[dict[str, Any]] = None) -> Optional[ActionKind]:
    """Map a tool id (or an explicit ``action`` input) to its action kind."""
    candidates = [tool]
    if inputs and isinstance(inputs.get("action"), str):
        candidates.append(inputs["action"])
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return ActionKind(candidate)
        except ValueError:
            pass
        if candidate in TOOL_ALIASES:
            return TOOL_ALIASES[candidate]
    return None


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AiPrompt:
    prompt: str
    system: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.5

    kind = ActionKind.AI_PROMPT

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "AiPrompt":
        prompt = inputs.get("prompt", inputs.get("text"))
        try:
            temperature = float(inputs.get("temperature", 0.5))
        except (TypeError, ValueError):
            raise ToolInputError("ai_prompt 'temperature' must be a number")
        return cls(
            prompt=_text(prompt) if prompt is not None else "Generate something useful.",
            system=inputs.get("system"),
            model=inputs.get("model"),
            temperature=temperature,
        )


@dataclass(frozen=True)
class ApiCall:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None

    kind = ActionKind.API_CALL

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "ApiCall":
        url = inputs.get("endpoint") or inputs.get("url")
        if not url or not isinstance(url, str):
            raise ToolInputError("api_call requires an 'endpoint' (or 'url') input")
        headers = inputs.get("headers") or {}
        if not isinstance(headers, dict):
            raise ToolInputError("api_call 'headers' must be an object")
        params = inputs.get("params") or {}
        if not isinstance(params, dict):
            raise ToolInputError("api_call 'params' must be an object")
        return cls(
            url=url,
            method=str(inputs.get("method") or "GET").upper(),
            headers={str(k): str(v) for k, v in headers.items()},
            params=params,
            body=inputs.get("body"),
        )


@dataclass(frozen=True)
class FileOperation:
    operation: str
    path: str
    content: Optional[str] = None
    destination: Optional[str] = None

    kind = ActionKind.FILE_OPERATION

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "FileOperation":
        operation = str(inputs.get("operation") or inputs.get("fileOperation") or "read")
        if operation not in FILE_OPERATIONS:
            raise ToolInputError(f"file_operation must be one of {list(FILE_OPERATIONS)}, got '{operation}'")
        path = inputs.get("path") or inputs.get("filePath")
        if not path or not isinstance(path, str):
            raise ToolInputError("file_operation requires a 'path' input")
        content = inputs.get("content", inputs.get("body"))
        destination = inputs.get("destination")
        if operation == "copy":
            destination = destination or inputs.get("body")
            if not destination or not isinstance(destination, str):
                raise ToolInputError("file_operation copy requires a 'destination' input")
        return cls(
            operation=operation,
            path=path,
            content=_text(content) if content is not None else None,
            destination=destination,
        )


@dataclass(frozen=True)
class DataTransform:
    body: Any
    transform: str = "uppercase_keys"
    fields: tuple[str, ...] = ()

    kind = ActionKind.DATA_TRANSFORM

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "DataTransform":
        transform = str(inputs.get("transform") or "uppercase_keys")
        if transform not in TRANSFORMS:
            raise ToolInputError(f"data_transform must be one of {list(TRANSFORMS)}, got '{transform}'")
        fields = inputs.get("fields") or []
        if not isinstance(fields, list):
            raise ToolInputError("data_transform 'fields' must be an array")
        body = inputs.get("body", inputs.get("data", {}))
        return cls(body=body, transform=transform, fields=tuple(str(f) for f in fields))


@dataclass(frozen=True)
class Notification:
    message: str
    channel: Optional[str] = None
    recipient: Optional[str] = None
    webhook: Optional[str] = None

    kind = ActionKind.NOTIFICATION

    @classmethod
    def from_inputs(cls, inputs: dict[str, Any]) -> "Notification":
        message = inputs.get("message", inputs.get("text", inputs.get("body")))
        return cls(
            message=_text(message) if message is not None else "Notification sent",
            channel=inputs.get("channel"),
            recipient=inputs.get("to") or inputs.get("recipient"),
            webhook=inputs.get("webhook") or inputs.get("webhook_url"),
        )


Action = Union[AiPrompt, ApiCall, FileOperation, DataTransform, Notification]

_VARIANTS: dict[ActionKind, type] = {
    ActionKind.AI_PROMPT: AiPrompt,
    ActionKind.API_CALL: ApiCall,
    ActionKind.FILE_OPERATION: FileOperation,
    ActionKind.DATA_TRANSFORM: DataTransform,
    ActionKind.NOTIFICATION: Notification,
}


def build_action(tool: Optional[str], inputs: dict[str, Any]) -> Action:
    """Build the action variant for *tool* from already-resolved *inputs*.

    Raises :class:`UnknownTool` or :class:`ToolInputError`.
    """
    kind = resolve_action_kind(tool, inputs)
    if kind is None:
        raise UnknownTool(f"No action registered for tool '{tool}'")
    return _VARIANTS[kind].from_inputs(inputs)
