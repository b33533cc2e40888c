"""Simulate-mode handlers: deterministic, no external side effects.

Pure actions (``data_transform``) run for real.  Everything else returns a
tagged mock shaped after the node's declared outputs, while still applying
the same input checks as live mode (sandbox confinement included) so a dry
run fails where a live run would.
"""

from __future__ import annotations

from typing import Any

from ..config import EngineConfig
from .actions import (
    ActionKind,
    AiPrompt,
    ApiCall,
    DataTransform,
    FileOperation,
    Notification,
)
from .dispatcher import DispatchRequest, Handler
from .live import mock_ai_output, run_data_transform, sandbox_root, sandboxed_path

_MOCK_VALUES: dict[str, Any] = {
    "number": 0,
    "integer": 0,
    "boolean": True,
    "array": [],
    "list": [],
    "object": {},
    "dict": {},
}


def mock_outputs(declared: dict[str, Any]) -> dict[str, Any]:
    """Deterministic placeholder values for a node's declared output types."""
    out: dict[str, Any] = {}
    for key, declared_type in declared.items():
        type_name = str(declared_type).lower()
        if type_name in _MOCK_VALUES:
            value = _MOCK_VALUES[type_name]
            out[key] = type(value)() if isinstance(value, (list, dict)) else value
        else:
            out[key] = f"mock_{key}"
    return out


def _with_declared(output: dict[str, Any], request: DispatchRequest) -> dict[str, Any]:
    for key, value in mock_outputs(request.declared_outputs).items():
        output.setdefault(key, value)
    return output


class MockHandlers:
    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.root = sandbox_root(config)

    async def ai_prompt(self, action: AiPrompt, request: DispatchRequest) -> Any:
        return _with_declared(mock_ai_output(action.prompt), request)

    async def api_call(self, action: ApiCall, request: DispatchRequest) -> Any:
        output = {
            "status": 200,
            "ok": True,
            "body": "",
            "json": None,
            "headers": {},
            "mock": True,
            "request": {"method": action.method, "url": action.url},
        }
        return _with_declared(output, request)

    async def file_operation(self, action: FileOperation, request: DispatchRequest) -> Any:
        sandboxed_path(self.root, action.path)
        if action.destination:
            sandboxed_path(self.root, action.destination)
        output: dict[str, Any] = {"path": action.path, "operation": action.operation, "ok": True, "mock": True}
        if action.operation == "read":
            output["content"] = ""
        return _with_declared(output, request)

    async def data_transform(self, action: DataTransform, request: DispatchRequest) -> Any:
        return run_data_transform(action)

    async def notification(self, action: Notification, request: DispatchRequest) -> Any:
        output = {
            "message": action.message,
            "channel": action.channel,
            "delivered": True,
            "transport": "mock",
            "mock": True,
        }
        return _with_declared(output, request)

    def handlers(self) -> dict[ActionKind, Handler]:
        return {
            ActionKind.AI_PROMPT: self.ai_prompt,
            ActionKind.API_CALL: self.api_call,
            ActionKind.FILE_OPERATION: self.file_operation,
            ActionKind.DATA_TRANSFORM: self.data_transform,
            ActionKind.NOTIFICATION: self.notification,
        }


def mock_handlers(config: EngineConfig) -> dict[ActionKind, Handler]:
    return MockHandlers(config).handlers()
