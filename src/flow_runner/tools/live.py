"""Live tool handlers: real HTTP, filesystem and language-model calls."""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any, Optional

import httpx
from loguru import logger

from ..config import EngineConfig
from ..constants import MOCK_AI_TAG, NOTIFICATION_DELIVERY_SHARE, STATE_DIR_NAME
from ..errors import (
    NetworkError,
    ParseError,
    PathViolation,
    ToolExecutionError,
    ToolInputError,
    ToolTimeoutError,
)
from .actions import (
    ActionKind,
    AiPrompt,
    ApiCall,
    DataTransform,
    FileOperation,
    Notification,
)
from .dispatcher import DispatchRequest, Handler


# ---------------------------------------------------------------------------
# Helpers shared with the simulate handlers
# ---------------------------------------------------------------------------

def sandbox_root(config: EngineConfig) -> Path:
    return (config.sandbox_root or Path(".") / STATE_DIR_NAME / "sandbox").resolve()


def sandboxed_path(root: Path, raw: str) -> Path:
    """Resolve *raw* inside *root*; anything escaping the root is a violation."""
    root = root.resolve()
    candidate = Path(raw)
    target = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if target != root and root not in target.parents:
        raise PathViolation(f"Path '{raw}' resolves outside the sandbox root")
    return target


def mock_ai_output(prompt: str) -> dict[str, Any]:
    preview = prompt[:200]
    suffix = "..." if len(prompt) > 200 else ""
    return {"text": f"{MOCK_AI_TAG} {preview}{suffix}", "mock": True}


def run_data_transform(action: DataTransform) -> Any:
    """Pure JSON→JSON transform. Malformed input raises :class:`ParseError`."""
    body = action.body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body) if body.strip() else {}
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON for data_transform: {exc.msg}") from None

    if action.transform == "identity":
        return body
    if not isinstance(body, dict):
        raise ParseError(f"data_transform '{action.transform}' expects a JSON object, got {type(body).__name__}")
    if action.transform == "uppercase_keys":
        return {str(k).upper(): v for k, v in body.items()}
    if action.transform == "lowercase_keys":
        return {str(k).lower(): v for k, v in body.items()}
    return {k: body[k] for k in action.fields if k in body}


def _http_body_kwargs(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (dict, list)):
        return {"json": body}
    return {"content": str(body)}


# ---------------------------------------------------------------------------
# Live handlers
# ---------------------------------------------------------------------------

class LiveHandlers:
    """Handler set that performs real side effects.

    ``transport`` lets callers plug an ``httpx.MockTransport`` (or any other
    transport) under every outbound request.
    """

    def __init__(self, config: EngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self.transport = transport
        self.root = sandbox_root(config)

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=httpx.Timeout(timeout or self.config.tool_timeout_seconds),
            follow_redirects=True,
        )

    async def ai_prompt(self, action: AiPrompt, request: DispatchRequest) -> Any:
        if not self.config.ai_api_key:
            logger.info("No AI credentials configured; returning mock output for {}", request.node_id)
            return mock_ai_output(action.prompt)

        messages = []
        if action.system:
            messages.append({"role": "system", "content": action.system})
        messages.append({"role": "user", "content": action.prompt})
        model = action.model or self.config.ai_model
        payload = {"model": model, "messages": messages, "temperature": action.temperature}
        headers = {"Authorization": f"Bearer {self.config.ai_api_key}"}
        try:
            async with self._client(request.timeout) as client:
                resp = await client.post(self.config.ai_endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(f"AI request timed out: {exc}") from None
        except httpx.HTTPError as exc:
            raise NetworkError(f"AI request failed: {exc}") from None
        if resp.status_code >= 400:
            raise NetworkError(f"AI endpoint returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            raise ParseError("AI endpoint returned a non-JSON body") from None
        choices = data.get("choices") if isinstance(data, dict) else None
        text = None
        if isinstance(choices, list) and choices:
            text = ((choices[0] or {}).get("message") or {}).get("content")
        return {"text": text if text is not None else json.dumps(data), "model": model, "mock": False}

    async def api_call(self, action: ApiCall, request: DispatchRequest) -> Any:
        try:
            async with self._client(request.timeout) as client:
                resp = await client.request(
                    action.method,
                    action.url,
                    headers=action.headers,
                    params=action.params or None,
                    **_http_body_kwargs(action.body),
                )
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(f"{action.method} {action.url} timed out: {exc}") from None
        except httpx.HTTPError as exc:
            raise NetworkError(f"{action.method} {action.url} failed: {exc}") from None

        output: dict[str, Any] = {
            "status": resp.status_code,
            "ok": 200 <= resp.status_code < 400,
            "body": resp.text,
            "headers": dict(resp.headers),
        }
        try:
            output["json"] = resp.json()
        except ValueError:
            output["json"] = None
        return output

    async def file_operation(self, action: FileOperation, request: DispatchRequest) -> Any:
        target = sandboxed_path(self.root, action.path)
        destination = sandboxed_path(self.root, action.destination) if action.destination else None
        if action.operation == "copy" and destination is None:
            raise ToolInputError(f"file_operation copy of {action.path} has no destination")

        def _run() -> dict[str, Any]:
            if action.operation == "read":
                return {"path": action.path, "content": target.read_text(encoding="utf-8")}
            if action.operation == "write":
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(action.content or "", encoding="utf-8")
                return {"path": action.path, "ok": True}
            if action.operation == "delete":
                target.unlink()
                return {"path": action.path, "ok": True}
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(target, destination)
            return {"path": action.path, "destination": action.destination, "ok": True}

        try:
            return await asyncio.to_thread(_run)
        except OSError as exc:
            raise ToolExecutionError(f"{action.operation} {action.path} failed: {exc.strerror or exc}") from None

    async def data_transform(self, action: DataTransform, request: DispatchRequest) -> Any:
        return run_data_transform(action)

    async def notification(self, action: Notification, request: DispatchRequest) -> Any:
        result: dict[str, Any] = {"message": action.message, "channel": action.channel, "delivered": True}
        if not action.webhook:
            logger.info("Notification from {} ({}): {}", request.node_id, action.channel or "default", action.message)
            result["transport"] = "log"
            return result
        result["transport"] = "webhook"
        payload = {"text": action.message, "channel": action.channel, "to": action.recipient}
        limit = request.timeout if request.timeout is not None and request.timeout > 0 else self.config.tool_timeout_seconds
        budget = limit * NOTIFICATION_DELIVERY_SHARE

        # Delivery failures are reported in the output; the node still succeeds
        try:
            resp = await asyncio.wait_for(self._post_webhook(action.webhook, payload, budget), timeout=budget)
            if resp.status_code >= 400:
                result["delivered"] = False
                result["error"] = f"HTTP {resp.status_code}"
        except asyncio.TimeoutError:
            result["delivered"] = False
            result["error"] = f"TimeoutError: delivery exceeded {budget:g}s"
        except httpx.HTTPError as exc:
            result["delivered"] = False
            result["error"] = f"{type(exc).__name__}: {exc}"
        if not result["delivered"]:
            logger.warning("Notification from {} not delivered: {}", request.node_id, result["error"])
        return result

    async def _post_webhook(self, url: str, payload: dict[str, Any], timeout: float) -> httpx.Response:
        async with self._client(timeout) as client:
            return await client.post(url, json=payload)

    def handlers(self) -> dict[ActionKind, Handler]:
        return {
            ActionKind.AI_PROMPT: self.ai_prompt,
            ActionKind.API_CALL: self.api_call,
            ActionKind.FILE_OPERATION: self.file_operation,
            ActionKind.DATA_TRANSFORM: self.data_transform,
            ActionKind.NOTIFICATION: self.notification,
        }


def live_handlers(config: EngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict[ActionKind, Handler]:
    return LiveHandlers(config, transport=transport).handlers()
