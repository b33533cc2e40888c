"""Uniform tool dispatch with bounded timeouts.

The dispatcher is the boundary where tool failures stop being exceptions: any
error raised while building or running an action comes back as a failed
:class:`DispatchResult`.  ``simulate`` and ``live`` dispatchers differ only in
their handler set, so the engine drives both through the same code path.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..config import EngineConfig
from ..errors import ToolExecutionError, ToolTimeoutError, UnknownTool
from ..flowscript.model import ExecutionMode
from .actions import Action, ActionKind, build_action


@dataclass
class DispatchRequest:
    """Everything a handler may need besides the action itself."""

    node_id: str
    inputs: dict[str, Any]
    mode: ExecutionMode = ExecutionMode.SIMULATE
    declared_outputs: dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    run_id: Optional[str] = None


@dataclass
class DispatchResult:
    output: Any = None
    success: bool = True
    error: Optional[str] = None
    error_type: Optional[str] = None
    latency_ms: float = 0.0
    action: Optional[str] = None


Handler = Callable[[Action, DispatchRequest], Awaitable[Any]]
PauseFn = Callable[[float], Awaitable[None]]


async def _real_pause(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def _no_pause(seconds: float) -> None:
    return None


class ToolDispatcher:
    """Runs actions through a handler set under a per-call timeout."""

    def __init__(
        self,
        handlers: dict[ActionKind, Handler],
        *,
        mode: ExecutionMode = ExecutionMode.SIMULATE,
        pause: Optional[PauseFn] = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._handlers = dict(handlers)
        self.mode = mode
        self._pause = pause or (_real_pause if mode == ExecutionMode.LIVE else _no_pause)
        self.default_timeout = default_timeout

    def has_handler(self, kind: ActionKind) -> bool:
        return kind in self._handlers

    def with_overrides(self, overrides: dict[ActionKind, Handler]) -> "ToolDispatcher":
        """Return a copy with some handlers replaced (used for test doubles)."""
        handlers = dict(self._handlers)
        handlers.update(overrides)
        return ToolDispatcher(handlers, mode=self.mode, pause=self._pause, default_timeout=self.default_timeout)

    def _timeout_for(self, request: DispatchRequest) -> float:
        if request.timeout is not None and request.timeout > 0:
            return float(request.timeout)
        return self.default_timeout

    async def dispatch(self, tool: Optional[str], request: DispatchRequest) -> DispatchResult:
        """Build the action for *tool* and run it; never raises for tool errors."""
        start = time.perf_counter()
        action_name: Optional[str] = None
        timeout = self._timeout_for(request)
        try:
            action = build_action(tool, request.inputs)
            action_name = action.kind.value
            handler = self._handlers.get(action.kind)
            if handler is None:
                raise UnknownTool(f"No {self.mode.value} handler for action '{action_name}'")
            try:
                output = await asyncio.wait_for(handler(action, request), timeout=timeout)
            except asyncio.TimeoutError:
                raise ToolTimeoutError(f"{action_name} on {request.node_id} exceeded {timeout:g}s") from None
        except ToolExecutionError as exc:
            logger.warning("Tool {} on node {} failed: {}: {}", tool, request.node_id, exc.error_type, exc)
            return DispatchResult(
                output=None,
                success=False,
                error=f"{exc.error_type}: {exc}",
                error_type=exc.error_type,
                latency_ms=_elapsed_ms(start),
                action=action_name,
            )
        except Exception as exc:
            logger.exception("Unexpected error dispatching {} on node {}", tool, request.node_id)
            return DispatchResult(
                output=None,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                error_type=type(exc).__name__,
                latency_ms=_elapsed_ms(start),
                action=action_name,
            )
        return DispatchResult(output=output, success=True, latency_ms=_elapsed_ms(start), action=action_name)

    async def pause(self, node_id: str, seconds: float, timeout: Optional[float] = None) -> DispatchResult:
        """Suspend a ``wait`` node. Simulate mode records the duration only."""
        start = time.perf_counter()
        limit = timeout if timeout is not None and timeout > 0 else max(self.default_timeout, seconds)
        try:
            await asyncio.wait_for(self._pause(seconds), timeout=limit)
        except asyncio.TimeoutError:
            return DispatchResult(
                success=False,
                error=f"TimeoutError: wait on {node_id} exceeded {limit:g}s",
                error_type=ToolTimeoutError.error_type,
                latency_ms=_elapsed_ms(start),
                action="wait",
            )
        return DispatchResult(
            output={"waited_seconds": seconds, "simulated": self.mode == ExecutionMode.SIMULATE},
            success=True,
            latency_ms=_elapsed_ms(start),
            action="wait",
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def build_dispatcher(
    mode: ExecutionMode | str,
    config: Optional[EngineConfig] = None,
    *,
    overrides: Optional[dict[ActionKind, Handler]] = None,
    transport: Any = None,
) -> ToolDispatcher:
    """Create the dispatcher for *mode* with its standard handler set."""
    from .live import live_handlers
    from .mock import mock_handlers

    mode = ExecutionMode(mode)
    config = config or EngineConfig()
    if mode == ExecutionMode.LIVE:
        handlers = live_handlers(config, transport=transport)
    else:
        handlers = mock_handlers(config)
    if overrides:
        handlers.update(overrides)
    return ToolDispatcher(handlers, mode=mode, default_timeout=config.tool_timeout_seconds)
