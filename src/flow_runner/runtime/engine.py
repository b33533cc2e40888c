"""FlowScript execution engine.

One logical scheduler walks the graph.  It computes a topological order once
per run, then repeatedly launches every pending node whose predecessors have
all settled, up to ``max_concurrency`` at a time, and processes completions
as they land:

1. A node with incoming edges runs only if at least one of them fired;
   otherwise it is skipped.
2. Unmet preconditions skip the node (fail-closed, never an error).
3. ``wait`` pauses, ``decision`` evaluates its expression, a node with a
   ``tool`` goes through the dispatcher, anything else records intent.
4. The trace is appended, the node's output is written to the context, and
   only then are its outgoing edges evaluated.

``background`` nodes release their successors immediately and record their
trace whenever they finish.  Cancellation is cooperative and checked only
when a node is about to start.  ``simulate`` and ``live`` runs share this
code path; only the dispatcher's handler set differs.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import time
from typing import Any, Callable, Optional

from loguru import logger

from ..activity import ActivitySink
from ..config import EngineConfig
from ..errors import (
    CancellationError,
    ConditionSyntaxError,
    InvalidFlowError,
    PreconditionUnmet,
    RunConflict,
    StepNotFound,
)
from ..flowscript.conditions import ConditionEvaluator
from ..flowscript.model import ExecutionMode, FlowNode, FlowScript, NodeType
from ..flowscript.references import resolve_references
from ..flowscript.validator import topological_order, validate
from ..tools.dispatcher import DispatchRequest, DispatchResult, ToolDispatcher, build_dispatcher
from ..utils import _generate_run_id, _now_iso
from .trace import FlowRuntime, FlowTrace, NodeState, NodeStatus, RunStatus, TraceRecorder

CANCELLED_MARKER = f"{CancellationError.__name__}: run cancelled"


class ExecutionEngine:
    """Interprets FlowScripts in ``simulate`` or ``live`` mode.

    Parameters
    ----------
    dispatchers:
        Optional per-mode dispatchers.  Missing modes get the standard
        handler set built from *config*.
    recorder:
        Trace ledger; a fresh one (mirroring to ``config.runs_dir``) by default.
    activity:
        Audit sink notified per node completion and per run status change.
    on_event:
        ``callback(event_type: str, data: dict)`` for UI/websocket fan-out.
    """

    def __init__(
        self,
        dispatchers: Optional[dict[ExecutionMode, ToolDispatcher]] = None,
        *,
        config: Optional[EngineConfig] = None,
        recorder: Optional[TraceRecorder] = None,
        activity: Optional[ActivitySink] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        on_event: Optional[Callable[[str, dict[str, Any]], None]] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._dispatchers: dict[ExecutionMode, ToolDispatcher] = dict(dispatchers or {})
        self.recorder = recorder or TraceRecorder(self.config.runs_dir)
        self.activity = activity
        self.evaluator = evaluator or ConditionEvaluator()
        self.max_concurrency = max(1, max_concurrency or self.config.max_concurrency)
        self._on_event = on_event
        self._cancel_requested: set[str] = set()
        self._background: dict[str, set[asyncio.Task[FlowTrace]]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def dispatcher_for(self, mode: ExecutionMode | str) -> ToolDispatcher:
        mode = ExecutionMode(mode)
        if mode not in self._dispatchers:
            self._dispatchers[mode] = build_dispatcher(mode, self.config)
        return self._dispatchers[mode]

    def get_runtime(self, run_id: str) -> FlowRuntime:
        return self.recorder.get_runtime(run_id)

    def cancel(self, run_id: str) -> bool:
        """Request cooperative cancellation; takes effect at the next node entry."""
        if not self.recorder.has_run(run_id):
            return False
        runtime = self.recorder.live(run_id)
        if runtime.is_terminal:
            return False
        self._cancel_requested.add(run_id)
        logger.info("Cancellation requested for run {}", run_id)
        return True

    async def wait_background(self, run_id: str) -> list[FlowTrace]:
        """Await the run's still-running background nodes and return their traces."""
        tasks = list(self._background.get(run_id, ()))
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def execute(
        self,
        flow: FlowScript,
        mode: ExecutionMode | str = ExecutionMode.SIMULATE,
        *,
        variables: Optional[dict[str, Any]] = None,
        run_id: Optional[str] = None,
        wait_background: bool = False,
    ) -> FlowRuntime:
        """Run *flow* to completion and return a snapshot of its runtime.

        Background nodes may still be running when this returns.  Pass
        ``wait_background=True`` when the event loop will not outlive the call
        (``asyncio.run``), so their traces land before the run is finished.

        Raises :class:`InvalidFlowError` if the flow has structural errors;
        tool failures never raise, they are recorded in the traces.
        """
        errors = validate(flow)
        if errors:
            raise InvalidFlowError(errors)

        mode = ExecutionMode(mode)
        order = topological_order(flow)
        runtime = FlowRuntime(
            run_id=run_id or _generate_run_id(),
            flow_id=flow.id,
            mode=mode,
            variables=copy.deepcopy(variables or {}),
            nodes={nid: NodeState(nid) for nid in order},
        )
        self.recorder.start(runtime)
        self._set_status(runtime, RunStatus.RUNNING)
        logger.info("Run {} started: flow={} mode={} nodes={}", runtime.run_id, flow.id, mode.value, len(order))

        try:
            await self._schedule(flow, order, runtime, self.dispatcher_for(mode))
            if wait_background:
                await self.wait_background(runtime.run_id)
        except Exception as exc:
            logger.exception("Run {} aborted by an engine error", runtime.run_id)
            runtime.error = f"{type(exc).__name__}: {exc}"
            self._mark_remaining_skipped(runtime, "EngineError")
            self._finish(flow, runtime, force_failed=True)
        else:
            self._finish(flow, runtime)
        finally:
            self._cancel_requested.discard(runtime.run_id)

        return self.recorder.get_runtime(runtime.run_id)

    async def execute_step(
        self,
        flow: FlowScript,
        step_id: str,
        mode: ExecutionMode | str = ExecutionMode.SIMULATE,
        *,
        run_id: Optional[str] = None,
    ) -> FlowTrace:
        """Execute a single node.

        With *run_id* the node reads and writes that run's context and its
        trace is appended there.  A run that already finished is never
        mutated: the step runs in a new run seeded with a copy of its
        context.  Without *run_id* a fresh one-node run is created.

        Raises :class:`StepNotFound`, :class:`RunConflict` (the run belongs
        to another flow) or :class:`PreconditionUnmet`.
        """
        node = flow.get_node(step_id)
        if node is None:
            raise StepNotFound(f"Step not found: {step_id}")
        mode = ExecutionMode(mode)

        seed: dict[str, Any] = {}
        runtime: Optional[FlowRuntime] = None
        if run_id is not None:
            parent = self.recorder.live(run_id)
            if parent.flow_id != flow.id:
                raise RunConflict(f"Run {run_id} executes flow '{parent.flow_id}', not '{flow.id}'")
            if parent.is_terminal:
                logger.info("Run {} is {}; running step {} in a new run", run_id, parent.status.value, step_id)
                seed = copy.deepcopy(parent.variables)
            elif step_id not in parent.nodes:
                raise StepNotFound(f"Step {step_id} is not part of run {run_id}")
            else:
                runtime = parent

        standalone = runtime is None
        if runtime is None:
            runtime = FlowRuntime(
                run_id=_generate_run_id(),
                flow_id=flow.id,
                mode=mode,
                variables=seed,
                nodes={step_id: NodeState(step_id)},
            )
            self.recorder.start(runtime)
            self._set_status(runtime, RunStatus.RUNNING)

        unmet = self.evaluator.unmet_preconditions(node.pre, runtime.variables)
        if unmet:
            self._skip(runtime, step_id, "PreconditionUnmet")
            if standalone:
                self._set_status(runtime, RunStatus.FAILED, error=f"PreconditionUnmet: {', '.join(unmet)}")
            raise PreconditionUnmet(step_id, unmet)

        trace = await self._run_node(flow, node, runtime, self.dispatcher_for(mode))
        if standalone:
            runtime.current_step = None
            self._set_status(runtime, RunStatus.COMPLETED if trace.success else RunStatus.FAILED,
                             error=None if trace.success else trace.error)
        return trace

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def _schedule(
        self,
        flow: FlowScript,
        order: list[str],
        runtime: FlowRuntime,
        dispatcher: ToolDispatcher,
    ) -> None:
        nodes = {n.id: n for n in reversed(flow.nodes)}  # first declaration wins
        predecessors: dict[str, set[str]] = {nid: set() for nid in order}
        for edge in flow.edges:
            predecessors[edge.to].add(edge.from_)

        released: set[str] = set()
        fired_into: dict[str, set[str]] = {nid: set() for nid in order}
        running: dict[asyncio.Task[FlowTrace], str] = {}

        def release(nid: str, output: Any) -> None:
            state = runtime.nodes[nid]
            for edge in flow.outgoing(nid):
                if state.status in (NodeStatus.COMPLETED, NodeStatus.ACTIVE) and self.evaluator.edge_fires(
                    edge, runtime.variables, output
                ):
                    fired_into[edge.to].add(nid)
            released.add(nid)

        while True:
            for nid in order:
                state = runtime.nodes[nid]
                if state.status != NodeStatus.PENDING or not predecessors[nid] <= released:
                    continue
                if runtime.run_id in self._cancel_requested:
                    runtime.cancelled = True
                    break

                node = nodes[nid]
                if predecessors[nid] and not fired_into[nid]:
                    upstream_failed = any(runtime.nodes[p].status == NodeStatus.ERROR for p in predecessors[nid])
                    self._skip(runtime, nid, "UpstreamFailed" if upstream_failed else "NoEligibleEdge")
                    release(nid, None)
                    continue
                unmet = self.evaluator.unmet_preconditions(node.pre, runtime.variables)
                if unmet:
                    self._skip(runtime, nid, f"PreconditionUnmet: {', '.join(unmet)}")
                    release(nid, None)
                    continue
                if len(running) >= self.max_concurrency:
                    break

                state.status = NodeStatus.ACTIVE
                task = asyncio.create_task(self._run_node(flow, node, runtime, dispatcher))
                if node.type == NodeType.BACKGROUND:
                    self._background.setdefault(runtime.run_id, set()).add(task)
                    task.add_done_callback(functools.partial(self._forget_background, runtime.run_id))
                    release(nid, None)
                else:
                    running[task] = nid

            if not running:
                break
            done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: order.index(running[t])):
                nid = running.pop(task)
                release(nid, task.result().output)

        self._mark_remaining_skipped(runtime, "Cancelled" if runtime.cancelled else "Unreachable")

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------

    async def _run_node(
        self,
        flow: FlowScript,
        node: FlowNode,
        runtime: FlowRuntime,
        dispatcher: ToolDispatcher,
    ) -> FlowTrace:
        state = runtime.nodes.setdefault(node.id, NodeState(node.id))
        state.status = NodeStatus.ACTIVE
        runtime.current_step = node.id
        started = _now_iso()
        self._notify("node_started", {"run_id": runtime.run_id, "node_id": node.id})

        resolved = resolve_references(node.inputs, runtime.variables)
        try:
            result = await self._perform(node, resolved, runtime, dispatcher)
        except Exception as exc:
            logger.exception("Node {} raised outside the dispatcher", node.id)
            result = DispatchResult(
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                error_type=type(exc).__name__,
            )

        metrics: dict[str, Any] = {
            "mode": runtime.mode.value,
            "node_type": node.type.value,
            "actor": node.actor.value,
        }
        if result.action:
            metrics["action"] = result.action
        if result.error_type:
            metrics["error_type"] = result.error_type

        trace = FlowTrace(
            run_id=runtime.run_id,
            step_id=node.id,
            timestamp=started,
            input=resolved,
            success=result.success,
            output=result.output,
            latency_ms=result.latency_ms,
            error=result.error,
            metrics=metrics,
        )

        if result.success:
            if result.output is not None and not isinstance(result.output, _Intent):
                runtime.variables[node.output_key] = copy.deepcopy(result.output)
            self.evaluator.apply_postconditions(node.post, runtime.variables)
            state.status = NodeStatus.COMPLETED
        else:
            state.status = NodeStatus.ERROR
            state.error = result.error
            state.error_type = result.error_type
        if isinstance(result.output, _Intent):
            trace = _replace_output(trace, dict(result.output))

        self.recorder.append(runtime.run_id, trace)
        self._notify("node_finished", {
            "run_id": runtime.run_id,
            "node_id": node.id,
            "status": state.status.value,
            "error": state.error,
        })
        if self.activity is not None:
            self._safe_activity(
                self.activity.node_completed,
                runtime.run_id, flow.id, node.id, state.status.value,
                latency_ms=trace.latency_ms, error=trace.error,
            )
        logger.debug("Node {} -> {} ({}ms)", node.id, state.status.value, trace.latency_ms)
        return trace

    async def _perform(
        self,
        node: FlowNode,
        inputs: dict[str, Any],
        runtime: FlowRuntime,
        dispatcher: ToolDispatcher,
    ) -> DispatchResult:
        if node.type == NodeType.WAIT:
            return await dispatcher.pause(node.id, _wait_seconds(inputs), timeout=node.timeout)

        if node.type == NodeType.DECISION and _decision_expression(inputs):
            start = time.perf_counter()
            expression = _decision_expression(inputs)
            try:
                value = self.evaluator.evaluate(expression, runtime.variables)
            except ConditionSyntaxError as exc:
                return DispatchResult(success=False, error=f"ParseError: {exc}", error_type="ParseError",
                                      action="decision")
            output: dict[str, Any] = {"result": value}
            for key in node.outputs:
                output[key] = value
            return DispatchResult(output=output, latency_ms=round((time.perf_counter() - start) * 1000, 3),
                                  action="decision")

        if node.tool:
            request = DispatchRequest(
                node_id=node.id,
                inputs=inputs,
                mode=runtime.mode,
                declared_outputs=dict(node.outputs),
                timeout=node.timeout if node.timeout is not None else _number(inputs.get("timeout")),
                run_id=runtime.run_id,
            )
            return await dispatcher.dispatch(node.tool, request)

        return DispatchResult(output=_Intent(intent=node.label or node.id, actor=node.actor.value), latency_ms=0.0)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _skip(self, runtime: FlowRuntime, node_id: str, reason: str) -> None:
        state = runtime.nodes.setdefault(node_id, NodeState(node_id))
        state.status = NodeStatus.SKIPPED
        state.reason = reason
        logger.debug("Node {} skipped: {}", node_id, reason)

    def _mark_remaining_skipped(self, runtime: FlowRuntime, reason: str) -> None:
        for nid, state in runtime.nodes.items():
            if state.status == NodeStatus.PENDING:
                self._skip(runtime, nid, reason)

    def _forget_background(self, run_id: str, task: asyncio.Task[FlowTrace]) -> None:
        tasks = self._background.get(run_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._background[run_id]

    def _finish(self, flow: FlowScript, runtime: FlowRuntime, force_failed: bool = False) -> None:
        runtime.current_step = None
        if force_failed:
            self._set_status(runtime, RunStatus.FAILED, error=runtime.error)
            return
        if runtime.cancelled:
            self._set_status(runtime, RunStatus.FAILED, error=CANCELLED_MARKER)
            return

        errored = [nid for nid, s in runtime.nodes.items() if s.status == NodeStatus.ERROR]
        terminals = flow.terminal_ids()
        reached = any(
            runtime.node_status(t) == NodeStatus.COMPLETED
            or (runtime.node_status(t) == NodeStatus.ACTIVE and flow.get_node(t).type == NodeType.BACKGROUND)
            for t in terminals
        )
        if errored and not reached:
            self._set_status(
                runtime,
                RunStatus.FAILED,
                error=f"No terminal node reachable after failure of: {', '.join(errored)}",
            )
        else:
            self._set_status(runtime, RunStatus.COMPLETED)

    def _set_status(self, runtime: FlowRuntime, status: RunStatus, error: Optional[str] = None) -> None:
        runtime.status = status
        if error is not None:
            runtime.error = error
        if status in (RunStatus.COMPLETED, RunStatus.FAILED):
            runtime.finished_at = _now_iso()
            logger.info("Run {} {}{}", runtime.run_id, status.value, f": {error}" if error else "")
        self._notify("run_status", {"run_id": runtime.run_id, "status": status.value, "error": runtime.error})
        if self.activity is not None:
            self._safe_activity(self.activity.run_status, runtime.run_id, runtime.flow_id, status.value,
                                error=runtime.error)

    def _safe_activity(self, fn: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Activity logger failed")

    def _notify(self, event_type: str, data: dict[str, Any]) -> None:
        """Fire an event notification if a callback is registered."""
        if self._on_event:
            try:
                self._on_event(event_type, data)
            except Exception:
                logger.exception("Error in engine event callback")


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------

class _Intent(dict):
    """Output of a tool-less node: recorded in the trace, never in the context."""


def _replace_output(trace: FlowTrace, output: Any) -> FlowTrace:
    return FlowTrace(
        run_id=trace.run_id,
        step_id=trace.step_id,
        timestamp=trace.timestamp,
        input=trace.input,
        success=trace.success,
        output=output,
        latency_ms=trace.latency_ms,
        error=trace.error,
        metrics=trace.metrics,
    )


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _wait_seconds(inputs: dict[str, Any]) -> float:
    for key in ("seconds", "duration"):
        value = _number(inputs.get(key))
        if value is not None:
            return max(value, 0.0)
    ms = _number(inputs.get("duration_ms"))
    return max(ms / 1000.0, 0.0) if ms is not None else 0.0


def _decision_expression(inputs: dict[str, Any]) -> Optional[str]:
    expression = inputs.get("expression", inputs.get("condition"))
    return expression if isinstance(expression, str) and expression.strip() else None
