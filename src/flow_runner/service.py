"""Service facade that wires the engine to its collaborators.

``FlowService`` is what the HTTP router and the CLI talk to.  It owns one
engine, one trace recorder and one store, and exposes the workflow
operations: validation, whole-run and single-step execution, runtime
inspection, cancellation, generation/refinement/explanation, test cases and
per-project flow persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .activity import ActivityLogger
from .config import EngineConfig, get_engine_config, load_runner_config
from .constants import ACTIVITY_FILE, STATE_DIR_NAME
from .errors import GenerationError, InvalidFlowError
from .flowscript.conditions import values_equal
from .flowscript.model import ExecutionMode, FlowScript, FlowTestCase
from .flowscript.references import MISSING, lookup
from .flowscript.validator import topological_order, validate
from .generation import FlowGenerator, OpenAIChatBackend
from .runtime.engine import ExecutionEngine
from .runtime.trace import FlowRuntime, FlowTrace, TraceRecorder
from .store import FlowStore, InMemoryFlowStore, YamlFlowStore
from .tools.actions import ActionKind
from .tools.dispatcher import Handler, build_dispatcher


@dataclass
class TestCaseResult:
    name: str
    passed: bool
    run_id: Optional[str] = None
    status: Optional[str] = None
    failures: list[str] = field(default_factory=list)

    __test__ = False  # not a pytest class

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "runId": self.run_id,
            "status": self.status,
            "failures": list(self.failures),
        }


def _matches(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, (dict, list)) or isinstance(expected, (dict, list)):
        return False
    return values_equal(actual, expected)


def check_expectations(runtime: FlowRuntime, expect: dict[str, Any]) -> list[str]:
    """Compare dotted context paths against expected values."""
    failures: list[str] = []
    for key, expected in expect.items():
        path = key[1:] if key.startswith("@") else key
        actual = lookup(runtime.variables, path)
        if actual is MISSING:
            failures.append(f"{key}: missing (expected {expected!r})")
        elif not _matches(actual, expected):
            failures.append(f"{key}: expected {expected!r}, got {actual!r}")
    return failures


class FlowService:
    """Workflow operations for one project (or an in-memory sandbox).

    Parameters
    ----------
    project_dir:
        Project root; enables ``.flow_runner/config.yaml``, the YAML flow
        store, JSONL run traces and the JSONL activity log.  ``None`` keeps
        everything in memory.
    overrides:
        Per-mode handler overrides, e.g. deterministic test doubles for
        ``live`` runs.
    """

    def __init__(
        self,
        project_dir: Optional[Path] = None,
        *,
        config: Optional[EngineConfig] = None,
        store: Optional[FlowStore] = None,
        generator: Optional[FlowGenerator] = None,
        activity: Optional[ActivityLogger] = None,
        overrides: Optional[dict[ExecutionMode, dict[ActionKind, Handler]]] = None,
        transport: Any = None,
        on_event: Optional[Callable[[str, dict[str, Any]], None]] = None,
    ) -> None:
        self.project_dir = project_dir.resolve() if project_dir is not None else None
        state_dir = self.project_dir / STATE_DIR_NAME if self.project_dir is not None else None

        if config is None:
            raw: dict[str, Any] = {}
            if self.project_dir is not None:
                raw, err = load_runner_config(self.project_dir)
                if err:
                    logger.warning("Ignoring invalid config: {}", err)
            config = get_engine_config(raw, self.project_dir)
        self.config = config

        if store is None:
            store = YamlFlowStore(state_dir) if state_dir is not None else InMemoryFlowStore()
        self.store = store

        if activity is None:
            activity = ActivityLogger(path=state_dir / ACTIVITY_FILE if state_dir is not None else None)
        self.activity = activity

        self.generator = generator or FlowGenerator(OpenAIChatBackend(config, transport=transport))
        self.recorder = TraceRecorder(config.runs_dir)

        overrides = overrides or {}
        dispatchers = {
            mode: build_dispatcher(mode, config, overrides=overrides.get(mode), transport=transport)
            for mode in ExecutionMode
        }
        self.engine = ExecutionEngine(
            dispatchers,
            config=config,
            recorder=self.recorder,
            activity=self.activity,
            on_event=on_event,
        )

    # -- validation ----------------------------------------------------------

    def validate(self, flow: FlowScript) -> list[Any]:
        return validate(flow)

    def order(self, flow: FlowScript) -> list[str]:
        return topological_order(flow)

    # -- execution -----------------------------------------------------------

    async def execute(
        self,
        flow: FlowScript,
        mode: ExecutionMode | str = ExecutionMode.SIMULATE,
        *,
        variables: Optional[dict[str, Any]] = None,
        wait_background: bool = False,
    ) -> FlowRuntime:
        return await self.engine.execute(flow, mode, variables=variables, wait_background=wait_background)

    async def execute_step(
        self,
        flow: FlowScript,
        step_id: str,
        mode: ExecutionMode | str = ExecutionMode.SIMULATE,
        run_id: Optional[str] = None,
    ) -> FlowTrace:
        return await self.engine.execute_step(flow, step_id, mode, run_id=run_id)

    def get_runtime(self, run_id: str) -> FlowRuntime:
        return self.engine.get_runtime(run_id)

    def cancel(self, run_id: str) -> bool:
        return self.engine.cancel(run_id)

    async def run_testcases(
        self,
        flow: FlowScript,
        mode: ExecutionMode | str = ExecutionMode.SIMULATE,
        testcases: Optional[list[FlowTestCase]] = None,
    ) -> list[TestCaseResult]:
        """Execute the flow once per test case, seeded with its ``given`` bindings."""
        errors = validate(flow)
        if errors:
            raise InvalidFlowError(errors)
        results: list[TestCaseResult] = []
        for case in testcases if testcases is not None else flow.testcases:
            runtime = await self.engine.execute(flow, mode, variables=case.given, wait_background=True)
            failures = check_expectations(runtime, case.expect)
            results.append(TestCaseResult(
                name=case.name,
                passed=not failures,
                run_id=runtime.run_id,
                status=runtime.status.value,
                failures=failures,
            ))
            logger.info("Test case '{}': {}", case.name, "passed" if not failures else "FAILED")
        return results

    # -- generation ----------------------------------------------------------

    async def generate(self, text: str, project_id: Optional[str] = None) -> FlowScript:
        flow = await self.generator.generate(text, project_id)
        if project_id:
            self.store.save(project_id, flow)
        self.activity.log(f"Generated workflow '{flow.title or flow.id}'", "workflow_generated",
                          flow_id=flow.id, project_id=project_id)
        return flow

    async def refine(self, flow: FlowScript, feedback: str, project_id: Optional[str] = None) -> FlowScript:
        """Refine *flow*; on failure raise GenerationError and leave storage untouched."""
        try:
            refined = await self.generator.refine(flow, feedback)
        except GenerationError:
            logger.warning("Refinement of {} failed; keeping the previous flow", flow.id)
            raise
        if project_id:
            self.store.save(project_id, refined)
        self.activity.log(f"Refined workflow '{refined.title or refined.id}'", "workflow_refined",
                          flow_id=refined.id, project_id=project_id)
        return refined

    async def explain(self, flow: FlowScript, step_id: str, level: str = "user") -> str:
        return await self.generator.explain(flow, step_id, level)

    # -- persistence ---------------------------------------------------------

    def get_flow(self, project_id: str) -> Optional[FlowScript]:
        return self.store.get(project_id)

    def save_flow(self, project_id: str, flow: FlowScript) -> FlowScript:
        """Persist a structurally valid flow; raises InvalidFlowError otherwise."""
        errors = validate(flow)
        if errors:
            raise InvalidFlowError(errors)
        return self.store.save(project_id, flow)
