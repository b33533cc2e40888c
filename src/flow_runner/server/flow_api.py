"""V2 FlowScript API endpoints.

This module provides a FastAPI router for validating, generating, refining,
explaining and executing FlowScripts, inspecting and cancelling runs, and
storing one flow per project.  It is mounted under ``/api/v2/flows`` by the
main ``create_app`` factory.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..errors import (
    GenerationError,
    InvalidFlowError,
    PreconditionUnmet,
    RunConflict,
    RunNotFound,
    StepNotFound,
)
from ..flowscript.model import ExecutionMode, FlowScript
from ..service import FlowService
from ..utils import _generate_run_id


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class FlowRef(BaseModel):
    """Either an inline flow or the id of a project whose stored flow to use."""

    flow: Optional[FlowScript] = None
    project_id: Optional[str] = None


class ValidateRequest(BaseModel):
    flow: FlowScript


class ValidateResponse(BaseModel):
    valid: bool
    errors: list[dict[str, Any]]
    order: list[str] = Field(default_factory=list)


class GenerateRequest(BaseModel):
    text: str
    project_id: Optional[str] = None


class ExecuteRequest(FlowRef):
    mode: ExecutionMode = ExecutionMode.SIMULATE
    variables: dict[str, Any] = Field(default_factory=dict)
    wait: bool = True


class StepRequest(FlowRef):
    mode: ExecutionMode = ExecutionMode.SIMULATE
    run_id: Optional[str] = None


class RefineRequest(FlowRef):
    feedback: str


class ExplainRequest(FlowRef):
    level: str = "user"


class RunTestcasesRequest(FlowRef):
    mode: ExecutionMode = ExecutionMode.SIMULATE


class FlowResponse(BaseModel):
    flow: dict[str, Any]


def _invalid(exc: InvalidFlowError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"message": "FlowScript failed validation", "errors": [e.to_dict() for e in exc.errors]},
    )


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_flow_router(get_service: Any) -> APIRouter:
    """Create the v2 flow API router.

    Parameters
    ----------
    get_service:
        A callable ``(project_dir_param: str | None) -> FlowService`` that
        resolves the service for the current request's project directory.
    """
    router = APIRouter(prefix="/api/v2/flows", tags=["flows-v2"])
    pending: set[asyncio.Task[Any]] = set()

    def _resolve_flow(service: FlowService, body: FlowRef) -> FlowScript:
        if body.flow is not None:
            return body.flow
        if body.project_id:
            flow = service.get_flow(body.project_id)
            if flow is None:
                raise HTTPException(status_code=404, detail=f"No flow stored for project {body.project_id}")
            return flow
        raise HTTPException(status_code=400, detail="Provide either 'flow' or 'project_id'")

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    @router.post("/validate", response_model=ValidateResponse)
    async def validate_flow(
        body: ValidateRequest,
        project_dir: Optional[str] = Query(None),
    ) -> ValidateResponse:
        service = get_service(project_dir)
        errors = service.validate(body.flow)
        order = [] if errors else service.order(body.flow)
        return ValidateResponse(valid=not errors, errors=[e.to_dict() for e in errors], order=order)

    @router.post("/generate", response_model=FlowResponse)
    async def generate_flow(
        body: GenerateRequest,
        project_dir: Optional[str] = Query(None),
    ) -> FlowResponse:
        service = get_service(project_dir)
        flow = await service.generate(body.text, body.project_id)
        return FlowResponse(flow=flow.to_dict())

    @router.post("/refine", response_model=FlowResponse)
    async def refine_flow(
        body: RefineRequest,
        project_dir: Optional[str] = Query(None),
    ) -> FlowResponse:
        service = get_service(project_dir)
        flow = _resolve_flow(service, body)
        try:
            refined = await service.refine(flow, body.feedback, project_id=body.project_id)
        except GenerationError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return FlowResponse(flow=refined.to_dict())

    @router.post("/explain/{step_id}")
    async def explain_step(
        step_id: str,
        body: ExplainRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        flow = _resolve_flow(service, body)
        try:
            text = await service.explain(flow, step_id, body.level)
        except StepNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"step_id": step_id, "level": body.level, "explanation": text}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @router.post("/execute")
    async def execute_flow(
        body: ExecuteRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        flow = _resolve_flow(service, body)
        errors = service.validate(flow)
        if errors:
            raise _invalid(InvalidFlowError(errors))

        if body.wait:
            runtime = await service.execute(flow, body.mode, variables=body.variables)
            return {"runtime": runtime.to_dict()}

        run_id = _generate_run_id()
        task = asyncio.create_task(
            service.engine.execute(flow, body.mode, variables=body.variables, run_id=run_id)
        )
        pending.add(task)
        task.add_done_callback(pending.discard)
        # Let the engine register the run before the id is handed out
        await asyncio.sleep(0)
        logger.info("Started background run {} for flow {}", run_id, flow.id)
        return {"runId": run_id, "status": "running"}

    @router.post("/step/{step_id}")
    async def execute_step(
        step_id: str,
        body: StepRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        flow = _resolve_flow(service, body)
        try:
            trace = await service.execute_step(flow, step_id, body.mode, run_id=body.run_id)
        except StepNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RunNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except PreconditionUnmet as e:
            raise HTTPException(status_code=409, detail={"message": str(e), "unmet": e.unmet})
        except RunConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"trace": trace.to_dict()}

    @router.post("/testcases")
    async def run_testcases(
        body: RunTestcasesRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        flow = _resolve_flow(service, body)
        try:
            results = await service.run_testcases(flow, body.mode)
        except InvalidFlowError as e:
            raise _invalid(e)
        return {
            "results": [r.to_dict() for r in results],
            "passed": sum(1 for r in results if r.passed),
            "total": len(results),
        }

    @router.get("/runs/{run_id}")
    async def get_run(
        run_id: str,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            runtime = service.get_runtime(run_id)
        except RunNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"runtime": runtime.to_dict()}

    @router.post("/runs/{run_id}/cancel")
    async def cancel_run(
        run_id: str,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        if not service.recorder.has_run(run_id):
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        return {"runId": run_id, "cancelled": service.cancel(run_id)}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @router.get("/projects/{project_id}", response_model=FlowResponse)
    async def get_project_flow(
        project_id: str,
        project_dir: Optional[str] = Query(None),
    ) -> FlowResponse:
        service = get_service(project_dir)
        flow = service.get_flow(project_id)
        if flow is None:
            raise HTTPException(status_code=404, detail=f"No flow stored for project {project_id}")
        return FlowResponse(flow=flow.to_dict())

    @router.put("/projects/{project_id}", response_model=FlowResponse)
    async def put_project_flow(
        project_id: str,
        body: FlowScript,
        project_dir: Optional[str] = Query(None),
    ) -> FlowResponse:
        service = get_service(project_dir)
        try:
            saved = service.save_flow(project_id, body)
        except InvalidFlowError as e:
            raise _invalid(e)
        return FlowResponse(flow=saved.to_dict())

    return router
