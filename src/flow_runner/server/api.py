"""FastAPI application for the flow runner."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..service import FlowService
from .flow_api import create_flow_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    service: Optional[FlowService] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.
        service: Pre-built service used for requests without ``project_dir``.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Flow Runner",
        description="FlowScript workflow authoring and execution API",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.services = {}

    def _get_service(project_dir_param: Optional[str] = None) -> FlowService:
        """Resolve (and cache) the service for a project directory."""
        if project_dir_param:
            key: Optional[Path] = Path(project_dir_param).resolve()
        elif service is not None:
            return service
        elif app.state.default_project_dir:
            key = Path(app.state.default_project_dir).resolve()
        else:
            key = None
        cached = app.state.services.get(key)
        if cached is None:
            cached = FlowService(key)
            app.state.services[key] = cached
        return cached

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Flow Runner",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/api/activity")
    async def recent_activity(limit: int = 20, project_dir: Optional[str] = None):
        return {"activity": _get_service(project_dir).activity.recent(limit)}

    app.include_router(create_flow_router(_get_service))
    return app
