"""
RepoSync HTTP trigger service (FastAPI).

Exposes:
  POST /sync                        run one sync and return its RunResult
  GET  /health                      liveness plus checkpoint store check
  GET  /projects                    configured projects
  GET  /projects/{id}/checkpoints   checkpoints of one project

POST /sync answers 409 when the project is already syncing, 404 when the
project is unknown and 500 for any other fatal failure. The body is the
RunResult in every case.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, List, Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from .config import Config
from .engine import SyncEngine
from .factory import Components, build_components
from .interfaces import CheckpointStore, ProjectCatalog
from .models import Project, RunPhase, RunResult
from .utils import check_checkpoint_db_health, setup_logging

STATUS_BY_FATAL_ERROR = {
    "RunLockError": 409,
    "ProjectNotFoundError": 404,
}


class ProjectModel(BaseModel):
    id: str
    name: str
    organization: str
    filter_keyword: str
    namespace: str
    enabled: bool
    allowed_extensions: List[str]
    exclude_patterns: List[str]
    diff_strategy: str

    @classmethod
    def from_project(cls, project: Project) -> "ProjectModel":
        return cls(
            id=project.id,
            name=project.name,
            organization=project.organization,
            filter_keyword=project.filter_keyword,
            namespace=project.namespace,
            enabled=project.enabled,
            allowed_extensions=list(project.allowed_extensions),
            exclude_patterns=list(project.exclude_patterns),
            diff_strategy=project.diff_strategy.value,
        )


def status_code_for(result: RunResult) -> int:
    """HTTP status for a finished run."""
    if result.phase != RunPhase.FAILED:
        return 200
    return STATUS_BY_FATAL_ERROR.get(result.fatal_error_type, 500)


def create_app(
    engine: SyncEngine,
    catalog: ProjectCatalog,
    checkpoints: CheckpointStore,
    checkpoint_db_path: Optional[str] = None,
    components: Optional[Components] = None,
) -> FastAPI:
    """
    Build the FastAPI app around a wired engine.

    Args:
        engine: Engine that runs syncs.
        catalog: Project definitions.
        checkpoints: Checkpoint store for the read endpoints.
        checkpoint_db_path: SQLite path checked by /health.
        components: Resources to close on shutdown, when the app owns them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("RepoSync service starting up...")
        yield
        if components:
            components.close()
        logger.info("RepoSync service shutting down.")

    app = FastAPI(
        title="RepoSync",
        description="Keeps vector index namespaces in sync with GitHub repositories",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.post("/sync")
    def sync(
        project_id: str = Query(..., description="Project to sync"),
        incremental: bool = Query(True, description="Only process files changed since the last sync"),
    ):
        # Blocking call; plain def handlers run in the threadpool
        result = engine.run_sync(project_id, incremental)
        return JSONResponse(status_code=status_code_for(result), content=result.to_dict())

    @app.get("/health")
    def health() -> dict[str, Any]:
        checks = []
        if checkpoint_db_path:
            checks.append(check_checkpoint_db_health(checkpoint_db_path).to_dict())
        healthy = all(c["status"] == "healthy" for c in checks)
        return {"status": "ok" if healthy else "degraded", "checks": checks}

    @app.get("/projects", response_model=List[ProjectModel])
    def list_projects():
        return [ProjectModel.from_project(p) for p in catalog.get_enabled_projects()]

    @app.get("/projects/{project_id}/checkpoints")
    def list_checkpoints(project_id: str):
        if catalog.get_project(project_id) is None:
            return JSONResponse(status_code=404, content={"error": f"Project not found: {project_id}"})
        return [entry.to_dict() for entry in checkpoints.list_for_project(project_id)]

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def create_app_from_config(config: Config) -> FastAPI:
    components = build_components(config)
    return create_app(
        engine=components.engine,
        catalog=config,
        checkpoints=components.checkpoints,
        checkpoint_db_path=config.checkpoints.path,
        components=components,
    )


def main(config_path: Optional[str] = None) -> None:
    config = Config.load(config_path)
    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    app = create_app_from_config(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
