import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import ValidationError

from .config import CONFIG_PATH, SECRET_MASK, AppSettings, load_settings, merge_nested, save_settings
from .job_store import JobNotFoundError, SqliteJobRepository
from .schemas import Job, JobCreateRequest, SourceUnit
from .tool_registry import ToolOrchestrator, UnknownServerError
from .workflow import NoSourceUnitsError, PublisherFactory, WorkflowConflictError, WorkflowEngine

logger = logging.getLogger("uvicorn.error")

router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_repository(request: Request) -> SqliteJobRepository:
    return request.app.state.repository


def get_orchestrator(request: Request) -> ToolOrchestrator:
    return request.app.state.orchestrator


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


@router.get("/health")
async def health(orchestrator: ToolOrchestrator = Depends(get_orchestrator)):
    return {"ok": True, "tool_servers": orchestrator.available_servers()}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    engine: WorkflowEngine = Depends(get_engine),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object.")
    deploy = body.get("deploy")
    if isinstance(deploy, dict) and deploy.get("github_token") == SECRET_MASK:
        # The masked value from GET /settings means "keep the current token".
        deploy.pop("github_token")
    try:
        new_settings = AppSettings(**merge_nested(settings.model_dump(), body))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=request.app.state.config_path)
    request.app.state.settings = new_settings
    # Tool servers and the database are bound at startup; deploy and toolchain settings apply to the next run.
    engine.deploy_config = new_settings.deploy
    engine.toolchain.config = new_settings.toolchain
    return {"settings": new_settings.to_safe_dict()}


@router.post("/api/jobs", status_code=201)
async def create_job(payload: JobCreateRequest, repository: SqliteJobRepository = Depends(get_repository)):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Name is required.")
    job_id = str(uuid.uuid4())
    module = payload.module or next((s.module for s in payload.sources if s.module != "CUSTOM"), "CUSTOM")
    job = await repository.create(
        Job(
            id=job_id,
            name=payload.name.strip(),
            description=payload.description,
            module=module,
            original_loc=sum(len(s.content.splitlines()) for s in payload.sources),
        )
    )
    for source in payload.sources:
        await repository.add_source_unit(
            SourceUnit(
                id=str(uuid.uuid4()),
                job_id=job_id,
                name=source.name,
                kind=source.kind,
                module=source.module,
                content=source.content,
                size=len(source.content.splitlines()),
                complexity=source.complexity,
            )
        )
    return {"job": job.model_dump(mode="json"), "source_units": len(payload.sources)}


@router.get("/api/jobs")
async def list_jobs(limit: int = 50, repository: SqliteJobRepository = Depends(get_repository)):
    jobs = await repository.list_jobs(limit=limit)
    return {"jobs": [job.model_dump(mode="json") for job in jobs]}


@router.get("/api/jobs/{job_id}")
async def get_job(
    job_id: str,
    repository: SqliteJobRepository = Depends(get_repository),
    engine: WorkflowEngine = Depends(get_engine),
):
    job = await repository.find(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    steps = await repository.list_step_records(job_id)
    return {
        "job": job.model_dump(mode="json"),
        "steps": [record.model_dump(mode="json") for record in steps],
        "running": engine.is_running(job_id),
    }


@router.post("/api/jobs/{job_id}/start", status_code=202)
async def start_job(
    job_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
):
    try:
        job, source = await engine.claim(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except WorkflowConflictError as exc:
        raise HTTPException(status_code=409, detail=f"Job is already {exc.status.lower()}")
    except NoSourceUnitsError:
        raise HTTPException(status_code=400, detail="Job has no source units to transform")

    async def run_and_cleanup() -> None:
        try:
            result = await engine.run(job, source)
            logger.info("Job %s finished with status %s", job_id, result.status.value)
        except Exception as exc:
            logger.exception("Job %s crashed outside a pipeline step: %s", job_id, exc)
        finally:
            run_tasks.pop(job_id, None)

    run_tasks[job_id] = asyncio.create_task(run_and_cleanup())
    return {"job_id": job_id, "status": job.status.value, "message": "Resurrection workflow started"}


@router.get("/api/tools/health")
async def tools_health(orchestrator: ToolOrchestrator = Depends(get_orchestrator)):
    return {
        "servers": {name: health.to_dict() for name, health in orchestrator.server_health.items()},
        "stats": orchestrator.get_stats(),
    }


@router.post("/api/tools/{name}/reconnect")
async def reconnect_tool(name: str, orchestrator: ToolOrchestrator = Depends(get_orchestrator)):
    try:
        ok = await orchestrator.reconnect_server(name)
    except UnknownServerError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"ok": ok, "health": orchestrator.server_health[name].to_dict()}


def create_app(
    settings: AppSettings,
    *,
    repository: Optional[SqliteJobRepository] = None,
    orchestrator: Optional[ToolOrchestrator] = None,
    publisher_factory: Optional[PublisherFactory] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.repository.init()
        Path(app.state.settings.work_dir).mkdir(parents=True, exist_ok=True)
        failures = await app.state.orchestrator.start()
        for name, error in failures.items():
            logger.warning("Tool server %s unavailable at startup: %s", name, error.message)
        try:
            yield
        finally:
            tasks = list(app.state.run_tasks.values())
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await app.state.orchestrator.stop()

    app = FastAPI(title="Resurrector", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository or SqliteJobRepository(settings.database_path)
    app.state.orchestrator = orchestrator or ToolOrchestrator(
        settings.tool_servers,
        auto_connect=settings.orchestrator.auto_connect,
        health_check_interval_ms=settings.orchestrator.health_check_interval_ms,
    )
    app.state.engine = WorkflowEngine.from_settings(
        settings,
        app.state.repository,
        app.state.orchestrator,
        publisher_factory=publisher_factory,
    )
    app.state.run_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("RESURRECTOR_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "resurrector.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
