"""Pipeline driving one job through ANALYZE, PLAN, GENERATE, VALIDATE and DEPLOY.

Steps run strictly in order. Each step moves the job to its in-flight status,
does its work, then appends exactly one StepRecord. The first failing step
marks the job FAILED and nothing after it runs.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from . import heuristics
from .config import AppSettings, DeployConfig
from .github import GitHubPublisher
from .job_store import JobNotFoundError, JobRepository, utc_now
from .report import build_report
from .schemas import (
    START_CONFLICT_STATUSES,
    STEP_STATUS,
    AnalysisResult,
    DeployResult,
    GeneratedProject,
    Job,
    JobStatus,
    SourceUnit,
    StepName,
    StepRecord,
    StepStatus,
    TransformationPlan,
    ValidationReport,
)
from .tool_registry import ToolOrchestrator
from .toolchain import Toolchain, count_code_lines

logger = logging.getLogger("uvicorn.error")

ANALYZE_METHOD = "analyzeCode"
PLAN_METHOD = "planTransformation"
GENERATE_METHOD = "generateCDSModels"
CANCELLED = "cancelled"

# Tool servers written in JS answer in camelCase.
_ANALYSIS_ALIASES = {"businessLogic": "business_logic", "frsDocument": "report"}
_PLAN_ALIASES = {"businessLogic": "business_logic"}


class WorkflowConflictError(Exception):
    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is {status} and cannot be started")


class NoSourceUnitsError(ValueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} has no source units to transform")


class StepFailedError(Exception):
    def __init__(self, step: StepName, message: str):
        self.step = step
        self.message = message
        super().__init__(f"{step.value} failed: {message}")


@dataclass
class WorkflowResult:
    job_id: str
    status: JobStatus
    run: int = 1
    analysis: Optional[AnalysisResult] = None
    plan: Optional[TransformationPlan] = None
    project: Optional[GeneratedProject] = None
    validation: Optional[ValidationReport] = None
    deploy: Optional[DeployResult] = None
    error: Optional[str] = None
    steps: List[StepRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "run": self.run,
            "error": self.error,
            "project_path": self.project.path if self.project else None,
            "files": self.project.file_paths() if self.project else [],
            "quality_score": self.validation.score if self.validation else None,
            "github_url": self.deploy.html_url if self.deploy else None,
            "steps": [record.model_dump(mode="json") for record in self.steps],
        }


def combine_sources(units: List[SourceUnit]) -> str:
    return "\n\n".join(f"* {unit.name} ({unit.kind})\n{unit.content}" for unit in units)


def _renamed(data: Any, aliases: Dict[str, str]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")
    return {aliases.get(key, key): value for key, value in data.items()}


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, StepFailedError):
        return exc.message
    return str(exc) or exc.__class__.__name__


PublisherFactory = Callable[[DeployConfig], GitHubPublisher]
ReportBuilder = Callable[..., str]


class WorkflowEngine:
    def __init__(
        self,
        repository: JobRepository,
        orchestrator: ToolOrchestrator,
        toolchain: Toolchain,
        deploy_config: DeployConfig,
        *,
        analyzer_server: Optional[str] = None,
        planner_server: Optional[str] = None,
        generator_server: Optional[str] = None,
        publisher_factory: Optional[PublisherFactory] = None,
        report_builder: ReportBuilder = build_report,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.toolchain = toolchain
        self.deploy_config = deploy_config
        self.analyzer_server = analyzer_server
        self.planner_server = planner_server
        self.generator_server = generator_server
        self.publisher_factory = publisher_factory or GitHubPublisher
        self.report_builder = report_builder
        self._active: Set[str] = set()
        self._guard = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        repository: JobRepository,
        orchestrator: ToolOrchestrator,
        *,
        publisher_factory: Optional[PublisherFactory] = None,
    ) -> "WorkflowEngine":
        return cls(
            repository,
            orchestrator,
            Toolchain(settings.toolchain, settings.work_dir),
            settings.deploy,
            analyzer_server=settings.orchestrator.analyzer_server,
            planner_server=settings.orchestrator.planner_server,
            generator_server=settings.orchestrator.generator_server,
            publisher_factory=publisher_factory,
        )

    def is_running(self, job_id: str) -> bool:
        return job_id in self._active

    async def claim(self, job_id: str) -> Tuple[Job, str]:
        """Check a start request and reserve the job for one run.

        The caller must follow up with ``run()``, which releases the job.
        """
        async with self._guard:
            job = await self.repository.find(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job_id in self._active:
                raise WorkflowConflictError(job_id, job.status.value)
            if job.status in START_CONFLICT_STATUSES:
                raise WorkflowConflictError(job_id, job.status.value)
            units = await self.repository.list_source_units(job_id)
            if not units:
                raise NoSourceUnitsError(job_id)
            self._active.add(job_id)
        original_loc = sum(unit.size or len(unit.content.splitlines()) for unit in units)
        try:
            job = await self.repository.update(
                job_id,
                {
                    "status": JobStatus.ANALYZING,
                    "original_loc": original_loc,
                    "error": None,
                    "runs": job.runs + 1,
                },
            )
        except Exception:
            self._active.discard(job_id)
            raise
        return job, combine_sources(units)

    async def start(self, job_id: str) -> WorkflowResult:
        job, source = await self.claim(job_id)
        return await self.run(job, source)

    async def run(self, job: Job, source: str) -> WorkflowResult:
        result = WorkflowResult(job_id=job.id, status=job.status, run=max(job.runs, 1))
        started = time.monotonic()
        try:
            result.analysis = await self._run_step(
                job.id, StepName.ANALYZE, lambda: self.step_analyze(job.id, source), result
            )
            result.plan = await self._run_step(
                job.id, StepName.PLAN, lambda: self.step_plan(job.id, result.analysis), result
            )
            result.project = await self._run_step(
                job.id, StepName.GENERATE, lambda: self.step_generate(job, result.analysis, result.plan), result
            )
            result.validation = await self._run_step(
                job.id, StepName.VALIDATE, lambda: self.step_validate(job.id, result.project), result
            )
            result.deploy = await self._run_step(
                job.id, StepName.DEPLOY, lambda: self.step_deploy(job, result.project), result
            )
            await self.repository.update(job.id, {"status": JobStatus.COMPLETED})
            result.status = JobStatus.COMPLETED
            logger.info("Job %s completed in %.1fs", job.id, time.monotonic() - started)
        except StepFailedError as exc:
            result.status = JobStatus.FAILED
            result.error = str(exc)
        finally:
            self._active.discard(job.id)
        return result

    async def _run_step(
        self,
        job_id: str,
        step: StepName,
        work: Callable[[], Awaitable[Tuple[Any, Dict[str, Any]]]],
        result: WorkflowResult,
    ) -> Any:
        started_at = utc_now()
        started = time.monotonic()
        try:
            await self.repository.update(job_id, {"status": STEP_STATUS[step]})
            value, details = await work()
        except asyncio.CancelledError:
            logger.warning("Job %s cancelled during %s", job_id, step.value)
            # The record must land even if the task is cancelled again while writing it.
            await asyncio.shield(self._record_failure(job_id, step, CANCELLED, started, started_at, result))
            raise
        except Exception as exc:
            message = _error_text(exc)
            logger.warning("Job %s step %s failed: %s", job_id, step.value, message)
            await self._record_failure(job_id, step, message, started, started_at, result)
            raise StepFailedError(step, message) from exc
        record = StepRecord(
            job_id=job_id,
            run=result.run,
            step=step,
            status=StepStatus.SUCCESS,
            duration_ms=int((time.monotonic() - started) * 1000),
            started_at=started_at,
            finished_at=utc_now(),
            details=details,
        )
        result.steps.append(await self.repository.append_step_record(job_id, record))
        return value

    async def _record_failure(
        self, job_id: str, step: StepName, message: str, started: float, started_at: str, result: WorkflowResult
    ) -> None:
        record = StepRecord(
            job_id=job_id,
            run=result.run,
            step=step,
            status=StepStatus.FAILED,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=message,
            started_at=started_at,
            finished_at=utc_now(),
        )
        result.steps.append(await self.repository.append_step_record(job_id, record))
        await self.repository.update(job_id, {"status": JobStatus.FAILED, "error": f"{step.value}: {message}"})

    async def _call_tool(self, step: StepName, server: str, method: str, params: Dict[str, Any], job_id: str) -> Any:
        response = await self.orchestrator.call_tool(server, method, params, {"job_id": job_id, "step": step.value})
        if not response.success:
            error = response.error
            code = error.code.value if error else "REQUEST_FAILED"
            raise StepFailedError(step, f"{server}.{method} {code}: {error.message if error else 'unknown error'}")
        return response.data

    async def step_analyze(self, job_id: str, source: str) -> Tuple[AnalysisResult, Dict[str, Any]]:
        if self.orchestrator.has_server(self.analyzer_server):
            data = await self._call_tool(StepName.ANALYZE, self.analyzer_server, ANALYZE_METHOD, {"code": source}, job_id)
            analysis = AnalysisResult.model_validate(_renamed(data, _ANALYSIS_ALIASES))
            origin = self.analyzer_server
        else:
            analysis = heuristics.analyze_source(source)
            origin = "local-rules"

        await self.repository.update(job_id, {"module": analysis.module, "complexity_score": analysis.complexity})
        if not analysis.report:
            analysis.report = await self._build_report(job_id, analysis)
        details = {
            "source": origin,
            "tables": len(analysis.tables),
            "dependencies": len(analysis.dependencies),
            "report": analysis.report is not None,
        }
        return analysis, details

    async def _build_report(self, job_id: str, analysis: AnalysisResult) -> Optional[str]:
        try:
            job = await self.repository.find(job_id)
            if job is None:
                logger.warning("Job %s not found, skipping report generation", job_id)
                return None
            return self.report_builder(analysis, job)
        except Exception as exc:
            logger.warning("Job %s report generation failed, continuing without it: %s", job_id, exc)
            return None

    async def step_plan(self, job_id: str, analysis: AnalysisResult) -> Tuple[TransformationPlan, Dict[str, Any]]:
        if self.orchestrator.has_server(self.planner_server):
            data = await self._call_tool(
                StepName.PLAN, self.planner_server, PLAN_METHOD, {"analysis": analysis.model_dump()}, job_id
            )
            plan = TransformationPlan.model_validate(_renamed(data, _PLAN_ALIASES))
        else:
            plan = heuristics.plan_transformation(analysis)
        return plan, {"entities": len(plan.entities), "services": len(plan.services)}

    async def step_generate(
        self, job: Job, analysis: AnalysisResult, plan: TransformationPlan
    ) -> Tuple[GeneratedProject, Dict[str, Any]]:
        extra_files: Dict[str, str] = {}
        if self.orchestrator.has_server(self.generator_server):
            data = await self._call_tool(
                StepName.GENERATE,
                self.generator_server,
                GENERATE_METHOD,
                {"entities": [entity.model_dump() for entity in plan.entities], "module": analysis.module},
                job.id,
            )
            for item in (data or {}).get("files") or []:
                extra_files[str(item["path"])] = str(item["content"])

        project = await self.toolchain.generate(job.name, analysis, plan, extra_files=extra_files)
        current = await self.repository.find(job.id)
        original_loc = current.original_loc if current else job.original_loc
        transformed_loc = count_code_lines(project)
        await self.repository.update(
            job.id,
            {
                "transformed_loc": transformed_loc,
                "loc_saved": max(original_loc - transformed_loc, 0),
                "project_path": project.path,
            },
        )
        return project, {"path": project.path, "files": len(project.files)}

    async def step_validate(self, job_id: str, project: GeneratedProject) -> Tuple[ValidationReport, Dict[str, Any]]:
        report = await self.toolchain.validate(project)
        await self.repository.update(job_id, {"quality_score": float(report.score)})
        if not report.passed:
            logger.warning(
                "Job %s validation reported %s diagnostic(s); continuing", job_id, len(report.diagnostics)
            )
        return report, {"passed": report.passed, "score": report.score, "diagnostics": report.diagnostics}

    async def step_deploy(self, job: Job, project: GeneratedProject) -> Tuple[DeployResult, Dict[str, Any]]:
        repo_name = Path(project.path).name
        description = job.description or f"Resurrected from {job.name}"
        async with self.publisher_factory(self.deploy_config) as publisher:
            deployed = await publisher.publish(project, repo_name, description)
        await self.repository.update(job.id, {"github_url": deployed.html_url})
        return deployed, {"html_url": deployed.html_url, "files_uploaded": deployed.files_uploaded}
