import asyncio
from typing import Any, Dict, List, Optional, Tuple

from resurrector.config import ToolServerConfig
from resurrector.job_store import JobNotFoundError, utc_now
from resurrector.schemas import DeployResult, GeneratedProject, Job, SourceUnit, StepRecord


class FakeToolServer:
    """Scripted tool server shared by every transport it hands out.

    ``responses`` maps a method name to a list of outcomes. Outcomes are
    consumed in order and the last one repeats; an exception instance is
    raised instead of returned. Unscripted methods answer ``{"ok": True}``.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, List[Any]]] = None,
        open_errors: int = 0,
        close_error: Optional[Exception] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.responses = responses or {}
        self.open_errors = open_errors
        self.close_error = close_error
        self.delay_seconds = delay_seconds
        self.opened = 0
        self.closed = 0
        self.calls: List[Tuple[str, Dict[str, Any], Dict[str, Any]]] = []

    def call_count(self, method: str) -> int:
        return sum(1 for name, _, _ in self.calls if name == method)

    def transport_factory(self, config: ToolServerConfig) -> "FakeTransport":
        return FakeTransport(self, config)


class FakeTransport:
    def __init__(self, server: FakeToolServer, config: ToolServerConfig) -> None:
        self.server = server
        self.config = config
        self.is_open = False

    async def open(self) -> None:
        self.server.opened += 1
        if self.server.open_errors > 0:
            self.server.open_errors -= 1
            raise OSError(f"cannot spawn {self.config.command}")
        self.is_open = True

    async def request(self, method: str, params: Dict[str, Any], context: Dict[str, Any]) -> Any:
        self.server.calls.append((method, params, context))
        if self.server.delay_seconds:
            await asyncio.sleep(self.server.delay_seconds)
        script = self.server.responses.get(method)
        if not script:
            return {"ok": True}
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.server.closed += 1
        self.is_open = False
        if self.server.close_error is not None:
            raise self.server.close_error


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class InMemoryJobRepository:
    def __init__(self) -> None:
        self.jobs: Dict[str, Job] = {}
        self.units: Dict[str, List[SourceUnit]] = {}
        self.records: Dict[str, List[StepRecord]] = {}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    async def init(self) -> None:
        return None

    async def create(self, job: Job) -> Job:
        now = utc_now()
        job = job.model_copy(update={"created_at": now, "updated_at": now})
        self.jobs[job.id] = job
        return job

    async def add_source_unit(self, unit: SourceUnit) -> SourceUnit:
        self.units.setdefault(unit.job_id, []).append(unit)
        return unit

    async def find(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def update(self, job_id: str, fields: Dict[str, Any]) -> Job:
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        self.updates.append((job_id, dict(fields)))
        job = self.jobs[job_id].model_copy(update={**fields, "updated_at": utc_now()})
        self.jobs[job_id] = job
        return job.model_copy()

    async def append_step_record(self, job_id: str, record: StepRecord) -> StepRecord:
        bucket = self.records.setdefault(job_id, [])
        stored = record.model_copy(update={"id": len(bucket) + 1, "job_id": job_id})
        bucket.append(stored)
        return stored

    async def list_source_units(self, job_id: str) -> List[SourceUnit]:
        return list(self.units.get(job_id, []))

    async def list_step_records(self, job_id: str) -> List[StepRecord]:
        return list(self.records.get(job_id, []))

    async def list_jobs(self, limit: int = 100) -> List[Job]:
        return list(self.jobs.values())[:limit]


class FakePublisher:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.published: List[Dict[str, Any]] = []
        self.closed = 0

    def factory(self, config: Any) -> "FakePublisher":
        self.config = config
        return self

    async def __aenter__(self) -> "FakePublisher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed += 1

    async def publish(self, project: GeneratedProject, repo_name: str, description: str = "") -> DeployResult:
        self.published.append({"project": project, "repo_name": repo_name, "description": description})
        if self.error is not None:
            raise self.error
        return DeployResult(
            repo_name=repo_name,
            html_url=f"https://github.com/octo/{repo_name}",
            clone_url=f"https://github.com/octo/{repo_name}.git",
            files_uploaded=len(project.files),
        )
