from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    UPLOADED = "UPLOADED"
    ANALYZING = "ANALYZING"
    PLANNING = "PLANNING"
    GENERATING = "GENERATING"
    VALIDATING = "VALIDATING"
    DEPLOYING = "DEPLOYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


IN_FLIGHT_STATUSES = {
    JobStatus.ANALYZING,
    JobStatus.PLANNING,
    JobStatus.GENERATING,
    JobStatus.VALIDATING,
    JobStatus.DEPLOYING,
}
# A start request for a job in one of these states is a conflict.
START_CONFLICT_STATUSES = IN_FLIGHT_STATUSES | {JobStatus.COMPLETED}


class StepName(str, Enum):
    ANALYZE = "ANALYZE"
    PLAN = "PLAN"
    GENERATE = "GENERATE"
    VALIDATE = "VALIDATE"
    DEPLOY = "DEPLOY"


PIPELINE_STEPS = [StepName.ANALYZE, StepName.PLAN, StepName.GENERATE, StepName.VALIDATE, StepName.DEPLOY]

STEP_STATUS = {
    StepName.ANALYZE: JobStatus.ANALYZING,
    StepName.PLAN: JobStatus.PLANNING,
    StepName.GENERATE: JobStatus.GENERATING,
    StepName.VALIDATE: JobStatus.VALIDATING,
    StepName.DEPLOY: JobStatus.DEPLOYING,
}


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Job(BaseModel):
    id: str
    name: str
    description: str = ""
    status: JobStatus = JobStatus.UPLOADED
    module: str = "CUSTOM"
    complexity_score: Optional[int] = None
    original_loc: int = 0
    transformed_loc: int = 0
    loc_saved: int = 0
    quality_score: Optional[float] = None
    github_url: Optional[str] = None
    project_path: Optional[str] = None
    error: Optional[str] = None
    # Number of times the pipeline has been started for this job.
    runs: int = 0
    created_at: str = ""
    updated_at: str = ""


class SourceUnit(BaseModel):
    id: str
    job_id: str
    name: str
    kind: str = "PROGRAM"
    module: str = "CUSTOM"
    content: str
    size: int = 0
    complexity: Optional[int] = None

    model_config = {"frozen": True}


class StepRecord(BaseModel):
    id: Optional[int] = None
    job_id: str
    run: int = 1
    step: StepName
    status: StepStatus
    duration_ms: int = 0
    error: Optional[str] = None
    started_at: str
    finished_at: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AnalysisResult(BaseModel):
    business_logic: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    tables: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)
    module: str = "CUSTOM"
    complexity: int = 1
    documentation: str = ""
    report: Optional[str] = None

    model_config = {"extra": "allow"}


class EntitySpec(BaseModel):
    name: str
    fields: List[str] = Field(default_factory=list)
    source_table: Optional[str] = None


class ServiceSpec(BaseModel):
    name: str
    operations: List[str] = Field(default_factory=list)


class TransformationPlan(BaseModel):
    entities: List[EntitySpec] = Field(default_factory=list)
    services: List[ServiceSpec] = Field(default_factory=list)
    business_logic: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class GeneratedFile(BaseModel):
    path: str
    content: str


class GeneratedProject(BaseModel):
    path: str
    name: str = ""
    files: List[GeneratedFile] = Field(default_factory=list)

    def file_paths(self) -> List[str]:
        return [f.path for f in self.files]

    def get(self, path: str) -> Optional[GeneratedFile]:
        for item in self.files:
            if item.path == path:
                return item
        return None


class QualityCheck(BaseModel):
    name: str
    passed: bool
    severity: str = "error"
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    passed: bool
    score: int = 0
    checks: List[QualityCheck] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    build_exit_code: Optional[int] = None


class DeployResult(BaseModel):
    repo_name: str
    html_url: str
    clone_url: str
    files_uploaded: int = 0


class SourceUnitIn(BaseModel):
    name: str
    kind: str = "PROGRAM"
    module: str = "CUSTOM"
    content: str
    complexity: Optional[int] = None


class JobCreateRequest(BaseModel):
    name: str
    description: str = ""
    module: Optional[str] = None
    sources: List[SourceUnitIn] = Field(default_factory=list)
