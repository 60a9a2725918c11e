import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiosqlite

from .schemas import Job, SourceUnit, StepRecord

JOB_COLUMNS = (
    "id",
    "name",
    "description",
    "status",
    "module",
    "complexity_score",
    "original_loc",
    "transformed_loc",
    "loc_saved",
    "quality_score",
    "github_url",
    "project_path",
    "error",
    "runs",
    "created_at",
    "updated_at",
)
_UPDATABLE = set(JOB_COLUMNS) - {"id", "created_at"}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobRepository(Protocol):
    """What the workflow engine needs from job persistence."""

    async def find(self, job_id: str) -> Optional[Job]: ...

    async def update(self, job_id: str, fields: Dict[str, Any]) -> Job: ...

    async def append_step_record(self, job_id: str, record: StepRecord) -> StepRecord: ...

    async def list_source_units(self, job_id: str) -> List[SourceUnit]: ...


class SqliteJobRepository:
    """Jobs, their source units and the step audit trail in one SQLite file."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS jobs(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    status TEXT,
                    module TEXT,
                    complexity_score INTEGER,
                    original_loc INTEGER DEFAULT 0,
                    transformed_loc INTEGER DEFAULT 0,
                    loc_saved INTEGER DEFAULT 0,
                    quality_score REAL,
                    github_url TEXT,
                    project_path TEXT,
                    error TEXT,
                    runs INTEGER DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS source_units(
                    id TEXT PRIMARY KEY,
                    job_id TEXT,
                    name TEXT,
                    kind TEXT,
                    module TEXT,
                    content TEXT,
                    size INTEGER,
                    complexity INTEGER,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS step_records(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    run INTEGER DEFAULT 1,
                    step TEXT,
                    status TEXT,
                    duration_ms INTEGER,
                    error TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    details_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_source_units_job ON source_units(job_id);
                CREATE INDEX IF NOT EXISTS idx_step_records_job ON step_records(job_id, id);
                """
            )
            await db.commit()

    async def _fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def create(self, job: Job) -> Job:
        now = utc_now()
        job = job.model_copy(update={"created_at": job.created_at or now, "updated_at": now})
        data = job.model_dump()
        placeholders = ",".join("?" for _ in JOB_COLUMNS)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                f"INSERT INTO jobs({','.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                tuple(_column_value(data[col]) for col in JOB_COLUMNS),
            )
            await db.commit()
        return job

    async def find(self, job_id: str) -> Optional[Job]:
        rows = await self._fetchall("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if not rows:
            return None
        return Job(**{key: rows[0][key] for key in rows[0].keys()})

    async def list_jobs(self, limit: int = 100) -> List[Job]:
        rows = await self._fetchall("SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,))
        return [Job(**{key: row[key] for key in row.keys()}) for row in rows]

    async def update(self, job_id: str, fields: Dict[str, Any]) -> Job:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        updates = {**fields, "updated_at": utc_now()}
        assignments = ", ".join(f"{key} = ?" for key in updates)
        params = tuple(_column_value(value) for value in updates.values()) + (job_id,)
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(f"UPDATE jobs SET {assignments} WHERE id = ?", params)
            changed = cursor.rowcount
            await db.commit()
        if not changed:
            raise JobNotFoundError(job_id)
        job = await self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def add_source_unit(self, unit: SourceUnit) -> SourceUnit:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO source_units(id, job_id, name, kind, module, content, size, complexity, created_at) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    unit.id or str(uuid.uuid4()),
                    unit.job_id,
                    unit.name,
                    unit.kind,
                    unit.module,
                    unit.content,
                    unit.size,
                    unit.complexity,
                    utc_now(),
                ),
            )
            await db.commit()
        return unit

    async def list_source_units(self, job_id: str) -> List[SourceUnit]:
        rows = await self._fetchall(
            "SELECT id, job_id, name, kind, module, content, size, complexity FROM source_units "
            "WHERE job_id = ? ORDER BY created_at, rowid",
            (job_id,),
        )
        return [SourceUnit(**{key: row[key] for key in row.keys()}) for row in rows]

    async def append_step_record(self, job_id: str, record: StepRecord) -> StepRecord:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO step_records(job_id, run, step, status, duration_ms, error, started_at, finished_at, details_json) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    job_id,
                    record.run,
                    _column_value(record.step),
                    _column_value(record.status),
                    record.duration_ms,
                    record.error,
                    record.started_at,
                    record.finished_at,
                    _json_dumps(record.details),
                ),
            )
            record_id = cursor.lastrowid
            await db.commit()
        return record.model_copy(update={"id": record_id, "job_id": job_id})

    async def list_step_records(self, job_id: str) -> List[StepRecord]:
        rows = await self._fetchall("SELECT * FROM step_records WHERE job_id = ? ORDER BY id", (job_id,))
        return [
            StepRecord(
                id=row["id"],
                job_id=row["job_id"],
                run=row["run"] or 1,
                step=row["step"],
                status=row["status"],
                duration_ms=row["duration_ms"] or 0,
                error=row["error"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                details=_json_loads(row["details_json"], {}),
            )
            for row in rows
        ]
