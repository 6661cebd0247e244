"""
Data models for extraction jobs, their logs and results.

Jobs are the durable record of every extraction attempt. Log entries and
extraction results are immutable once created. BatchRun is an in-memory
aggregate that lives only for the duration of a bulk dispatch.
"""
import uuid
import asyncio
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from core.errors import InvalidSchema, InvalidTransition

TYPE_HINTS = ("string", "number", "boolean", "array", "object")

# Metadata flag on the last log entry a run writes
FINAL_LOG_KEY = "final"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


# pending -> failed covers jobs cancelled (or whose store broke) before execution began
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"cannot move job from {current.value} to {target.value}")


def validate_schema(schema: Any) -> Dict[str, str]:
    """
    Validate a target schema (field name -> type hint).

    Returns a new dict preserving field order. Type hints are lower-cased.

    Raises:
        InvalidSchema: not a mapping, empty, blank field name, or unknown type hint
    """
    if not isinstance(schema, dict):
        raise InvalidSchema("target_schema must be an object mapping field names to type hints")
    if not schema:
        raise InvalidSchema("target_schema must declare at least one field")

    validated: Dict[str, str] = {}
    for field_name, hint in schema.items():
        if not isinstance(field_name, str) or not field_name.strip():
            raise InvalidSchema("field names must be non-empty strings")
        if not isinstance(hint, str) or hint.strip().lower() not in TYPE_HINTS:
            raise InvalidSchema(
                f"field '{field_name}' has unsupported type hint {hint!r} "
                f"(expected one of: {', '.join(TYPE_HINTS)})"
            )
        validated[field_name] = hint.strip().lower()
    return validated


class Job(BaseModel):
    """One extraction attempt of one URL under one schema."""

    id: str = Field(default_factory=new_id)
    url: str
    target_schema: Dict[str, str]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None
    error: Optional[str] = Field(default=None, description="Terminal failure cause, if any.")


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    job_id: str
    level: LogLevel
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_final(self) -> bool:
        """True for the closing entry of a run (completion or failure)."""
        return bool(self.metadata and self.metadata.get(FINAL_LOG_KEY))


class ExtractionResult(BaseModel):
    """Structured output of a completed job. Content keys equal the schema keys."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    job_id: str
    content: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Insight(BaseModel):
    """An answer to a question asked about one job's extracted data."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    job_id: str
    data_id: Optional[str] = Field(default=None, description="Extraction result the answer was based on.")
    task_type: str = "context_analysis"
    query: str
    insight_text: str
    created_at: datetime = Field(default_factory=utcnow)


class BatchRun(BaseModel):
    """Live counters for one bulk dispatch. Not persisted."""

    id: str = Field(default_factory=new_id)
    total: int = 0
    processed: int = 0
    success: int = 0
    failure: int = 0
    job_ids: List[str] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    async def record(self, job_id: Optional[str], ok: bool) -> None:
        """Record one resolved item. The only way counters change."""
        async with self._lock:
            if job_id is not None:
                self.job_ids.append(job_id)
            self.processed += 1
            if ok:
                self.success += 1
            else:
                self.failure += 1

    @property
    def done(self) -> bool:
        return self.finished_at is not None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "total": self.total,
            "processed": self.processed,
            "success": self.success,
            "failure": self.failure,
            "cancelled": self.cancelled,
            "done": self.done,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
