"""
Persistence and change notification for jobs, logs and extraction results.

Two implementations of the same JobStore interface:
- InMemoryJobStore: single-process deployments and tests.
- PostgresJobStore: psycopg2 against the scraping_jobs / scraping_logs /
  extracted_data / ai_insights tables, with a polling change feed that lets
  any worker follow logs written by another.

All writes are single-row inserts/updates keyed by job id or log id, except
complete_job which writes the result and the completed status together.
"""

import os
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from core.errors import PersistenceFailure, JobNotFound
from .models import ExtractionResult, Insight, Job, JobStatus, LogEntry, LogLevel

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = float(os.getenv('APEXSCRAPE_LOG_POLL_INTERVAL', '1.0'))

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scraping_jobs (
    id UUID PRIMARY KEY,
    url TEXT NOT NULL,
    -- JSON, not JSONB: field order of the schema must survive the round trip
    target_schema JSON,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_run_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS scraping_logs (
    seq BIGSERIAL UNIQUE,
    id UUID PRIMARY KEY,
    job_id UUID REFERENCES scraping_jobs(id),
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS scraping_logs_job_seq_idx ON scraping_logs (job_id, seq);

CREATE TABLE IF NOT EXISTS extracted_data (
    id UUID PRIMARY KEY,
    job_id UUID NOT NULL UNIQUE REFERENCES scraping_jobs(id),
    content_structured JSON NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ai_insights (
    id UUID PRIMARY KEY,
    job_id UUID NOT NULL REFERENCES scraping_jobs(id),
    data_id UUID REFERENCES extracted_data(id),
    task_type TEXT NOT NULL,
    query TEXT NOT NULL,
    insight_text TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ai_insights_job_idx ON ai_insights (job_id, created_at);
"""


class JobStore(ABC):
    """Storage collaborator used by the pipeline."""

    # True when subscribe_logs sees entries appended by other processes
    shared_feed = False

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, limit: int = 50, status: Optional[JobStatus] = None) -> List[Job]:
        ...

    @abstractmethod
    async def update_job_status(self, job_id: str, status: JobStatus, error: Optional[str] = None,
                                last_run_at: Optional[datetime] = None) -> Job:
        ...

    @abstractmethod
    async def write_extraction_result(self, result: ExtractionResult) -> ExtractionResult:
        ...

    @abstractmethod
    async def complete_job(self, job_id: str, result: ExtractionResult) -> Job:
        """Write the result and mark the job completed as one operation."""
        ...

    @abstractmethod
    async def get_result(self, job_id: str) -> Optional[ExtractionResult]:
        ...

    @abstractmethod
    async def list_results(self, job_id: Optional[str] = None, limit: int = 10) -> List[ExtractionResult]:
        ...

    @abstractmethod
    async def append_log(self, entry: LogEntry) -> LogEntry:
        ...

    @abstractmethod
    async def list_logs(self, job_id: Optional[str] = None, limit: int = 100) -> List[LogEntry]:
        """Logs in emission order (oldest first) for a job, or the most recent across all jobs."""
        ...

    @abstractmethod
    def subscribe_logs(self, job_id: str, replay: bool = False) -> AsyncIterator[LogEntry]:
        """
        Change feed of log entries for job_id.

        Yields entries appended after the call; with replay=True the job's
        stored entries come first.
        """
        ...

    @abstractmethod
    async def write_insight(self, insight: Insight) -> Insight:
        ...

    @abstractmethod
    async def list_insights(self, job_id: str, limit: int = 50) -> List[Insight]:
        """Insights for a job, oldest first."""
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed store. Safe for concurrent coroutines in one event loop."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._results: Dict[str, ExtractionResult] = {}
        self._logs: List[LogEntry] = []
        self._insights: List[Insight] = []
        self._feeds: Dict[str, List[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = job.model_copy()
            return job.model_copy()

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def list_jobs(self, limit: int = 50, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy() for j in jobs[:limit]]

    async def update_job_status(self, job_id: str, status: JobStatus, error: Optional[str] = None,
                                last_run_at: Optional[datetime] = None) -> Job:
        async with self._lock:
            return self._update_locked(job_id, status, error, last_run_at)

    def _update_locked(self, job_id, status, error=None, last_run_at=None) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        changes: Dict[str, Any] = {'status': status, 'error': error}
        if last_run_at is not None:
            changes['last_run_at'] = last_run_at
        updated = job.model_copy(update=changes)
        self._jobs[job_id] = updated
        return updated.model_copy()

    def _write_result_locked(self, result: ExtractionResult) -> ExtractionResult:
        if result.job_id not in self._jobs:
            raise JobNotFound(result.job_id)
        if result.job_id in self._results:
            raise PersistenceFailure(f"extraction result already written for job {result.job_id}")
        self._results[result.job_id] = result
        return result

    async def write_extraction_result(self, result: ExtractionResult) -> ExtractionResult:
        async with self._lock:
            return self._write_result_locked(result)

    async def complete_job(self, job_id: str, result: ExtractionResult) -> Job:
        async with self._lock:
            self._write_result_locked(result)
            return self._update_locked(job_id, JobStatus.COMPLETED)

    async def get_result(self, job_id: str) -> Optional[ExtractionResult]:
        return self._results.get(job_id)

    async def list_results(self, job_id: Optional[str] = None, limit: int = 10) -> List[ExtractionResult]:
        if job_id:
            result = self._results.get(job_id)
            return [result] if result else []
        results = sorted(self._results.values(), key=lambda r: r.created_at, reverse=True)
        return results[:limit]

    async def append_log(self, entry: LogEntry) -> LogEntry:
        async with self._lock:
            self._logs.append(entry)
            for queue in self._feeds.get(entry.job_id, []):
                queue.put_nowait(entry)
        return entry

    async def list_logs(self, job_id: Optional[str] = None, limit: int = 100) -> List[LogEntry]:
        if job_id is not None:
            return [e for e in self._logs if e.job_id == job_id][-limit:]
        return self._logs[-limit:]

    async def subscribe_logs(self, job_id: str, replay: bool = False) -> AsyncIterator[LogEntry]:
        queue: asyncio.Queue = asyncio.Queue()
        # Snapshot and registration happen without an await in between, so nothing falls in the gap
        history = [e for e in self._logs if e.job_id == job_id] if replay else []
        self._feeds.setdefault(job_id, []).append(queue)
        try:
            for entry in history:
                yield entry
            while True:
                yield await queue.get()
        finally:
            feeds = self._feeds.get(job_id, [])
            if queue in feeds:
                feeds.remove(queue)
            if not feeds:
                self._feeds.pop(job_id, None)

    async def write_insight(self, insight: Insight) -> Insight:
        async with self._lock:
            if insight.job_id not in self._jobs:
                raise JobNotFound(insight.job_id)
            self._insights.append(insight)
        return insight

    async def list_insights(self, job_id: str, limit: int = 50) -> List[Insight]:
        return [i for i in self._insights if i.job_id == job_id][-limit:]


def _json_or_none(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _row_to_job(row: Dict[str, Any]) -> Job:
    return Job(
        id=str(row['id']),
        url=row['url'],
        target_schema=row.get('target_schema') or {},
        status=JobStatus(row['status']),
        created_at=row['created_at'],
        last_run_at=row.get('last_run_at'),
        error=row.get('error'),
    )


def _row_to_log(row: Dict[str, Any]) -> LogEntry:
    return LogEntry(
        id=str(row['id']),
        job_id=str(row['job_id']),
        level=LogLevel(row['level']),
        message=row['message'],
        metadata=row.get('metadata'),
        created_at=row['created_at'],
    )


def _row_to_result(row: Dict[str, Any]) -> ExtractionResult:
    return ExtractionResult(
        id=str(row['id']),
        job_id=str(row['job_id']),
        content=row['content_structured'],
        metadata=row.get('metadata') or {},
        created_at=row['created_at'],
    )


def _row_to_insight(row: Dict[str, Any]) -> Insight:
    return Insight(
        id=str(row['id']),
        job_id=str(row['job_id']),
        data_id=str(row['data_id']) if row.get('data_id') else None,
        task_type=row['task_type'],
        query=row['query'],
        insight_text=row['insight_text'],
        created_at=row['created_at'],
    )


class PostgresJobStore(JobStore):
    """psycopg2-backed store. Blocking calls run in worker threads."""

    shared_feed = True

    def __init__(self, db_url: str, poll_interval: float = DEFAULT_POLL_INTERVAL, connect_timeout: int = 5):
        """
        Args:
            db_url: PostgreSQL connection string
            poll_interval: Seconds between change-feed polls in subscribe_logs
            connect_timeout: Connection timeout in seconds
        """
        self.db_url = db_url
        self.poll_interval = poll_interval
        self.connect_timeout = connect_timeout

    def _get_db_conn(self):
        """Get database connection."""
        try:
            return psycopg2.connect(self.db_url, connect_timeout=self.connect_timeout)
        except psycopg2.Error as e:
            logger.error(f"[store] Failed to connect to database: {e}")
            raise PersistenceFailure(f"database unavailable: {e}")

    def _execute(self, sql: str, params: tuple = (), fetch: str = 'none'):
        """Run one statement in its own transaction."""
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                if fetch == 'one':
                    row = cur.fetchone()
                elif fetch == 'all':
                    row = cur.fetchall()
                else:
                    row = None
            conn.commit()
            return row
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"[store] Database error: {e}")
            raise PersistenceFailure(str(e).strip() or type(e).__name__)
        finally:
            conn.close()

    async def _run(self, sql: str, params: tuple = (), fetch: str = 'none'):
        return await asyncio.to_thread(self._execute, sql, params, fetch)

    async def ensure_schema(self):
        """Create tables if they do not exist."""
        await self._run(SCHEMA_SQL)
        logger.info("[store] Schema ensured")

    async def create_job(self, job: Job) -> Job:
        row = await self._run(
            """
            INSERT INTO scraping_jobs (id, url, target_schema, status, created_at, last_run_at)
            VALUES (%s, %s, %s::JSON, %s, %s, %s)
            RETURNING *
            """,
            (job.id, job.url, json.dumps(job.target_schema), job.status.value, job.created_at, job.last_run_at),
            fetch='one',
        )
        return _row_to_job(row)

    async def get_job(self, job_id: str) -> Optional[Job]:
        row = await self._run("SELECT * FROM scraping_jobs WHERE id::text = %s", (job_id,), fetch='one')
        return _row_to_job(row) if row else None

    async def list_jobs(self, limit: int = 50, status: Optional[JobStatus] = None) -> List[Job]:
        if status is not None:
            rows = await self._run(
                "SELECT * FROM scraping_jobs WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                (status.value, limit),
                fetch='all',
            )
        else:
            rows = await self._run(
                "SELECT * FROM scraping_jobs ORDER BY created_at DESC LIMIT %s",
                (limit,),
                fetch='all',
            )
        return [_row_to_job(r) for r in rows]

    async def update_job_status(self, job_id: str, status: JobStatus, error: Optional[str] = None,
                                last_run_at: Optional[datetime] = None) -> Job:
        row = await self._run(
            """
            UPDATE scraping_jobs
            SET status = %s,
                error = %s,
                last_run_at = COALESCE(%s, last_run_at)
            WHERE id::text = %s
            RETURNING *
            """,
            (status.value, error, last_run_at, job_id),
            fetch='one',
        )
        if not row:
            raise JobNotFound(job_id)
        return _row_to_job(row)

    async def write_extraction_result(self, result: ExtractionResult) -> ExtractionResult:
        row = await self._run(
            """
            INSERT INTO extracted_data (id, job_id, content_structured, metadata, created_at)
            VALUES (%s, %s, %s::JSON, %s::JSONB, %s)
            RETURNING *
            """,
            (result.id, result.job_id, json.dumps(result.content, default=str),
             _json_or_none(result.metadata), result.created_at),
            fetch='one',
        )
        return _row_to_result(row)

    def _complete_job_sync(self, job_id: str, result: ExtractionResult) -> Dict[str, Any]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO extracted_data (id, job_id, content_structured, metadata, created_at)
                    VALUES (%s, %s, %s::JSON, %s::JSONB, %s)
                    """,
                    (result.id, result.job_id, json.dumps(result.content, default=str),
                     _json_or_none(result.metadata), result.created_at),
                )
                cur.execute(
                    """
                    UPDATE scraping_jobs SET status = %s, error = NULL
                    WHERE id::text = %s
                    RETURNING *
                    """,
                    (JobStatus.COMPLETED.value, job_id),
                )
                row = cur.fetchone()
                if not row:
                    conn.rollback()
                    raise JobNotFound(job_id)
            conn.commit()
            return row
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"[store] Failed to complete job {job_id}: {e}")
            raise PersistenceFailure(str(e).strip() or type(e).__name__)
        finally:
            conn.close()

    async def complete_job(self, job_id: str, result: ExtractionResult) -> Job:
        row = await asyncio.to_thread(self._complete_job_sync, job_id, result)
        return _row_to_job(row)

    async def get_result(self, job_id: str) -> Optional[ExtractionResult]:
        row = await self._run("SELECT * FROM extracted_data WHERE job_id::text = %s", (job_id,), fetch='one')
        return _row_to_result(row) if row else None

    async def list_results(self, job_id: Optional[str] = None, limit: int = 10) -> List[ExtractionResult]:
        if job_id:
            result = await self.get_result(job_id)
            return [result] if result else []
        rows = await self._run(
            "SELECT * FROM extracted_data ORDER BY created_at DESC LIMIT %s",
            (limit,),
            fetch='all',
        )
        return [_row_to_result(r) for r in rows]

    async def append_log(self, entry: LogEntry) -> LogEntry:
        await self._run(
            """
            INSERT INTO scraping_logs (id, job_id, level, message, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s::JSONB, %s)
            """,
            (entry.id, entry.job_id, entry.level.value, entry.message,
             _json_or_none(entry.metadata), entry.created_at),
        )
        return entry

    async def list_logs(self, job_id: Optional[str] = None, limit: int = 100) -> List[LogEntry]:
        if job_id is not None:
            rows = await self._run(
                """
                SELECT * FROM (
                    SELECT * FROM scraping_logs WHERE job_id::text = %s ORDER BY seq DESC LIMIT %s
                ) recent ORDER BY seq ASC
                """,
                (job_id, limit),
                fetch='all',
            )
        else:
            rows = await self._run(
                """
                SELECT * FROM (
                    SELECT * FROM scraping_logs ORDER BY seq DESC LIMIT %s
                ) recent ORDER BY seq ASC
                """,
                (limit,),
                fetch='all',
            )
        return [_row_to_log(r) for r in rows]

    async def _max_seq(self, job_id: str) -> int:
        row = await self._run(
            "SELECT COALESCE(MAX(seq), 0) AS seq FROM scraping_logs WHERE job_id::text = %s",
            (job_id,),
            fetch='one',
        )
        return int(row['seq'])

    async def subscribe_logs(self, job_id: str, replay: bool = False) -> AsyncIterator[LogEntry]:
        last_seq = 0 if replay else await self._max_seq(job_id)
        while True:
            rows = await self._run(
                "SELECT * FROM scraping_logs WHERE job_id::text = %s AND seq > %s ORDER BY seq ASC",
                (job_id, last_seq),
                fetch='all',
            )
            for row in rows:
                last_seq = max(last_seq, int(row['seq']))
                yield _row_to_log(row)
            if not rows:
                await asyncio.sleep(self.poll_interval)

    async def write_insight(self, insight: Insight) -> Insight:
        row = await self._run(
            """
            INSERT INTO ai_insights (id, job_id, data_id, task_type, query, insight_text, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (insight.id, insight.job_id, insight.data_id, insight.task_type, insight.query,
             insight.insight_text, insight.created_at),
            fetch='one',
        )
        return _row_to_insight(row)

    async def list_insights(self, job_id: str, limit: int = 50) -> List[Insight]:
        rows = await self._run(
            """
            SELECT * FROM (
                SELECT * FROM ai_insights WHERE job_id::text = %s ORDER BY created_at DESC LIMIT %s
            ) recent ORDER BY created_at ASC
            """,
            (job_id, limit),
            fetch='all',
        )
        return [_row_to_insight(r) for r in rows]


def create_store(db_url: Optional[str] = None) -> JobStore:
    """Postgres when a database URL is configured, otherwise in-memory."""
    from app.db_config import db_config

    db_url = db_url or db_config.get_db_url()
    if db_url:
        logger.info("[store] Using PostgresJobStore")
        return PostgresJobStore(db_url)
    logger.warning("[store] No database URL configured (SUPABASE_DB_URL / DATABASE_URL); using in-memory store")
    return InMemoryJobStore()
