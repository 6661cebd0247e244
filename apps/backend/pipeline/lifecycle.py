"""
Job lifecycle: submit, run and re-run single extraction jobs.

A run walks one pending job through fetch -> sanitize -> extract -> persist,
emitting telemetry at every stage boundary. Every failure inside a run is
converted into exactly one terminal `failed` transition with a typed cause;
nothing but JobNotFound (and task cancellation) propagates to the caller.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from core.errors import (
    Cancelled,
    ExtractionError,
    InvalidTarget,
    InvalidTransition,
    JobNotFound,
    PersistenceFailure,
    describe,
    error_type_of,
)
from core.net import HTTPClient
from .extractor import SchemaExtractor
from .models import (
    FINAL_LOG_KEY,
    ExtractionResult,
    Job,
    JobStatus,
    LogLevel,
    ensure_transition,
    utcnow,
    validate_schema,
)
from .sanitizer import DEFAULT_MAX_CHARS, sanitize_report
from .store import JobStore
from .telemetry import TelemetryChannel

logger = logging.getLogger(__name__)


def validate_target(url: str) -> str:
    """Trim a target URL and require an http(s) scheme."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidTarget("url is required")
    url = url.strip()
    if not (url.startswith("http://") or url.startswith("https://")):
        raise InvalidTarget(f"url must start with http:// or https:// (got {url!r})")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise InvalidTarget(f"url is not valid: {e}")
    if not parsed.host:
        raise InvalidTarget(f"url has no host (got {url!r})")
    return url


class JobLifecycleManager:
    """Owns the state machine of extraction jobs. All collaborators are injected."""

    def __init__(
        self,
        store: JobStore,
        fetcher: HTTPClient,
        extractor: SchemaExtractor,
        telemetry: TelemetryChannel,
        max_chars: int = DEFAULT_MAX_CHARS,
        job_timeout: Optional[float] = None,
    ):
        """
        Args:
            store: Persistence for jobs, logs and results
            fetcher: Anything with `async fetch_text(url) -> str`
            extractor: Schema-guided extractor
            telemetry: Per-job log channel
            max_chars: Sanitized content cap passed to the sanitizer
            job_timeout: Default wall-clock bound for a whole run (None = unbounded)
        """
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.telemetry = telemetry
        self.max_chars = max_chars
        self.job_timeout = job_timeout
        # Jobs currently executing in this process
        self._active: Set[str] = set()

    async def _log(self, job_id: str, level: LogLevel, message: str,
                   metadata: Optional[Dict[str, Any]] = None) -> None:
        await self.telemetry.append(job_id, level, message, metadata)

    async def submit(self, url: str, schema: Dict[str, Any]) -> str:
        """
        Persist a new pending job.

        Raises:
            InvalidTarget / InvalidSchema: before anything is written
            PersistenceFailure: the job could not be created
        """
        url = validate_target(url)
        target_schema = validate_schema(schema)

        job = await self.store.create_job(Job(url=url, target_schema=target_schema))
        try:
            await self._log(job.id, LogLevel.INFO, "job queued", {"url": url, "fields": list(target_schema)})
        except PersistenceFailure as e:
            # The job exists; a missing queue log is not worth failing the submission
            logger.warning(f"[lifecycle] Could not log queueing of job {job.id}: {e}")
        logger.info(f"[lifecycle] Queued job {job.id} for {url}")
        return job.id

    async def run(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """
        Execute a pending job to a terminal state.

        Returns the job as last persisted. Runs of jobs that are already
        running or terminal are ignored (with a `warn` log) and return the
        job unchanged.

        Raises:
            JobNotFound: no such job
            asyncio.CancelledError: re-raised after the job is marked failed
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)

        if job.status != JobStatus.PENDING or job_id in self._active:
            status = JobStatus.RUNNING if job_id in self._active else job.status
            logger.warning(f"[lifecycle] Ignoring run of job {job_id}: already {status.value}")
            try:
                await self._log(job_id, LogLevel.WARN, f"run ignored: job already {status.value}")
            except PersistenceFailure as e:
                logger.error(f"[lifecycle] Could not log ignored run of job {job_id}: {e}")
            return job

        self._active.add(job_id)
        self.telemetry.open_job(job_id)
        try:
            return await self._execute(job, timeout if timeout is not None else self.job_timeout)
        finally:
            self._active.discard(job_id)
            self.telemetry.close_job(job_id)

    async def _execute(self, job: Job, timeout: Optional[float]) -> Job:
        try:
            ensure_transition(job.status, JobStatus.RUNNING)
            job = await self.store.update_job_status(job.id, JobStatus.RUNNING, last_run_at=utcnow())
            await self._log(job.id, LogLevel.INFO, f"engaging target {job.url}")

            if timeout:
                result = await asyncio.wait_for(self._pipeline(job), timeout)
            else:
                result = await self._pipeline(job)

            ensure_transition(job.status, JobStatus.COMPLETED)
            job = await self.store.complete_job(job.id, result)
        except asyncio.TimeoutError:
            return await self._fail(job, Cancelled("deadline exceeded"))
        except asyncio.CancelledError:
            await asyncio.shield(self._fail(job, Cancelled("")))
            raise
        except (ExtractionError, InvalidTransition) as e:
            return await self._fail(job, e)
        except Exception as e:
            logger.exception(f"[lifecycle] Unexpected error running job {job.id}")
            return await self._fail(job, e)

        try:
            await self._log(job.id, LogLevel.SUCCESS, "job completed", {FINAL_LOG_KEY: True})
        except PersistenceFailure as e:
            # Status and result are already committed; only the closing log is lost
            logger.error(f"[lifecycle] Job {job.id} completed but the completion log failed: {e}")
        logger.info(f"[lifecycle] Job {job.id} completed")
        return job

    async def _pipeline(self, job: Job) -> ExtractionResult:
        """fetch -> sanitize -> extract. Raises ExtractionError subclasses."""
        raw = await self.fetcher.fetch_text(job.url)
        await self._log(job.id, LogLevel.SUCCESS, f"fetched {len(raw)} chars")

        content, truncated = sanitize_report(raw, self.max_chars)
        if not content:
            await self._log(job.id, LogLevel.WARN, "sanitized content is empty; fields will likely be null")
        elif truncated:
            await self._log(job.id, LogLevel.WARN, f"content truncated to {len(content)} chars",
                            {"raw_chars": len(raw), "max_chars": self.max_chars})
        else:
            await self._log(job.id, LogLevel.SUCCESS, f"sanitized to {len(content)} chars")

        outcome = await self.extractor.extract(content, job.target_schema)
        if outcome.attempts > 1:
            await self._log(job.id, LogLevel.WARN, "model output was not JSON; recovered with a strict retry",
                            {"attempts": outcome.attempts})
        if outcome.all_null:
            await self._log(job.id, LogLevel.WARN, "every schema field came back null")
        await self._log(job.id, LogLevel.SUCCESS, "extraction complete", outcome.metadata())

        metadata = outcome.metadata()
        metadata.update({"source_url": job.url, "content_chars": len(content), "truncated": truncated})
        return ExtractionResult(job_id=job.id, content=outcome.content, metadata=metadata)

    async def _fail(self, job: Job, exc: BaseException) -> Job:
        """Record the single `failed` transition for a job plus its error log."""
        cause = describe(exc)
        metadata: Dict[str, Any] = {"error_type": error_type_of(exc), FINAL_LOG_KEY: True}
        status_code = getattr(exc, "status_code", None)
        if status_code is not None:
            metadata["status_code"] = status_code

        failed = job
        try:
            ensure_transition(job.status, JobStatus.FAILED)
            failed = await self.store.update_job_status(job.id, JobStatus.FAILED, error=cause)
        except InvalidTransition as e:
            logger.error(f"[lifecycle] Not failing job {job.id}: {e}")
            return job
        except (PersistenceFailure, JobNotFound) as e:
            logger.error(f"[lifecycle] Could not mark job {job.id} failed ({cause}): {e}")

        try:
            await self._log(job.id, LogLevel.ERROR, cause, metadata)
        except PersistenceFailure as e:
            logger.error(f"[lifecycle] Could not write error log for job {job.id} ({cause}): {e}")

        logger.warning(f"[lifecycle] Job {job.id} failed: {cause}")
        return failed

    async def submit_and_run(self, url: str, schema: Dict[str, Any], timeout: Optional[float] = None) -> Job:
        """Ad-hoc single extraction: submit and run immediately."""
        job_id = await self.submit(url, schema)
        return await self.run(job_id, timeout=timeout)

    async def rerun(self, job_id: str) -> str:
        """
        Queue a fresh job with the same url and schema as an existing one.

        The original job and its result are left untouched.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        new_job_id = await self.submit(job.url, job.target_schema)
        try:
            await self._log(new_job_id, LogLevel.INFO, f"re-run of job {job_id}", {"rerun_of": job_id})
        except PersistenceFailure as e:
            logger.warning(f"[lifecycle] Could not log re-run origin for job {new_job_id}: {e}")
        return new_job_id
