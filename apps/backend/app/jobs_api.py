"""
Extraction job API endpoints.

Routes for submitting and inspecting jobs, streaming their logs, dispatching
bulk batches and asking questions over extracted data. Collaborators are read
from app.state (built in main.py's lifespan).
"""
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from app.rate_limit import limiter, RATE_LIMIT_SUBMIT, RATE_LIMIT_READ
from core.errors import (
    BatchTooLarge,
    EmptyBatch,
    InferenceFailure,
    InvalidSchema,
    InvalidTarget,
    JobNotFound,
    PersistenceFailure,
)
from pipeline.models import Job, JobStatus, LogLevel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])
batches_router = APIRouter(prefix="/api/batches", tags=["batches"])
logs_router = APIRouter(prefix="/api/logs", tags=["logs"])
insights_router = APIRouter(prefix="/api/insights", tags=["insights"])


class JobCreateRequest(BaseModel):
    url: str
    target_schema: Dict[str, Any]
    run: bool = True


class BatchCreateRequest(BaseModel):
    urls: Union[List[str], str]
    target_schema: Dict[str, Any]


class InsightRequest(BaseModel):
    query: str = Field(..., min_length=1)
    job_id: Optional[str] = None


def _ok(data: Any) -> dict:
    return {"status": "ok", "data": data, "error": None}


def _job_data(job: Job) -> Dict[str, Any]:
    return job.model_dump(mode="json")


async def _require_job(request: Request, job_id: str) -> Job:
    try:
        job = await request.app.state.store.get_job(job_id)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error loading job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


async def _load_result(request: Request, job_id: str):
    try:
        return await request.app.state.store.get_result(job_id)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error loading result of job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")


async def _run_in_background(manager, job_id: str):
    """Background task body. Pipeline failures end up on the job record, not here."""
    try:
        await manager.run(job_id)
    except JobNotFound:
        logger.warning(f"[jobs_api] Job {job_id} disappeared before it could run")


@router.post("")
@limiter.limit(RATE_LIMIT_SUBMIT)
async def create_job(request: Request, body: JobCreateRequest, background_tasks: BackgroundTasks) -> dict:
    """
    Submit a single extraction job.

    The job is returned in `pending` state; unless run=false it starts
    in the background right after the response is sent.
    """
    manager = request.app.state.manager
    try:
        job_id = await manager.submit(body.url, body.target_schema)
    except (InvalidTarget, InvalidSchema) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Could not create job for {body.url}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")

    if body.run:
        background_tasks.add_task(_run_in_background, manager, job_id)

    job = await _require_job(request, job_id)
    return _ok(_job_data(job))


@router.get("")
@limiter.limit(RATE_LIMIT_READ)
async def list_jobs(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    status: Optional[JobStatus] = Query(None, description="Filter by status"),
) -> dict:
    try:
        jobs = await request.app.state.store.list_jobs(limit=limit, status=status)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error listing jobs: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    return _ok({"jobs": [_job_data(j) for j in jobs], "count": len(jobs)})


@router.get("/{job_id}")
async def get_job(request: Request, job_id: str) -> dict:
    job = await _require_job(request, job_id)
    return _ok(_job_data(job))


@router.post("/{job_id}/run")
@limiter.limit(RATE_LIMIT_SUBMIT)
async def run_job(request: Request, job_id: str, background_tasks: BackgroundTasks) -> dict:
    """Start a pending job. Jobs that already ran are left alone (see their logs)."""
    job = await _require_job(request, job_id)
    if job.status != JobStatus.PENDING:
        raise HTTPException(status_code=409, detail=f"Job is already {job.status.value}")
    background_tasks.add_task(_run_in_background, request.app.state.manager, job_id)
    return _ok(_job_data(job))


@router.post("/{job_id}/rerun")
@limiter.limit(RATE_LIMIT_SUBMIT)
async def rerun_job(request: Request, job_id: str, background_tasks: BackgroundTasks) -> dict:
    """Queue a new job with the same url and schema and start it."""
    manager = request.app.state.manager
    try:
        new_job_id = await manager.rerun(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Could not re-run job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")

    background_tasks.add_task(_run_in_background, manager, new_job_id)
    job = await _require_job(request, new_job_id)
    return _ok({**_job_data(job), "rerun_of": job_id})


@router.get("/{job_id}/result")
async def get_job_result(request: Request, job_id: str) -> dict:
    job = await _require_job(request, job_id)
    result = await _load_result(request, job_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No result for job (status: {job.status.value})")
    return _ok(result.model_dump(mode="json"))


@router.get("/{job_id}/export")
async def export_job_result(request: Request, job_id: str):
    """Download the structured content of a completed job as a JSON file."""
    await _require_job(request, job_id)
    result = await _load_result(request, job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No result to export")
    return JSONResponse(
        content=result.content,
        headers={"Content-Disposition": f'attachment; filename="extraction-{job_id}.json"'},
    )


@router.get("/{job_id}/logs")
async def get_job_logs(request: Request, job_id: str, limit: int = Query(500, ge=1, le=5000)) -> dict:
    await _require_job(request, job_id)
    try:
        entries = await request.app.state.store.list_logs(job_id, limit=limit)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error loading logs of job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    return _ok({"logs": [e.model_dump(mode="json") for e in entries], "count": len(entries)})


@router.get("/{job_id}/insights")
async def get_job_insights(request: Request, job_id: str, limit: int = Query(50, ge=1, le=500)) -> dict:
    """Answers previously given to insight queries about this job, oldest first."""
    await _require_job(request, job_id)
    try:
        insights = await request.app.state.store.list_insights(job_id, limit=limit)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error loading insights of job {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    return _ok({"insights": [i.model_dump(mode="json") for i in insights], "count": len(insights)})


@router.get("/{job_id}/logs/stream")
async def stream_job_logs(request: Request, job_id: str):
    """
    Server-Sent Events stream of a job's log entries.

    History is sent first, then live entries. The stream ends with an `end`
    event once the job reaches a terminal state.
    """
    job = await _require_job(request, job_id)
    telemetry = request.app.state.telemetry
    if job.status.is_terminal:
        # Finished before this process started (or before we looked); replay history only
        telemetry.close_job(job_id)
    subscription = telemetry.subscribe(job_id, backfill=True)

    async def event_stream():
        async with subscription:
            async for entry in subscription:
                if await request.is_disconnected():
                    logger.debug(f"[jobs_api] Log stream client for job {job_id} disconnected")
                    return
                yield f"event: log\ndata: {entry.model_dump_json()}\n\n"
        yield "event: end\ndata: {}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@batches_router.post("")
@limiter.limit(RATE_LIMIT_SUBMIT)
async def create_batch(request: Request, body: BatchCreateRequest) -> dict:
    """
    Dispatch one schema over many URLs in the background.

    Poll GET /api/batches/{id} for counters. Batches live in this process only.
    """
    registry = request.app.state.batches
    try:
        batch = registry.start(body.urls, body.target_schema)
    except (EmptyBatch, BatchTooLarge, InvalidSchema) as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"[jobs_api] Batch {batch.id} started with {batch.total} URLs")
    return _ok(batch.summary())


@batches_router.get("/{batch_id}")
async def get_batch(request: Request, batch_id: str) -> dict:
    batch = request.app.state.batches.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found (finished batches expire)")
    return _ok({**batch.summary(), "job_ids": list(batch.job_ids)})


@batches_router.post("/{batch_id}/cancel")
async def cancel_batch(request: Request, batch_id: str) -> dict:
    registry = request.app.state.batches
    if registry.get(batch_id) is None:
        raise HTTPException(status_code=404, detail="Batch not found (finished batches expire)")
    return _ok({"cancelling": registry.cancel(batch_id)})


@logs_router.get("")
@limiter.limit(RATE_LIMIT_READ)
async def recent_logs(request: Request, limit: int = Query(100, ge=1, le=1000)) -> dict:
    """Most recent log entries across all jobs, with total/error counts."""
    try:
        entries = await request.app.state.store.list_logs(limit=limit)
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error listing logs: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    errors = sum(1 for e in entries if e.level == LogLevel.ERROR)
    return _ok({
        "logs": [e.model_dump(mode="json") for e in reversed(entries)],
        "stats": {"total": len(entries), "errors": errors},
    })


@insights_router.post("")
@limiter.limit(RATE_LIMIT_SUBMIT)
async def ask_insights(request: Request, body: InsightRequest) -> dict:
    """Ask a question over stored extraction results."""
    insights = request.app.state.insights
    try:
        answer = await insights.answer(body.query, job_id=body.job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InferenceFailure as e:
        logger.error(f"[jobs_api] Insight query failed: {e}")
        raise HTTPException(status_code=502, detail=f"Completion service failed: {e.message}")
    except PersistenceFailure as e:
        logger.error(f"[jobs_api] Store error during insight query: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    return _ok(answer)
