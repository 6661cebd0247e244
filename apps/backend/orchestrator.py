"""
Bulk dispatcher: run one schema over many URLs with throttling
"""
import time
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from core.errors import BatchTooLarge, EmptyBatch, InvalidTarget, PersistenceFailure
from core.net import RateLimiter
from pipeline.lifecycle import JobLifecycleManager
from pipeline.models import BatchRun, JobStatus, utcnow, validate_schema

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 1
DEFAULT_PACING_SECONDS = 1.2
DEFAULT_MAX_URLS = 500
DEFAULT_BATCH_TTL_SECONDS = 3600.0

ProgressCallback = Callable[[BatchRun], Any]


def normalize_urls(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Turn free-form batch input into an ordered list of target URLs.

    Accepts a newline-separated string or an iterable of strings. Lines are
    trimmed, empty lines dropped, anything not starting with http:// or
    https:// dropped, and duplicates removed keeping the first occurrence.
    """
    if raw is None:
        return []
    lines = raw.splitlines() if isinstance(raw, str) else raw

    urls: List[str] = []
    seen = set()
    for line in lines:
        if not isinstance(line, str):
            continue
        url = line.strip()
        if not url or not (url.startswith("http://") or url.startswith("https://")):
            continue
        if url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


class BulkDispatcher:
    """Submits and runs one job per URL, bounded by a semaphore and a shared pacing bucket"""

    def __init__(
        self,
        manager: JobLifecycleManager,
        concurrency: int = DEFAULT_CONCURRENCY,
        pacing_seconds: float = DEFAULT_PACING_SECONDS,
        rate_limiter: Optional[RateLimiter] = None,
        max_urls: int = DEFAULT_MAX_URLS,
    ):
        """
        Args:
            manager: Lifecycle manager that owns each job
            concurrency: Jobs in flight at once (1 = strictly sequential)
            pacing_seconds: Minimum spacing between dispatches; 0 disables pacing
            rate_limiter: Shared limiter to use instead of one built from pacing_seconds
            max_urls: Largest batch accepted after normalization
        """
        self.manager = manager
        self.concurrency = max(1, int(concurrency))
        self.pacing_seconds = max(0.0, float(pacing_seconds))
        self.max_urls = max_urls
        if rate_limiter is None and self.pacing_seconds > 0:
            rate_limiter = RateLimiter.from_interval(self.pacing_seconds)
        self.rate_limiter = rate_limiter

    def prepare(self, urls: Union[str, Iterable[str]], schema: Dict[str, Any]) -> Tuple[List[str], Dict[str, str], BatchRun]:
        """
        Pre-flight checks. Nothing is created when this raises.

        Raises:
            EmptyBatch: no valid http(s) URL in the input
            BatchTooLarge: more than max_urls URLs after normalization
            InvalidSchema: target schema rejected
        """
        targets = normalize_urls(urls)
        if not targets:
            raise EmptyBatch("no valid http(s) URLs in batch input")
        if len(targets) > self.max_urls:
            raise BatchTooLarge(f"batch has {len(targets)} URLs; the limit is {self.max_urls}")
        target_schema = validate_schema(schema)
        return targets, target_schema, BatchRun(total=len(targets))

    async def run(
        self,
        urls: Union[str, Iterable[str]],
        schema: Dict[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchRun:
        """
        Dispatch a batch and wait for it to finish.

        Item failures are counted, never raised. Pre-flight errors are raised
        before any job is created (see prepare()).
        """
        targets, target_schema, batch = self.prepare(urls, schema)
        return await self.execute(batch, targets, target_schema, cancel_event, on_progress)

    async def execute(
        self,
        batch: BatchRun,
        targets: List[str],
        target_schema: Dict[str, str],
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchRun:
        """Dispatch already-prepared targets into `batch`."""
        cancel_event = cancel_event or asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)
        started = time.monotonic()
        logger.info(
            f"[orchestrator] Batch {batch.id}: dispatching {batch.total} URLs "
            f"(concurrency={self.concurrency}, pacing={self.pacing_seconds}s)"
        )

        # Tasks are created in input order and the semaphore admits waiters FIFO
        tasks = [
            asyncio.create_task(self._dispatch_one(batch, url, target_schema, semaphore, cancel_event, on_progress))
            for url in targets
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            batch.cancelled = True
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            batch.finished_at = utcnow()

        if cancel_event.is_set():
            batch.cancelled = True

        duration = time.monotonic() - started
        logger.info(
            f"[orchestrator] Batch {batch.id} finished in {duration:.1f}s: "
            f"{batch.success} ok, {batch.failure} failed, {batch.processed}/{batch.total} processed"
            + (" (cancelled)" if batch.cancelled else "")
        )
        return batch

    async def _dispatch_one(
        self,
        batch: BatchRun,
        url: str,
        target_schema: Dict[str, str],
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event,
        on_progress: Optional[ProgressCallback],
    ):
        """Submit and run a single URL with the semaphore and pacing held"""
        async with semaphore:
            if cancel_event.is_set():
                return
            if self.rate_limiter is not None:
                await self.rate_limiter.wait_if_needed()
            if cancel_event.is_set():
                return

            job_id = None
            try:
                job_id = await self.manager.submit(url, target_schema)
                job = await self.manager.run(job_id)
                ok = job.status == JobStatus.COMPLETED
            except asyncio.CancelledError:
                # The lifecycle manager has already marked an in-flight job failed
                if job_id is not None:
                    await batch.record(job_id, False)
                raise
            except (InvalidTarget, PersistenceFailure) as e:
                logger.error(f"[orchestrator] Batch {batch.id}: could not submit {url}: {e}")
                ok = False
            except Exception as e:
                logger.exception(f"[orchestrator] Batch {batch.id}: unexpected error for {url}: {e}")
                ok = False

            await batch.record(job_id, ok)
            await self._notify(on_progress, batch)

    async def _notify(self, on_progress: Optional[ProgressCallback], batch: BatchRun):
        if on_progress is None:
            return
        try:
            outcome = on_progress(batch)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"[orchestrator] Progress callback failed for batch {batch.id}: {e}")


class BatchRegistry:
    """
    In-process registry of batches started through the API.

    Batches run as background tasks and are kept for `ttl_seconds` after they
    finish so their counters can be polled; nothing here survives a restart.
    """

    def __init__(self, dispatcher: BulkDispatcher, ttl_seconds: float = DEFAULT_BATCH_TTL_SECONDS):
        self.dispatcher = dispatcher
        self.ttl_seconds = ttl_seconds
        self._batches: Dict[str, BatchRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def start(self, urls: Union[str, Iterable[str]], schema: Dict[str, Any]) -> BatchRun:
        """Pre-flight and launch a batch in the background. Raises the same errors as prepare()."""
        self.purge_expired()
        targets, target_schema, batch = self.dispatcher.prepare(urls, schema)
        cancel_event = asyncio.Event()

        self._batches[batch.id] = batch
        self._cancel_events[batch.id] = cancel_event
        task = asyncio.create_task(self.dispatcher.execute(batch, targets, target_schema, cancel_event))
        self._tasks[batch.id] = task
        task.add_done_callback(lambda t, batch_id=batch.id: self._on_done(batch_id, t))
        return batch

    def _on_done(self, batch_id: str, task: asyncio.Task):
        self._tasks.pop(batch_id, None)
        self._cancel_events.pop(batch_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[orchestrator] Batch {batch_id} crashed: {task.exception()}")

    def get(self, batch_id: str) -> Optional[BatchRun]:
        self.purge_expired()
        return self._batches.get(batch_id)

    def cancel(self, batch_id: str) -> bool:
        """Stop dispatching new URLs for a running batch. Returns False if it is not running."""
        event = self._cancel_events.get(batch_id)
        if event is None:
            return False
        event.set()
        logger.info(f"[orchestrator] Batch {batch_id} cancellation requested")
        return True

    def purge_expired(self):
        now = utcnow()
        expired = [
            batch_id for batch_id, batch in self._batches.items()
            if batch.finished_at is not None and (now - batch.finished_at).total_seconds() > self.ttl_seconds
        ]
        for batch_id in expired:
            self._batches.pop(batch_id, None)

    async def shutdown(self):
        """Cancel every running batch (call from FastAPI shutdown)"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[orchestrator] Cancelled {len(tasks)} running batch(es) on shutdown")
