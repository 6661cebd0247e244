"""
Per-job telemetry channel.

append() persists a log entry through the store and fans it out to every live
subscriber of that job. Subscriptions are strictly scoped by job id, every
subscriber sees every entry (fan-out, not competing consumers), and entries
arrive in emission order. There is no durable replay per subscriber; callers
that want history ask for backfill, which reads it from the store.

Jobs run by another process (several API workers on one Postgres store) are
followed through the store's change feed instead of the in-process fan-out.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

from core.errors import PersistenceFailure
from .models import LogEntry, LogLevel
from .store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
# Remember this many finished jobs so late subscribers get end-of-stream
CLOSED_JOBS_MEMORY = 10000

_LEVEL_TO_LOGGING = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_END = object()


class LogSubscription:
    """
    Async iterator over one job's log entries.

    Use as `async with channel.subscribe(job_id) as sub: async for entry in sub: ...`.
    Iteration ends when the job's stream is closed or the subscription is closed.
    """

    def __init__(self, channel: "TelemetryChannel", job_id: str, backfill: bool = False,
                 maxsize: int = DEFAULT_QUEUE_SIZE, follow_store: bool = False):
        self.channel = channel
        self.job_id = job_id
        self.backfill = backfill
        self.follow_store = follow_store
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        # The store feed replays history itself when following
        self._backlog: Optional[List[LogEntry]] = None if backfill and not follow_store else []
        self._seen_ids: Set[str] = set()
        self._pump: Optional[asyncio.Task] = None
        self._closed = False

    def _offer(self, item) -> None:
        """Enqueue without ever blocking the publisher; drops the oldest entry when full."""
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"[telemetry] Subscriber for job {self.job_id} is slow; dropped oldest entry")
            self._queue.put_nowait(item)

    async def _load_backlog(self) -> None:
        history = await self.channel.store.list_logs(self.job_id, limit=self.channel.backfill_limit)
        self._backlog = list(history)
        self._seen_ids.update(entry.id for entry in history)

    async def _follow(self) -> None:
        """Copy the store's change feed into the queue until the run's closing entry."""
        feed = self.channel.store.subscribe_logs(self.job_id, replay=self.backfill)
        try:
            async for entry in feed:
                self._offer(entry)
                if entry.is_final:
                    break
        except PersistenceFailure as e:
            logger.error(f"[telemetry] Lost the store feed for job {self.job_id}: {e}")
        finally:
            await feed.aclose()
        self._offer(_END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogEntry:
        if self._closed:
            raise StopAsyncIteration
        if self.follow_store and self._pump is None:
            self._pump = asyncio.create_task(self._follow())
        if self._backlog is None:
            await self._load_backlog()
        if self._backlog:
            return self._backlog.pop(0)

        while True:
            item = await self._queue.get()
            if item is _END:
                self.close()
                raise StopAsyncIteration
            if item.id in self._seen_ids:
                # Already yielded (history, or both the fan-out and the store feed)
                continue
            self._seen_ids.add(item.id)
            return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            if self._pump is not None and not self._pump.done():
                self._pump.cancel()
            self.channel._detach(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class TelemetryChannel:
    """Fan-out hub for job log entries, backed by a JobStore for persistence."""

    def __init__(self, store: JobStore, queue_size: int = DEFAULT_QUEUE_SIZE, backfill_limit: int = 1000):
        self.store = store
        self.queue_size = queue_size
        self.backfill_limit = backfill_limit
        self._subscribers: Dict[str, List[LogSubscription]] = {}
        self._append_locks: Dict[str, asyncio.Lock] = {}
        self._local_jobs: Set[str] = set()
        self._closed_jobs: "OrderedDict[str, None]" = OrderedDict()

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._append_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._append_locks[job_id] = lock
        return lock

    async def append(self, job_id: str, level: LogLevel, message: str,
                     metadata: Optional[Dict[str, Any]] = None) -> LogEntry:
        """
        Persist a log entry and notify the job's subscribers.

        Appends for the same job are serialized, so persistence order and
        delivery order both equal emission order.

        Raises:
            PersistenceFailure: the store rejected the write (nothing is delivered)
        """
        entry = LogEntry(job_id=job_id, level=LogLevel(level), message=message, metadata=metadata)
        async with self._lock_for(job_id):
            await self.store.append_log(entry)
            for subscription in list(self._subscribers.get(job_id, [])):
                subscription._offer(entry)

        logger.log(_LEVEL_TO_LOGGING[entry.level], f"[telemetry] job={job_id} {entry.level.value}: {message}")
        return entry

    def open_job(self, job_id: str) -> None:
        """Mark a job as running in this process. Its subscribers use the in-process fan-out."""
        self._local_jobs.add(job_id)

    def subscribe(self, job_id: str, backfill: bool = False) -> LogSubscription:
        """
        Subscribe to a job's log entries.

        Registration is immediate, so nothing appended after this call is missed.
        With backfill=True, entries already stored are yielded first (no duplicates).
        When the store is shared and the job is not running here, the store's
        change feed is followed as well.
        """
        follow_store = (
            self.store.shared_feed
            and job_id not in self._local_jobs
            and job_id not in self._closed_jobs
        )
        subscription = LogSubscription(self, job_id, backfill=backfill, maxsize=self.queue_size,
                                       follow_store=follow_store)
        self._subscribers.setdefault(job_id, []).append(subscription)
        if job_id in self._closed_jobs:
            subscription._offer(_END)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def close_job(self, job_id: str) -> None:
        """Signal end-of-stream to the job's subscribers. Called after the terminal transition."""
        self._local_jobs.discard(job_id)
        self._closed_jobs[job_id] = None
        while len(self._closed_jobs) > CLOSED_JOBS_MEMORY:
            self._closed_jobs.popitem(last=False)
        for subscription in list(self._subscribers.get(job_id, [])):
            subscription._offer(_END)
        lock = self._append_locks.get(job_id)
        if lock is not None and not lock.locked():
            self._append_locks.pop(job_id, None)

    def _detach(self, subscription: LogSubscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.job_id, None)
