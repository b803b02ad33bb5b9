"""In-process store of asynchronous job results.

A webhook callback and a client status poll may try to update the same job at
the same moment. :class:`ResultStore` gives every job id its own
:class:`asyncio.Lock`; updates for one id run strictly one after another in
the order they were issued, while updates for different ids proceed
independently.

Completed and failed records are kept for ``retention_seconds`` after
completion and then evicted together with their lock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable

from .records import JobRecord

logger = logging.getLogger(__name__)

UpdateFn = Callable[[JobRecord], "JobRecord | Awaitable[JobRecord]"]


class ResultStore:
    """Keyed job map with serialised per-key updates.

    Args:
        retention_seconds: How long a finished record survives after
            ``completed_at``.
        clock: Time source returning epoch seconds (injectable for tests).
    """

    def __init__(self, retention_seconds: float = 3600, clock: Callable[[], float] = time.time):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._results: dict[str, JobRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Updates issued but not yet finished, per job id.
        self._pending: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._results

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    async def update(self, job_id: str, fn: UpdateFn) -> JobRecord:
        """Apply *fn* to the current record of *job_id* and store the result.

        *fn* receives the stored record, or a fresh ``processing`` record when
        none exists, and may be a plain or an async callable. Concurrent calls
        for the same id are applied in issue order; each call sees the
        previous call's write.

        Returns:
            The stored record.
        """
        self._pending[job_id] = self._pending.get(job_id, 0) + 1
        try:
            async with self._lock_for(job_id):
                current = self._results.get(job_id) or JobRecord(id=job_id)
                updated = fn(current)
                if inspect.isawaitable(updated):
                    updated = await updated
                self._results[job_id] = updated
                logger.debug(f"Job {job_id} -> {updated.status.value}")
        finally:
            remaining = self._pending[job_id] - 1
            if remaining:
                self._pending[job_id] = remaining
            else:
                del self._pending[job_id]

        self.evict_expired()
        return updated

    def get(self, job_id: str) -> JobRecord | None:
        """Return the stored record for *job_id* after running eviction."""
        self.evict_expired()
        return self._results.get(job_id)

    def evict_expired(self, now: float | None = None) -> int:
        """Drop finished records older than the retention window.

        Records with an update in flight or queued are skipped.

        Returns:
            Number of evicted records.
        """
        now = self._clock() if now is None else now
        expired = [
            job_id
            for job_id, record in self._results.items()
            if record.completed_at is not None
            and now - record.completed_at > self.retention_seconds
            and job_id not in self._pending
        ]
        for job_id in expired:
            del self._results[job_id]
            self._locks.pop(job_id, None)

        if expired:
            logger.info(f"Evicted {len(expired)} expired job result(s)")
        return len(expired)
