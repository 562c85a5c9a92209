from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from pms_automation.domain.errors import ConcurrentRunConflict

logger = logging.getLogger(__name__)


class JobLocks:
    """Per-job mutexes: one active run per job, unrelated jobs never contend."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._rerun: Set[str] = set()

    def for_job(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def tracked(self) -> int:
        return len(self._locks)

    def is_running(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        """Take the job lock without waiting; a held lock is a conflict."""
        lock = self.for_job(job_id)
        if lock.locked():
            logger.warning("job %s: rejected, a run is already in progress", job_id)
            raise ConcurrentRunConflict("a run is already in progress for this job", job_id=job_id)
        try:
            async with lock:
                yield
        finally:
            # acquisition never waits, so a released lock has no one queued on it
            if self._locks.get(job_id) is lock and not lock.locked():
                self._locks.pop(job_id, None)

    # A signal that arrives while a run holds the lock is remembered here so the
    # holder re-evaluates the job before releasing it.
    def request_rerun(self, job_id: str) -> None:
        self._rerun.add(job_id)

    def take_rerun(self, job_id: str) -> bool:
        if job_id in self._rerun:
            self._rerun.discard(job_id)
            return True
        return False

    def forget(self, job_id: str) -> None:
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            self._locks.pop(job_id, None)
        self._rerun.discard(job_id)
