"""
Per-job serialization of remote writes.

Direct saves, deletes, cloud moves and retry flushes of the same job id all
hold the job's lock while their remote request is in flight, so at most one
remote write per job is outstanding and they land in the order they started.
Locks are created on demand and dropped when no holder or waiter remains.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class JobWriteGuard:
    """
    asyncio.Lock per job id.

    Usage:
        async with guard.hold(job_id):
            await remote.put_job(job)
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_held(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        return lock is not None and lock.locked()

    @property
    def active_count(self) -> int:
        """Job ids with a holder or waiter."""
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._users[job_id] = self._users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[job_id] -= 1
            if self._users[job_id] == 0:
                del self._users[job_id]
                del self._locks[job_id]
