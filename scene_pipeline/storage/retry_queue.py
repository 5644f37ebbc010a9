"""
Retry queue for failed remote job writes.

Keyed by job id; queuing a job that is already pending replaces the entry.
The failed write that caused the enqueue counts as attempt 1, and an entry
is retried only once base_delay * 2 ** (attempts - 1) has passed since its
last attempt:

    attempt 1 (original write) -> wait 1x -> attempt 2 -> wait 2x -> attempt 3
    -> wait 4x -> dropped with SYNC_FAILED

A 401 on any retry clears the whole queue; the credential will not start
working by itself.

Each retry holds the job's write guard, shared with the synchronizer. An
entry that was replaced or discarded by a direct write while the retry
waited for the guard is dropped without being sent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from scene_pipeline.infra.config import (
    SYNC_MAX_RETRY_ATTEMPTS,
    SYNC_RETRY_BASE_DELAY_SECONDS,
)
from scene_pipeline.infra.events import SYNC_FAILED, SYNC_SUCCESS, JobEventBus
from scene_pipeline.pipeline.entities import Job

from .remote_client import RemoteAuthError, RemoteStoreError
from .write_guard import JobWriteGuard

logger = logging.getLogger(__name__)

PutJob = Callable[[Job], Awaitable[None]]

# Floor for the background check period when base_delay is tiny
MIN_CHECK_INTERVAL = 0.05


@dataclass
class PendingWrite:
    """One job waiting to be written remotely."""
    job: Job
    attempts: int
    last_attempt: float

    def next_attempt_at(self, base_delay: float) -> float:
        return self.last_attempt + base_delay * (2 ** (self.attempts - 1))


class SyncRetryQueue:
    """
    Pending remote writes with exponential backoff.

    The background check is an asyncio task started on first enqueue and
    finished once the queue drains. process() can also be awaited directly.
    """

    def __init__(
        self,
        put_job: PutJob,
        events: Optional[JobEventBus] = None,
        max_attempts: int = SYNC_MAX_RETRY_ATTEMPTS,
        base_delay: float = SYNC_RETRY_BASE_DELAY_SECONDS,
        check_interval: Optional[float] = None,
        auto_schedule: bool = True,
        clock: Callable[[], float] = time.time,
        write_guard: Optional[JobWriteGuard] = None,
    ):
        self._put_job = put_job
        self.write_guard = write_guard or JobWriteGuard()
        self.events = events or JobEventBus()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.check_interval = max(
            check_interval if check_interval is not None else base_delay,
            MIN_CHECK_INTERVAL,
        )
        self.auto_schedule = auto_schedule
        self._clock = clock
        self._pending: Dict[str, PendingWrite] = {}
        self._task: Optional[asyncio.Task] = None
        self._process_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Queue management
    # -------------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def contains(self, job_id: str) -> bool:
        return job_id in self._pending

    def get(self, job_id: str) -> Optional[PendingWrite]:
        return self._pending.get(job_id)

    def enqueue(self, job: Job) -> None:
        """Queue a job whose remote write just failed."""
        self._pending[job.job_id] = PendingWrite(job=job, attempts=1, last_attempt=self._clock())
        logger.info(f"[RetryQueue] Queued {job.job_id} for retry ({self.pending_count} pending)")
        self._ensure_task()

    def discard(self, job_id: str) -> bool:
        """Drop a pending entry (e.g. after a later direct write succeeded)."""
        return self._pending.pop(job_id, None) is not None

    def clear(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        return count

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process(self) -> None:
        """Run one check over every entry that is due."""
        async with self._process_lock:
            await self._process_due()

    async def _process_due(self) -> None:
        for job_id, pending in list(self._pending.items()):
            if self._pending.get(job_id) is not pending:
                # Replaced or discarded while an earlier write was awaited
                continue

            now = self._clock()
            if now < pending.next_attempt_at(self.base_delay):
                continue

            if pending.attempts >= self.max_attempts:
                logger.warning(
                    f"[RetryQueue] Remote write for {job_id} failed after "
                    f"{self.max_attempts} attempts, giving up"
                )
                del self._pending[job_id]
                self.events.emit(SYNC_FAILED, job_id=job_id)
                continue

            async with self.write_guard.hold(job_id):
                if self._pending.get(job_id) is not pending:
                    logger.info(f"[RetryQueue] Retry of {job_id} superseded by a direct write, dropped")
                    continue
                try:
                    await self._put_job(pending.job)
                except RemoteAuthError:
                    logger.warning("[RetryQueue] Invalid database key, clearing retry queue")
                    self._pending.clear()
                    break
                except RemoteStoreError as e:
                    pending.attempts += 1
                    pending.last_attempt = self._clock()
                    logger.info(
                        f"[RetryQueue] Retry of {job_id} failed "
                        f"(attempt {pending.attempts}/{self.max_attempts}): {e}"
                    )
                    continue

                if self._pending.get(job_id) is pending:
                    del self._pending[job_id]
            logger.info(f"[RetryQueue] Remote write for {job_id} succeeded on retry")
            self.events.emit(SYNC_SUCCESS, job_id=job_id)

    def _ensure_task(self) -> None:
        if not self.auto_schedule or self._task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: entries wait for an explicit process()
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        try:
            while self._pending:
                await asyncio.sleep(self.check_interval)
                await self.process()
        finally:
            self._task = None

    async def aclose(self) -> None:
        """Stop the background check (pending entries are kept)."""
        task = self._task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
