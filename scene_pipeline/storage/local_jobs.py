"""
Local tier job cache.

Jobs are stored under the "job_" prefix of a LocalStorageCache. Besides the
cache's own item TTL, every job carries an expires_at derived from its
status at the last write; it is checked lazily on read.

Explicit deletes leave a tombstone so that a remote copy of the same job is
not resurrected by the next read. clear_all leaves a watermark with the same
effect for every remote copy written before it.
"""

import dataclasses
import logging
import time
from typing import Callable, List, Optional

from scene_pipeline.infra.config import (
    CACHE_TTL_SECONDS,
    DELETE_GRACE_SECONDS,
    MAX_CACHED_JOBS,
)
from scene_pipeline.infra.events import JOB_UPDATED, JobEventBus
from scene_pipeline.pipeline.entities import (
    Job,
    JobInfo,
    JobStatus,
    compute_expires_at,
)

from .local_store import JsonFileStore, LocalStorageCache

logger = logging.getLogger(__name__)

JOB_PREFIX = "job_"
TOMBSTONE_PREFIX = "tombstone_"
CLEAR_WATERMARK_KEY = "jobs_cleared_at"

# Tombstones are tiny; keep far more of them than jobs
MAX_TOMBSTONES = 1000


class LocalJobCache:
    """
    Job records in the local tier.

    All mutations emit JOB_UPDATED with the job id (None for bulk changes).
    """

    def __init__(
        self,
        store: JsonFileStore,
        events: Optional[JobEventBus] = None,
        max_items: int = MAX_CACHED_JOBS,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        delete_grace: float = DELETE_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.events = events or JobEventBus()
        self.delete_grace = delete_grace
        self._clock = clock
        self._jobs = LocalStorageCache(store, JOB_PREFIX, max_items, ttl_seconds, clock)
        self._tombstones = LocalStorageCache(store, TOMBSTONE_PREFIX, MAX_TOMBSTONES, delete_grace, clock)

    def now(self) -> float:
        """Current time on this cache's clock."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _load(self, job_id: str, data) -> Optional[Job]:
        """Deserialize a stored job, dropping it if corrupt or expired."""
        try:
            job = Job.from_dict(data)
        except ValueError as e:
            logger.warning(f"[LocalJobs] Dropping unreadable job {job_id}: {e}")
            self._jobs.delete(job_id)
            return None

        if job.is_expired(self._clock()):
            logger.info(f"[LocalJobs] Job {job_id} expired, removing")
            self._jobs.delete(job_id)
            return None
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Stored job, or None if missing or expired."""
        data = self._jobs.get(job_id)
        if data is None:
            return None
        return self._load(job_id, data)

    def all_jobs(self) -> List[Job]:
        """All live jobs, newest write first."""
        jobs = []
        for item_id, data, _ in self._jobs.entries():
            job = self._load(item_id, data)
            if job is not None:
                jobs.append(job)
        jobs.sort(key=lambda job: job.timestamp, reverse=True)
        return jobs

    def list_jobs(self) -> List[JobInfo]:
        """Listing view of all live jobs, newest first."""
        return [job.to_info("local") for job in self.all_jobs()]

    def jobs_for_source(self, source_id: str) -> List[JobInfo]:
        """Listing view of the jobs generated from one source, newest first."""
        return [info for info in self.list_jobs() if info.source_id == source_id]

    def latest_for_source(self, source_id: str) -> Optional[Job]:
        jobs = self.jobs_for_source(source_id)
        if not jobs:
            return None
        return self.get_job(jobs[0].job_id)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save_job(self, job: Job, regenerate: bool = False) -> Job:
        """
        Write a job, stamping timestamp and expires_at.

        The character registry is merged with the stored copy (new values
        win on key collisions). A write that would shrink the stored scene
        list keeps the stored scenes unless regenerate is set.

        Returns:
            The job as written
        """
        now = self._clock()
        existing = self.get_job(job.job_id)

        registry = dict(job.character_registry)
        scenes = list(job.scenes)
        if existing is not None and not regenerate:
            registry = {**existing.character_registry, **job.character_registry}
            if len(scenes) < len(existing.scenes):
                logger.warning(
                    f"[LocalJobs] Refusing to shrink scenes of {job.job_id} "
                    f"({len(existing.scenes)} -> {len(scenes)}); keeping stored scenes"
                )
                scenes = list(existing.scenes)

        status = JobStatus(job.status)
        saved = dataclasses.replace(
            job,
            scenes=scenes,
            character_registry=registry,
            status=status,
            timestamp=now,
            expires_at=compute_expires_at(status, now),
        )
        self._jobs.set(job.job_id, saved.to_dict())
        self.clear_tombstone(job.job_id)

        logger.debug(f"[LocalJobs] Saved {job.job_id} ({status.value}, {saved.scene_count} scenes)")
        self.events.emit(JOB_UPDATED, job_id=job.job_id)
        return saved

    def store_copy(self, job: Job) -> None:
        """Write a job exactly as given (timestamps untouched), without events."""
        self._jobs.set(job.job_id, job.to_dict())

    def delete_job(self, job_id: str, tombstone: bool = True) -> bool:
        """
        Remove a job from the local tier.

        Args:
            job_id: Job to remove
            tombstone: Leave a tombstone that hides remote copies for the grace period

        Returns:
            True if a local copy existed
        """
        existed = self._jobs.delete(job_id)
        if tombstone:
            self._tombstones.set(job_id, {"deleted_at": self._clock()})
        self.events.emit(JOB_UPDATED, job_id=job_id)
        return existed

    def clear_all(self) -> int:
        """Remove every local job and record a clear watermark."""
        removed = self._jobs.clear()
        self.store.set(CLEAR_WATERMARK_KEY, {"cleared_at": self._clock()})
        logger.info(f"[LocalJobs] Cleared {removed} jobs")
        self.events.emit(JOB_UPDATED, job_id=None)
        return removed

    def clear_expired(self) -> int:
        """Remove every expired job. Returns the count removed."""
        now = self._clock()
        removed = 0
        for item_id, data, _ in self._jobs.entries():
            expires_at = data.get("expires_at") if isinstance(data, dict) else None
            if expires_at is not None and now > float(expires_at):
                self._jobs.delete(item_id)
                removed += 1
        if removed:
            logger.info(f"[LocalJobs] Removed {removed} expired jobs")
        return removed

    def fix_orphaned_jobs(self) -> List[str]:
        """
        Mark jobs stuck in in_progress that already have scenes as completed.

        Returns:
            IDs of the jobs that were fixed
        """
        fixed = []
        for job in self.all_jobs():
            if job.status == JobStatus.IN_PROGRESS and job.scenes:
                repaired = dataclasses.replace(job, status=JobStatus.COMPLETED)
                self._jobs.set(job.job_id, repaired.to_dict())
                fixed.append(job.job_id)

        if fixed:
            logger.info(f"[LocalJobs] Fixed {len(fixed)} orphaned jobs: {fixed}")
            self.events.emit(JOB_UPDATED, job_id=None)
        return fixed

    # -------------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------------

    def _clear_watermark(self) -> Optional[float]:
        try:
            data = self.store.get(CLEAR_WATERMARK_KEY)
        except ValueError:
            self.store.delete(CLEAR_WATERMARK_KEY)
            return None
        if not isinstance(data, dict) or "cleared_at" not in data:
            return None

        cleared_at = float(data["cleared_at"])
        if self._clock() - cleared_at > self.delete_grace:
            self.store.delete(CLEAR_WATERMARK_KEY)
            return None
        return cleared_at

    def is_suppressed(self, job_id: str, remote_timestamp: Optional[float] = None) -> bool:
        """
        True if a remote copy of job_id should be hidden.

        A live tombstone hides every copy; a live clear watermark hides copies
        last written at or before the clear.
        """
        if self._tombstones.get(job_id) is not None:
            return True
        watermark = self._clear_watermark()
        if watermark is None:
            return False
        return remote_timestamp is None or remote_timestamp <= watermark

    def clear_tombstone(self, job_id: str) -> None:
        self._tombstones.delete(job_id)
