"""
Dual-tier job synchronizer.

The local tier is fast and ephemeral; the remote tier is authoritative and
shared across clients. Reads consult both and resolve conflicts
deterministically; writes land locally first and then remotely, with failed
remote writes handed to the retry queue. Remote requests for one job id are
serialized through a shared write guard. Without a remote client (or without
a credential) everything runs against the local tier alone.
"""

import logging
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from scene_pipeline.infra.config import Settings
from scene_pipeline.infra.data_paths import get_local_store_dir
from scene_pipeline.infra.events import JobEventBus
from scene_pipeline.pipeline.entities import Job, JobInfo

from .conflict import CLOUD, LOCAL, resolve_conflict
from .local_jobs import LocalJobCache
from .local_store import JsonFileStore
from .remote_client import (
    RemoteAuthError,
    RemoteJobClient,
    RemoteNotFoundError,
    RemoteStoreError,
)
from .retry_queue import SyncRetryQueue
from .write_guard import JobWriteGuard

if TYPE_CHECKING:
    from scene_pipeline.pipeline.phase_cache import PhaseCache

logger = logging.getLogger(__name__)


class JobSynchronizer:
    """
    Single entry point for job persistence.

    Usage:
        sync = JobSynchronizer(local, remote, events)
        await sync.save_job(job)
        job, source = await sync.get_job(job.job_id)
    """

    def __init__(
        self,
        local: LocalJobCache,
        remote: Optional[RemoteJobClient] = None,
        events: Optional[JobEventBus] = None,
        retry_queue: Optional[SyncRetryQueue] = None,
        settings: Optional[Settings] = None,
        phase_cache: Optional["PhaseCache"] = None,
    ):
        self.local = local
        self.phase_cache = phase_cache
        self.remote = remote
        self.events = events or local.events
        self.retry_queue = None
        self.write_guard = JobWriteGuard()

        if self.remote_enabled:
            if retry_queue is None:
                settings = settings or Settings()
                retry_queue = SyncRetryQueue(
                    self.remote.put_job,
                    events=self.events,
                    max_attempts=settings.sync_max_retry_attempts,
                    base_delay=settings.sync_retry_base_delay,
                    write_guard=self.write_guard,
                )
            self.retry_queue = retry_queue
            self.write_guard = retry_queue.write_guard

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None and self.remote.enabled

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Tuple[Optional[Job], Optional[str]]:
        """
        Read one job from both tiers.

        Returns:
            (job, source) with source "local" or "cloud"; (None, None) if
            neither tier has a live copy
        """
        local_job = self.local.get_job(job_id)
        if not self.remote_enabled:
            return (local_job, LOCAL) if local_job else (None, None)

        try:
            remote_job = await self.remote.get_job(job_id)
        except RemoteNotFoundError:
            remote_job = None
        except RemoteAuthError:
            logger.warning(f"[Sync] Invalid database key reading {job_id}, using local tier")
            remote_job = None
        except RemoteStoreError as e:
            logger.warning(f"[Sync] Remote read of {job_id} failed, using local tier: {e}")
            remote_job = None

        if remote_job is not None and self._hidden_remote(remote_job.job_id, remote_job.timestamp, remote_job.expires_at):
            remote_job = None

        if local_job is None and remote_job is None:
            return None, None
        if remote_job is None:
            return local_job, LOCAL
        if local_job is None:
            return remote_job, CLOUD
        return resolve_conflict(local_job, remote_job)

    async def list_jobs(self) -> List[JobInfo]:
        """
        Merged listing of both tiers, newest first.

        Each entry is labeled with the tier its winning copy came from.
        """
        local_infos = {info.job_id: info for info in self.local.list_jobs()}
        if not self.remote_enabled:
            return self._sorted(local_infos.values())

        try:
            remote_list = await self.remote.list_jobs()
        except RemoteAuthError:
            logger.warning("[Sync] Invalid database key listing jobs, using local tier")
            return self._sorted(local_infos.values())
        except RemoteStoreError as e:
            logger.warning(f"[Sync] Remote listing failed, using local tier: {e}")
            return self._sorted(local_infos.values())

        merged: Dict[str, JobInfo] = dict(local_infos)
        for remote_info in remote_list:
            if self._hidden_remote(remote_info.job_id, remote_info.timestamp, remote_info.expires_at):
                continue
            remote_info.storage_source = CLOUD
            local_info = merged.get(remote_info.job_id)
            if local_info is None:
                merged[remote_info.job_id] = remote_info
            else:
                winner, _ = resolve_conflict(local_info, remote_info)
                merged[remote_info.job_id] = winner

        return self._sorted(merged.values())

    @staticmethod
    def _sorted(infos) -> List[JobInfo]:
        return sorted(infos, key=lambda info: info.timestamp, reverse=True)

    def _hidden_remote(self, job_id: str, timestamp: float, expires_at: Optional[float]) -> bool:
        """Remote copies are ignored once expired or while a local delete is in grace."""
        if expires_at is not None and self.local.now() > expires_at:
            return True
        return self.local.is_suppressed(job_id, timestamp)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def save_job(self, job: Job, regenerate: bool = False) -> Job:
        """
        Write a job to the local tier, then the remote tier.

        Remote failures never fail the save: 401 is logged and abandons any
        queued writes, everything else is queued for retry.

        Returns:
            The job as written locally
        """
        saved = self.local.save_job(job, regenerate=regenerate)
        if not self.remote_enabled:
            return saved

        async with self.write_guard.hold(saved.job_id):
            # A newer direct write makes any queued copy stale
            self.retry_queue.discard(saved.job_id)
            try:
                await self.remote.put_job(saved)
            except RemoteAuthError:
                logger.warning(f"[Sync] Invalid database key, {saved.job_id} saved locally only")
                self.retry_queue.clear()
                return saved
            except RemoteStoreError as e:
                logger.warning(f"[Sync] Remote write of {saved.job_id} failed, queued for retry: {e}")
                self.retry_queue.enqueue(saved)
                return saved

        return saved

    async def delete_job(self, job_id: str) -> None:
        """Delete locally now, remotely best effort (not retried)."""
        self.local.delete_job(job_id, tombstone=self.remote_enabled)
        if self.phase_cache is not None:
            self.phase_cache.clear(job_id)
        if not self.remote_enabled:
            return

        async with self.write_guard.hold(job_id):
            self.retry_queue.discard(job_id)
            try:
                await self.remote.delete_job(job_id)
            except RemoteNotFoundError:
                self.local.clear_tombstone(job_id)
            except RemoteStoreError as e:
                logger.warning(f"[Sync] Remote delete of {job_id} failed, local copy deleted: {e}")
            else:
                self.local.clear_tombstone(job_id)

    async def clear_all(self) -> None:
        """Clear both tiers; the remote clear is best effort."""
        self.local.clear_all()
        if self.phase_cache is not None:
            self.phase_cache.clear_all()
        if not self.remote_enabled:
            return

        self.retry_queue.clear()
        try:
            await self.remote.clear_jobs()
        except RemoteStoreError as e:
            logger.warning(f"[Sync] Remote clear failed, local tier cleared: {e}")

    async def sync_job_to_cloud(self, job_id: str) -> bool:
        """
        Move a local job to the remote tier.

        The local copy is removed only after the remote write succeeded.

        Returns:
            True if the job now lives remotely
        """
        if not self.remote_enabled:
            logger.warning("[Sync] Remote tier not configured, cannot sync to cloud")
            return False

        async with self.write_guard.hold(job_id):
            job = self.local.get_job(job_id)
            if job is None:
                logger.warning(f"[Sync] No local copy of {job_id} to sync")
                return False

            try:
                await self.remote.put_job(job)
            except RemoteStoreError as e:
                logger.warning(f"[Sync] Sync of {job_id} to cloud failed, local copy kept: {e}")
                return False

            self.retry_queue.discard(job_id)

        self.local.delete_job(job_id, tombstone=False)
        logger.info(f"[Sync] Moved {job_id} to cloud")
        return True

    async def fix_orphaned_jobs(self) -> int:
        """Complete in_progress jobs that already have scenes, in both tiers."""
        fixed = len(self.local.fix_orphaned_jobs())
        if not self.remote_enabled:
            return fixed
        try:
            fixed += await self.remote.fix_orphaned()
        except RemoteStoreError as e:
            logger.warning(f"[Sync] Remote orphan fix failed: {e}")
        return fixed

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def is_using_cloud_storage(self) -> bool:
        return self.remote_enabled

    async def aclose(self) -> None:
        if self.retry_queue is not None:
            await self.retry_queue.aclose()
        if self.remote is not None:
            await self.remote.aclose()


def create_job_synchronizer(
    settings: Optional[Settings] = None,
    events: Optional[JobEventBus] = None,
    store: Optional[JsonFileStore] = None,
) -> JobSynchronizer:
    """
    Wire a synchronizer from settings.

    The remote tier is attached only when both REMOTE_STORE_URL and
    DATABASE_KEY are set.
    """
    settings = settings or Settings.from_env()
    events = events or JobEventBus()
    store = store or JsonFileStore(get_local_store_dir())

    local = LocalJobCache(
        store,
        events=events,
        max_items=settings.max_cached_jobs,
        delete_grace=settings.delete_grace,
    )
    remote = None
    if settings.remote_enabled:
        remote = RemoteJobClient(settings.remote_store_url, settings.database_key, settings.remote_timeout)
    else:
        logger.info("[Sync] No remote store configured, running local-only")

    from scene_pipeline.pipeline.phase_cache import PhaseCache

    phase_cache = PhaseCache(store, max_items=settings.phase_cache_max_items)

    return JobSynchronizer(local, remote, events=events, settings=settings, phase_cache=phase_cache)
