"""
Tests for the dual-tier job synchronizer.

The remote tier is an in-memory fake served through httpx.MockTransport.
"""

import asyncio
import json
import logging

import httpx
import pytest

from scene_pipeline.infra.config import Settings
from scene_pipeline.pipeline.entities import JobStatus
from scene_pipeline.pipeline.phase_cache import PhaseCache, PhaseCacheContext
from scene_pipeline.storage.local_jobs import LocalJobCache
from scene_pipeline.storage.remote_client import RemoteJobClient
from scene_pipeline.storage.retry_queue import SyncRetryQueue
from scene_pipeline.storage.synchronizer import JobSynchronizer, create_job_synchronizer

from conftest import make_job, numbered_scenes

VALID_KEY = "test-key"


class FakeRemoteStore:
    """Minimal job store behind httpx.MockTransport."""

    def __init__(self):
        self.jobs = {}
        self.mode = "ok"  # ok | unauthorized | down | error
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.mode == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if self.mode == "error":
            return httpx.Response(500, text="boom")
        if self.mode == "unauthorized" or request.headers.get("X-Database-Key") != VALID_KEY:
            return httpx.Response(401, json={"detail": "Unauthorized: Invalid database key"})

        path = request.url.path
        if path == "/jobs" and request.method == "GET":
            return httpx.Response(200, json={"jobs": [self._info(doc) for doc in self.jobs.values()]})
        if path == "/jobs" and request.method == "DELETE":
            self.jobs.clear()
            return httpx.Response(200, json={"success": True})
        if path == "/jobs/fix-orphaned":
            fixed = [
                job_id for job_id, doc in self.jobs.items()
                if doc["status"] == "in_progress" and doc["scenes"]
            ]
            for job_id in fixed:
                self.jobs[job_id]["status"] = "completed"
            return httpx.Response(200, json={"success": True, "fixed": len(fixed), "job_ids": fixed})

        job_id = path.rsplit("/", 1)[-1]
        if request.method == "GET":
            if job_id not in self.jobs:
                return httpx.Response(404, json={"detail": "Job not found or expired"})
            return httpx.Response(200, json={"job": self.jobs[job_id]})
        if request.method == "PUT":
            self.jobs[job_id] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})
        if request.method == "DELETE":
            if self.jobs.pop(job_id, None) is None:
                return httpx.Response(404, json={"detail": "Job not found"})
            return httpx.Response(200, json={"success": True})
        return httpx.Response(405)

    @staticmethod
    def _info(doc):
        return {
            "job_id": doc["job_id"],
            "source_id": doc["source_id"],
            "source_url": doc["source_url"],
            "scene_count": len(doc["scenes"]),
            "status": doc["status"],
            "timestamp": doc["timestamp"],
            "expires_at": doc["expires_at"],
            "storage_source": "cloud",
        }


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def local(store, events, clock):
    return LocalJobCache(store, events=events, clock=clock)


@pytest.fixture
def sync(local, events, clock, remote_store):
    remote = RemoteJobClient(
        "http://store.test", VALID_KEY, transport=httpx.MockTransport(remote_store.handler)
    )
    queue = SyncRetryQueue(remote.put_job, events=events, base_delay=0.0, auto_schedule=False, clock=clock)
    return JobSynchronizer(local, remote, events=events, retry_queue=queue)


class TestLocalOnly:
    """Synchronizer without a usable remote tier."""

    @pytest.mark.asyncio
    async def test_no_remote(self, local):
        sync = JobSynchronizer(local)
        await sync.save_job(make_job())

        job, source = await sync.get_job("job-00000001")

        assert source == "local"
        assert job.scene_count == 2
        assert sync.is_using_cloud_storage() is False
        assert sync.retry_queue is None

    @pytest.mark.asyncio
    async def test_remote_without_key_is_disabled(self, local):
        sync = JobSynchronizer(local, RemoteJobClient("http://store.test", None))
        assert sync.is_using_cloud_storage() is False
        assert await sync.sync_job_to_cloud("job-00000001") is False

    @pytest.mark.asyncio
    async def test_delete_without_remote_leaves_no_tombstone(self, local):
        sync = JobSynchronizer(local)
        await sync.save_job(make_job())
        await sync.delete_job("job-00000001")
        assert not local.is_suppressed("job-00000001")


class TestSaveJob:
    """Tests for JobSynchronizer.save_job."""

    @pytest.mark.asyncio
    async def test_writes_both_tiers(self, sync, remote_store, local):
        saved = await sync.save_job(make_job())

        assert local.get_job("job-00000001") is not None
        assert remote_store.jobs["job-00000001"]["timestamp"] == saved.timestamp
        assert sync.retry_queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_unauthorized_keeps_local_and_queues_nothing(self, sync, remote_store, local, caplog):
        remote_store.mode = "unauthorized"

        with caplog.at_level(logging.WARNING, logger="scene_pipeline"):
            saved = await sync.save_job(make_job())

        assert saved.job_id == "job-00000001"
        assert local.get_job("job-00000001") is not None
        assert sync.retry_queue.pending_count == 0
        assert "Invalid database key" in caplog.text

    @pytest.mark.asyncio
    async def test_transport_failure_queues_retry(self, sync, remote_store, local):
        remote_store.mode = "down"

        await sync.save_job(make_job())

        assert local.get_job("job-00000001") is not None
        assert sync.retry_queue.contains("job-00000001")

        remote_store.mode = "ok"
        await sync.retry_queue.process()

        assert "job-00000001" in remote_store.jobs
        assert sync.retry_queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_server_error_queues_retry(self, sync, remote_store):
        remote_store.mode = "error"
        await sync.save_job(make_job())
        assert sync.retry_queue.contains("job-00000001")

    @pytest.mark.asyncio
    async def test_successful_save_discards_pending_retry(self, sync, remote_store):
        remote_store.mode = "down"
        await sync.save_job(make_job(scene_count=1))
        remote_store.mode = "ok"

        await sync.save_job(make_job(scene_count=2))

        assert sync.retry_queue.pending_count == 0


class TestReads:
    """Tests for get_job and list_jobs."""

    @pytest.mark.asyncio
    async def test_remote_only_job(self, sync, local, remote_store, clock):
        await sync.save_job(make_job())
        local.delete_job("job-00000001", tombstone=False)

        job, source = await sync.get_job("job-00000001")

        assert source == "cloud"
        assert job.job_id == "job-00000001"

    @pytest.mark.asyncio
    async def test_conflict_prefers_completed_remote(self, sync, local, remote_store, clock):
        remote_job = make_job(status=JobStatus.COMPLETED, scene_count=2, timestamp=clock())
        remote_job.expires_at = clock() + 1000
        remote_store.jobs[remote_job.job_id] = remote_job.to_dict()
        local.save_job(make_job(status=JobStatus.PARTIAL, scene_count=3))

        job, source = await sync.get_job("job-00000001")

        assert source == "cloud"
        assert job.status == JobStatus.COMPLETED
        assert job.scene_count == 2
        # loser is kept
        assert local.get_job("job-00000001").status == JobStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_falls_back_to_local_when_remote_down(self, sync, local, remote_store):
        local.save_job(make_job())
        remote_store.mode = "down"

        job, source = await sync.get_job("job-00000001")
        infos = await sync.list_jobs()

        assert source == "local"
        assert job is not None
        assert [info.job_id for info in infos] == ["job-00000001"]

    @pytest.mark.asyncio
    async def test_missing_everywhere(self, sync):
        assert await sync.get_job("job-missing1") == (None, None)

    @pytest.mark.asyncio
    async def test_list_merges_tiers(self, sync, local, remote_store, clock):
        await sync.save_job(make_job(job_id="job-shared01"))
        remote_only = make_job(job_id="job-remote01", timestamp=clock() + 5)
        remote_only.expires_at = clock() + 1000
        remote_store.jobs[remote_only.job_id] = remote_only.to_dict()

        infos = await sync.list_jobs()

        assert [(info.job_id, info.storage_source) for info in infos] == [
            ("job-remote01", "cloud"),
            ("job-shared01", "local"),
        ]

    @pytest.mark.asyncio
    async def test_expired_remote_copy_is_hidden(self, sync, remote_store, clock):
        expired = make_job(timestamp=clock() - 100)
        expired.expires_at = clock() - 1
        remote_store.jobs[expired.job_id] = expired.to_dict()

        assert await sync.get_job(expired.job_id) == (None, None)
        assert await sync.list_jobs() == []


class TestDeletes:
    """Tests for delete_job and clear_all."""

    @pytest.mark.asyncio
    async def test_delete_both_tiers(self, sync, remote_store, local):
        await sync.save_job(make_job())

        await sync.delete_job("job-00000001")

        assert remote_store.jobs == {}
        assert await sync.get_job("job-00000001") == (None, None)
        # remote confirmed, tombstone no longer needed
        assert not local.is_suppressed("job-00000001")

    @pytest.mark.asyncio
    async def test_failed_remote_delete_does_not_resurrect(self, sync, remote_store, local):
        await sync.save_job(make_job())
        remote_store.mode = "down"

        await sync.delete_job("job-00000001")
        remote_store.mode = "ok"

        assert "job-00000001" in remote_store.jobs
        assert await sync.get_job("job-00000001") == (None, None)
        assert await sync.list_jobs() == []

    @pytest.mark.asyncio
    async def test_clear_all_hides_stale_remote_copies(self, sync, remote_store, clock):
        await sync.save_job(make_job())
        remote_store.mode = "down"

        await sync.clear_all()
        remote_store.mode = "ok"

        assert await sync.list_jobs() == []

        clock.advance(10)
        await sync.save_job(make_job(job_id="job-00000002"))
        assert [info.job_id for info in await sync.list_jobs()] == ["job-00000002"]


class TestSyncJobToCloud:
    """Tests for sync_job_to_cloud."""

    @pytest.mark.asyncio
    async def test_moves_job(self, sync, local, remote_store):
        local.save_job(make_job())

        assert await sync.sync_job_to_cloud("job-00000001") is True

        assert local.get_job("job-00000001") is None
        assert "job-00000001" in remote_store.jobs
        job, source = await sync.get_job("job-00000001")
        assert source == "cloud"

    @pytest.mark.asyncio
    async def test_failure_keeps_local(self, sync, local, remote_store):
        local.save_job(make_job())
        remote_store.mode = "down"

        assert await sync.sync_job_to_cloud("job-00000001") is False
        assert local.get_job("job-00000001") is not None

    @pytest.mark.asyncio
    async def test_unknown_job(self, sync):
        assert await sync.sync_job_to_cloud("job-missing1") is False


class TestFixOrphaned:
    """Tests for fix_orphaned_jobs."""

    @pytest.mark.asyncio
    async def test_fixes_both_tiers(self, sync, local, remote_store, clock):
        local.save_job(make_job(job_id="job-local001", status=JobStatus.IN_PROGRESS))
        remote_job = make_job(job_id="job-remote01", status=JobStatus.IN_PROGRESS, timestamp=clock())
        remote_job.expires_at = clock() + 1000
        remote_store.jobs[remote_job.job_id] = remote_job.to_dict()

        assert await sync.fix_orphaned_jobs() == 2
        assert remote_store.jobs["job-remote01"]["status"] == "completed"


class TestFactory:
    """Tests for create_job_synchronizer."""

    def test_local_only_without_credentials(self, store):
        sync = create_job_synchronizer(Settings(), store=store)
        assert sync.is_using_cloud_storage() is False

    def test_remote_with_url_and_key(self, store):
        settings = Settings(remote_store_url="http://store.test", database_key=VALID_KEY)
        sync = create_job_synchronizer(settings, store=store)
        assert sync.is_using_cloud_storage() is True
        assert sync.retry_queue is not None
        assert sync.retry_queue.max_attempts == settings.sync_max_retry_attempts

    def test_retry_queue_shares_write_guard(self, store):
        settings = Settings(remote_store_url="http://store.test", database_key=VALID_KEY)
        sync = create_job_synchronizer(settings, store=store)
        assert sync.retry_queue.write_guard is sync.write_guard
        assert sync.phase_cache is not None


class HeldRemoteStore(FakeRemoteStore):
    """Fake store that can keep the next PUT open until released."""

    def __init__(self):
        super().__init__()
        self.hold_next_put = False
        self.put_started = asyncio.Event()
        self.release = asyncio.Event()

    async def async_handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "PUT" and self.hold_next_put:
            self.hold_next_put = False
            self.put_started.set()
            await self.release.wait()
        return self.handler(request)


@pytest.fixture
def held_store():
    return HeldRemoteStore()


@pytest.fixture
def held_sync(local, events, clock, held_store):
    remote = RemoteJobClient(
        "http://store.test", VALID_KEY, transport=httpx.MockTransport(held_store.async_handler)
    )
    queue = SyncRetryQueue(remote.put_job, events=events, base_delay=0.0, auto_schedule=False, clock=clock)
    return JobSynchronizer(local, remote, events=events, retry_queue=queue)


async def start_held_retry(sync, held_store):
    """Queue a stale copy, then start a retry flush whose PUT stays in flight."""
    held_store.mode = "down"
    await sync.save_job(make_job(status=JobStatus.IN_PROGRESS, scene_count=1))
    assert sync.retry_queue.contains("job-00000001")

    held_store.mode = "ok"
    held_store.hold_next_put = True
    flush = asyncio.create_task(sync.retry_queue.process())
    await held_store.put_started.wait()
    return flush


class TestConcurrentWrites:
    """One remote write per job id at a time, landing in start order."""

    @pytest.mark.asyncio
    async def test_direct_save_lands_after_in_flight_retry(self, held_sync, held_store, local):
        flush = await start_held_retry(held_sync, held_store)

        save = asyncio.create_task(
            held_sync.save_job(make_job(status=JobStatus.COMPLETED, scene_count=4))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        assert not save.done()
        assert held_sync.write_guard.is_held("job-00000001")

        held_store.release.set()
        await flush
        await save

        remote_copy = held_store.jobs["job-00000001"]
        assert len(remote_copy["scenes"]) == 4
        assert remote_copy["status"] == "completed"
        assert local.get_job("job-00000001").status == JobStatus.COMPLETED
        assert held_sync.retry_queue.pending_count == 0
        assert held_sync.write_guard.active_count == 0

    @pytest.mark.asyncio
    async def test_delete_during_in_flight_retry_stays_deleted(self, held_sync, held_store):
        flush = await start_held_retry(held_sync, held_store)

        delete = asyncio.create_task(held_sync.delete_job("job-00000001"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not delete.done()

        held_store.release.set()
        await flush
        await delete

        assert "job-00000001" not in held_store.jobs
        assert await held_sync.get_job("job-00000001") == (None, None)
        assert held_sync.retry_queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_sync_to_cloud_waits_for_in_flight_retry(self, held_sync, held_store, local):
        flush = await start_held_retry(held_sync, held_store)
        local.save_job(make_job(status=JobStatus.COMPLETED, scene_count=3))

        move = asyncio.create_task(held_sync.sync_job_to_cloud("job-00000001"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not move.done()

        held_store.release.set()
        await flush

        assert await move is True
        assert len(held_store.jobs["job-00000001"]["scenes"]) == 3
        assert local.get_job("job-00000001") is None


class TestPhaseCachePurge:
    """Deleting jobs drops their phase cache entries."""

    @pytest.fixture
    def phase_cache(self, store, clock):
        return PhaseCache(store, clock=clock)

    def cache_batch(self, phase_cache, job_id):
        phase_cache.cache_phase2_batch_nowait(
            job_id, PhaseCacheContext(source_url="u"), 0, numbered_scenes(0, 1), {}
        )

    @pytest.mark.asyncio
    async def test_delete_purges_phase_cache(self, local, phase_cache):
        sync = JobSynchronizer(local, phase_cache=phase_cache)
        await sync.save_job(make_job())
        self.cache_batch(phase_cache, "job-00000001")
        self.cache_batch(phase_cache, "job-00000002")

        await sync.delete_job("job-00000001")

        assert phase_cache.get("job-00000001") is None
        assert phase_cache.get("job-00000002") is not None

    @pytest.mark.asyncio
    async def test_clear_all_purges_phase_cache(self, local, phase_cache):
        sync = JobSynchronizer(local, phase_cache=phase_cache)
        self.cache_batch(phase_cache, "job-00000001")
        self.cache_batch(phase_cache, "job-00000002")

        await sync.clear_all()

        assert phase_cache.get_all() == []
