"""
Phase-level result cache.

Caches Phase 0 (color profile), Phase 1 (characters) and every Phase 2
batch of a job individually, so a resumed job can skip whatever already
finished. Entries live in the local tier under the "phase_" prefix.

Every update is a read-modify-write of the whole entry. Batch writes for the
same job can overlap when batches run concurrently, so they go through a
per-job advisory lock:

- cache_phase2_batch waits for the lock (forcing it after a timeout)
- cache_phase2_batch_nowait warns on contention and writes anyway

The cache is an optimization; a missing or unreadable entry reads as None.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from scene_pipeline.infra.config import (
    MAX_LOG_BODY_LENGTH,
    PHASE_CACHE_MAX_ITEMS,
    PHASE_CACHE_TTL_SECONDS,
)
from scene_pipeline.storage.local_store import JsonFileStore, LocalStorageCache

from .entities import PhaseCacheEntry, Scene, scenes_to_dicts

logger = logging.getLogger(__name__)

PHASE_CACHE_PREFIX = "phase_"

DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_LOCK_POLL = 0.05


@dataclass
class PhaseCacheContext:
    """Identifies the job a phase result belongs to."""
    source_url: str
    settings: Dict[str, Any] = field(default_factory=dict)


def create_phase_cache_settings(mode: str, scene_count: int, batch_size: int, workflow: str) -> Dict[str, Any]:
    """Settings block stored with each phase cache entry."""
    return {
        "mode": mode,
        "scene_count": scene_count,
        "batch_size": batch_size,
        "workflow": workflow,
    }


class AdvisoryLock:
    """
    Per-key in-flight marker.

    Only cooperating writers honor it; it protects nothing on its own.
    """

    def __init__(self):
        self._held: Set[str] = set()

    def is_locked(self, key: str) -> bool:
        return key in self._held

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def acquire(
        self,
        key: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_LOCK_POLL,
    ) -> bool:
        """
        Wait for the lock, polling until timeout.

        Returns:
            True if acquired cleanly, False if it was forced after the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.try_acquire(key):
            if loop.time() >= deadline:
                logger.warning(f"[PhaseCache] Lock for {key} still held after {timeout}s, forcing")
                self._held.add(key)
                return False
            await asyncio.sleep(poll_interval)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)


def _truncate_body(section: Any, max_length: int) -> Any:
    if isinstance(section, dict) and isinstance(section.get("body"), str):
        return {**section, "body": section["body"][:max_length]}
    return section


class PhaseCache:
    """Per-job cache of phase results."""

    def __init__(
        self,
        store: JsonFileStore,
        max_items: int = PHASE_CACHE_MAX_ITEMS,
        ttl_seconds: float = PHASE_CACHE_TTL_SECONDS,
        max_body_length: int = MAX_LOG_BODY_LENGTH,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        lock_poll_interval: float = DEFAULT_LOCK_POLL,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = LocalStorageCache(store, PHASE_CACHE_PREFIX, max_items, ttl_seconds, clock)
        self.max_body_length = max_body_length
        self.lock = AdvisoryLock()
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self._clock = clock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[PhaseCacheEntry]:
        """Cached phases for a job, or None."""
        data = self._cache.get(job_id)
        if data is None:
            return None
        try:
            return PhaseCacheEntry.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"[PhaseCache] Dropping unreadable entry for {job_id}: {e}")
            self._cache.delete(job_id)
            return None

    def get_all(self) -> List[PhaseCacheEntry]:
        entries = []
        for item_id, data, _ in self._cache.entries():
            try:
                entries.append(PhaseCacheEntry.from_dict(data))
            except (ValueError, TypeError) as e:
                logger.warning(f"[PhaseCache] Dropping unreadable entry for {item_id}: {e}")
                self._cache.delete(item_id)
        return entries

    def clear(self, job_id: str) -> None:
        self._cache.delete(job_id)

    def clear_all(self) -> int:
        """Drop every cached job; returns how many were removed."""
        return self._cache.clear()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _update(self, job_id: str, context: PhaseCacheContext, mutate: Callable[[PhaseCacheEntry], None]) -> None:
        entry = self.get(job_id) or PhaseCacheEntry(
            job_id=job_id,
            source_url=context.source_url,
            settings=dict(context.settings),
            timestamp=self._clock(),
        )
        mutate(entry)
        entry.timestamp = self._clock()
        self._cache.set(job_id, entry.to_dict())

    def cache_phase0(self, job_id: str, context: PhaseCacheContext, color_profile: dict, confidence: float) -> None:
        def mutate(entry: PhaseCacheEntry) -> None:
            entry.phase0 = {"color_profile": color_profile, "confidence": confidence}

        self._update(job_id, context, mutate)

    def cache_phase1(
        self,
        job_id: str,
        context: PhaseCacheContext,
        characters: List[dict],
        background: str,
        registry: Dict[str, str],
    ) -> None:
        def mutate(entry: PhaseCacheEntry) -> None:
            entry.phase1 = {"characters": characters, "background": background, "registry": dict(registry)}

        self._update(job_id, context, mutate)

    def _batch_mutation(self, batch_number: int, scenes: List[Scene], characters: Dict[str, str]):
        payload = {"scenes": scenes_to_dicts(scenes), "characters": dict(characters)}

        def mutate(entry: PhaseCacheEntry) -> None:
            entry.phase2_batches[batch_number] = payload

        return mutate

    def cache_phase2_batch_nowait(
        self,
        job_id: str,
        context: PhaseCacheContext,
        batch_number: int,
        scenes: List[Scene],
        characters: Dict[str, str],
    ) -> None:
        """Cache one batch immediately, even if another writer holds the lock."""
        if self.lock.is_locked(job_id):
            logger.warning(
                f"[PhaseCache] Batch {batch_number} of {job_id} written while the lock "
                f"is held; a concurrent update may be lost"
            )
        self._update(job_id, context, self._batch_mutation(batch_number, scenes, characters))

    async def cache_phase2_batch(
        self,
        job_id: str,
        context: PhaseCacheContext,
        batch_number: int,
        scenes: List[Scene],
        characters: Dict[str, str],
    ) -> None:
        """Cache one batch, serialized with other waiting writers for the same job."""
        await self.lock.acquire(job_id, self.lock_timeout, self.lock_poll_interval)
        try:
            mutate = self._batch_mutation(batch_number, scenes, characters)
            await asyncio.to_thread(self._update, job_id, context, mutate)
        finally:
            self.lock.release(job_id)

    def add_log(self, job_id: str, context: PhaseCacheContext, entry: dict) -> None:
        """Append one call record, truncating request and response bodies."""
        truncated = dict(entry)
        for section in ("request", "response"):
            if section in truncated:
                truncated[section] = _truncate_body(truncated[section], self.max_body_length)

        def mutate(cache_entry: PhaseCacheEntry) -> None:
            cache_entry.logs.append(truncated)

        self._update(job_id, context, mutate)
