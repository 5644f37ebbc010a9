"""
Progress tracking for resumable jobs.

Two holders of the same ProgressRecord:

- ProgressStore: the client's "current job" record in the local tier
  (one in-flight job per client)
- ServerProgressStore: in-process table used while the batch loop runs,
  bounded by a TTL and a maximum size

The transition functions are pure; they return a new record and never touch
storage.
"""

import dataclasses
import logging
import math
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from scene_pipeline.infra.config import (
    SERVER_PROGRESS_MAX_SIZE,
    SERVER_PROGRESS_TTL_SECONDS,
)
from scene_pipeline.storage.local_store import JsonFileStore

from .entities import JobStatus, ProgressRecord, ResumeData, Scene, now_iso
from .errors import InvalidOperationError

logger = logging.getLogger(__name__)

PROGRESS_KEY = "progress_current"


# =============================================================================
# Transitions
# =============================================================================

def create_progress(
    job_id: str,
    mode: str,
    source_url: str,
    source_id: str,
    scene_count: int,
    batch_size: int,
    voice: str,
    total_batches: int,
    script_text: Optional[str] = None,
) -> ProgressRecord:
    """Initial record for a job that has not run any batch yet."""
    return ProgressRecord(
        job_id=job_id,
        mode=mode,
        source_url=source_url,
        source_id=source_id,
        scene_count=scene_count,
        batch_size=batch_size,
        voice=voice,
        total_batches=total_batches,
        completed_batches=0,
        status=JobStatus.PENDING,
        script_text=script_text,
    )


def update_progress_after_batch(
    progress: ProgressRecord,
    batch_scenes: List[Scene],
    new_characters: Dict[str, str],
) -> ProgressRecord:
    """
    Record one finished batch.

    Raises:
        InvalidOperationError: If every batch is already complete
    """
    if progress.completed_batches >= progress.total_batches:
        raise InvalidOperationError(
            f"Job {progress.job_id} already completed {progress.completed_batches}"
            f"/{progress.total_batches} batches"
        )
    return dataclasses.replace(
        progress,
        completed_batches=progress.completed_batches + 1,
        scenes=[*progress.scenes, *batch_scenes],
        character_registry={**progress.character_registry, **new_characters},
        last_updated=now_iso(),
        status=JobStatus.IN_PROGRESS,
    )


def mark_progress_failed(progress: ProgressRecord, error: str) -> ProgressRecord:
    return dataclasses.replace(
        progress,
        last_error=error,
        last_updated=now_iso(),
        status=JobStatus.FAILED,
    )


def mark_progress_completed(progress: ProgressRecord) -> ProgressRecord:
    return dataclasses.replace(progress, last_updated=now_iso(), status=JobStatus.COMPLETED)


def update_progress_with_script(progress: ProgressRecord, script_text: str) -> ProgressRecord:
    return dataclasses.replace(progress, script_text=script_text, last_updated=now_iso())


def get_resume_data(progress: ProgressRecord) -> Optional[ResumeData]:
    """
    Everything needed to continue the job, or None if it cannot resume.

    A job resumes only when it is not completed and 0 < completed < total.
    """
    if (
        progress.status == JobStatus.COMPLETED
        or progress.completed_batches == 0
        or progress.completed_batches >= progress.total_batches
    ):
        return None

    return ResumeData(
        job_id=progress.job_id,
        source_url=progress.source_url,
        script_text=progress.script_text,
        mode=progress.mode,
        scene_count=progress.scene_count,
        batch_size=progress.batch_size,
        voice=progress.voice,
        completed_batches=progress.completed_batches,
        total_batches=progress.total_batches,
        existing_scenes=list(progress.scenes),
        existing_characters=dict(progress.character_registry),
    )


def can_resume_progress(progress: Optional[ProgressRecord]) -> bool:
    if progress is None:
        return False
    return get_resume_data(progress) is not None


def calculate_progress_percent(progress: ProgressRecord) -> int:
    """Completed batches as a whole percentage (half rounds up)."""
    if progress.total_batches == 0:
        return 0
    return math.floor(progress.completed_batches / progress.total_batches * 100 + 0.5)


_MESSAGES = {
    "en": {
        JobStatus.PENDING: "Waiting to start...",
        JobStatus.IN_PROGRESS: "Processing: {completed}/{total} batches ({percent}%)",
        JobStatus.COMPLETED: "Completed: {scenes} scenes",
        JobStatus.FAILED: "Failed at batch {next_batch}: {error}",
    },
    "vi": {
        JobStatus.PENDING: "Đang chờ xử lý...",
        JobStatus.IN_PROGRESS: "Đang xử lý: {completed}/{total} batches ({percent}%)",
        JobStatus.COMPLETED: "Hoàn thành: {scenes} scenes",
        JobStatus.FAILED: "Lỗi tại batch {next_batch}: {error}",
    },
}


def get_progress_message(progress: ProgressRecord, lang: str = "en") -> str:
    """Human-readable status line in English ("en") or Vietnamese ("vi")."""
    messages = _MESSAGES.get(lang, _MESSAGES["en"])
    status = JobStatus(progress.status)
    if status == JobStatus.PARTIAL:
        status = JobStatus.FAILED

    return messages[status].format(
        completed=progress.completed_batches,
        total=progress.total_batches,
        percent=calculate_progress_percent(progress),
        scenes=len(progress.scenes),
        next_batch=progress.completed_batches + 1,
        error=progress.last_error,
    )


# =============================================================================
# Client-persisted progress
# =============================================================================

class ProgressStore:
    """The client's single "current progress" record."""

    def __init__(self, store: JsonFileStore, key: str = PROGRESS_KEY):
        self.store = store
        self.key = key

    def load(self) -> Optional[ProgressRecord]:
        try:
            data = self.store.get(self.key)
        except ValueError as e:
            logger.warning(f"[Progress] Stored progress unreadable, ignoring: {e}")
            return None
        if data is None:
            return None
        try:
            return ProgressRecord.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"[Progress] Stored progress malformed, ignoring: {e}")
            return None

    def save(self, progress: ProgressRecord) -> None:
        self.store.set(self.key, progress.to_dict())

    def clear(self) -> None:
        self.store.delete(self.key)

    def exists(self) -> bool:
        return self.load() is not None


class ProgressTracker:
    """
    Progress transitions bundled with auto-save to a ProgressStore.

    Each transition persists the new record and returns it.
    """

    def __init__(self, store: ProgressStore):
        self.store = store

    def load(self) -> Optional[ProgressRecord]:
        return self.store.load()

    def clear(self) -> None:
        self.store.clear()

    def exists(self) -> bool:
        return self.store.exists()

    def start(self, **kwargs) -> ProgressRecord:
        progress = create_progress(**kwargs)
        self.store.save(progress)
        return progress

    def batch_completed(self, progress: ProgressRecord, scenes: List[Scene], characters: Dict[str, str]) -> ProgressRecord:
        progress = update_progress_after_batch(progress, scenes, characters)
        self.store.save(progress)
        return progress

    def failed(self, progress: ProgressRecord, error: str) -> ProgressRecord:
        progress = mark_progress_failed(progress, error)
        self.store.save(progress)
        return progress

    def completed(self, progress: ProgressRecord) -> ProgressRecord:
        progress = mark_progress_completed(progress)
        self.store.save(progress)
        return progress

    def resume_data(self) -> Optional[ResumeData]:
        progress = self.load()
        return get_resume_data(progress) if progress else None


# =============================================================================
# Server-side progress
# =============================================================================

@dataclasses.dataclass
class _ServerEntry:
    progress: ProgressRecord
    created_at: float


class ServerProgressStore:
    """
    In-process progress table for running jobs.

    Entries expire ttl_seconds after their first insert; updates keep the
    original creation time. Inserting a new job into a full table evicts the
    oldest entry.
    """

    def __init__(
        self,
        ttl_seconds: float = SERVER_PROGRESS_TTL_SECONDS,
        max_size: int = SERVER_PROGRESS_MAX_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, _ServerEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _ServerEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds

    def _evict_expired(self) -> None:
        for job_id in [k for k, entry in self._entries.items() if self._expired(entry)]:
            del self._entries[job_id]

    def _evict_oldest_if_full(self) -> None:
        if len(self._entries) < self.max_size:
            return
        oldest_id = min(self._entries, key=lambda k: self._entries[k].created_at)
        logger.debug(f"[Progress] Server table full, evicting {oldest_id}")
        del self._entries[oldest_id]

    def get(self, job_id: str) -> Optional[ProgressRecord]:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[job_id]
            return None
        return entry.progress

    def set(self, job_id: str, progress: ProgressRecord) -> None:
        existing = self._entries.get(job_id)
        if existing is not None:
            self._entries[job_id] = _ServerEntry(progress, existing.created_at)
            return
        self._evict_expired()
        self._evict_oldest_if_full()
        self._entries[job_id] = _ServerEntry(progress, self._clock())

    def has(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def delete(self, job_id: str) -> None:
        self._entries.pop(job_id, None)

    def get_all(self) -> Dict[str, ProgressRecord]:
        self._evict_expired()
        return {job_id: entry.progress for job_id, entry in self._entries.items()}

    def clear(self) -> None:
        self._entries.clear()
