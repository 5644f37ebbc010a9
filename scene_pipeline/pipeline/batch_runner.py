"""
Phase 2 batch loop.

Drives scene generation for one job batch by batch:

1. Check the cancel signal
2. Ask the generation collaborator for the batch
3. Deduplicate against every scene accepted so far
4. Merge characters, record progress, cache the batch
5. Pause before the next batch

A batch already present in the phase cache (written by an earlier run
that stopped before the job was saved) is taken from the cache instead of
being generated again.

A failing batch stops the loop; scenes accepted before it are kept and the
failure is recorded as a JobError. A stored partial job carries enough
resume data to continue from the first unfinished batch.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import httpx

from scene_pipeline.dedup.scene_dedup import deduplicate_scenes
from scene_pipeline.infra.config import BATCH_DELAY_SECONDS, DEFAULT_DEDUP_THRESHOLD

from .entities import (
    Job,
    JobError,
    JobErrorType,
    JobStatus,
    JobSummary,
    ResumeData,
    Scene,
    now_iso,
)
from .errors import GenerationError, InvalidOperationError
from .phase_cache import PhaseCache, PhaseCacheContext, create_phase_cache_settings
from .progress import (
    ServerProgressStore,
    create_progress,
    mark_progress_completed,
    mark_progress_failed,
    update_progress_after_batch,
)

if TYPE_CHECKING:
    from scene_pipeline.storage.synchronizer import JobSynchronizer

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class JobRequest:
    """Parameters of one generation job."""
    job_id: str
    source_url: str
    source_id: str
    scene_count: int
    batch_size: int
    mode: str = "direct"
    voice: str = "no-voice"
    workflow: str = "url-to-scenes"
    script_text: Optional[str] = None

    @property
    def total_batches(self) -> int:
        if self.batch_size <= 0:
            return 0
        return math.ceil(self.scene_count / self.batch_size)


@dataclass
class BatchContext:
    """What the generation collaborator sees for one batch."""
    batch_number: int
    total_batches: int
    all_scenes: List[Scene]
    character_registry: Dict[str, str]


@dataclass
class BatchOutput:
    """What the generation collaborator returns for one batch."""
    scenes: List[Scene]
    characters: Dict[str, str] = field(default_factory=dict)


GenerateBatch = Callable[[int, BatchContext], Awaitable[BatchOutput]]


@dataclass
class BatchLoopConfig:
    """Inputs of run_batch_loop."""
    job_id: str
    total_batches: int
    generate_batch: GenerateBatch
    start_batch: int = 0
    initial_scenes: List[Scene] = field(default_factory=list)
    initial_characters: Dict[str, str] = field(default_factory=dict)
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD
    batch_delay: float = BATCH_DELAY_SECONDS
    cancel: Optional[asyncio.Event] = None
    server_progress: Optional[ServerProgressStore] = None
    phase_cache: Optional[PhaseCache] = None
    cache_context: Optional[PhaseCacheContext] = None


@dataclass
class BatchLoopResult:
    """Outcome of run_batch_loop."""
    scenes: List[Scene]
    character_registry: Dict[str, str]
    completed_batches: int
    total_batches: int
    elapsed: float
    batches_run: List[int] = field(default_factory=list)
    batches_reused: List[int] = field(default_factory=list)
    duplicates_removed: int = 0
    error: Optional[JobError] = None

    @property
    def failed_batch(self) -> Optional[int]:
        """1-based number of the batch that failed, if any."""
        return self.error.failed_batch if self.error else None

    @property
    def succeeded(self) -> bool:
        return self.error is None


# =============================================================================
# Error classification
# =============================================================================

def classify_error(error: BaseException, batch_number: int, total_batches: int) -> JobError:
    """
    Map a batch exception to a JobError.

    Args:
        error: Exception raised while generating the batch
        batch_number: Zero-based batch index
        total_batches: Batches in the job

    Returns:
        JobError with failed_batch as a 1-based number
    """
    if isinstance(error, GenerationError):
        status = error.status_code
        if status == 429:
            error_type, retryable = JobErrorType.RATE_LIMIT, True
        elif status == 403:
            error_type, retryable = JobErrorType.QUOTA_EXCEEDED, False
        elif status is not None and status < 500:
            error_type, retryable = JobErrorType.GENERATION_API_ERROR, False
        else:
            error_type, retryable = JobErrorType.GENERATION_API_ERROR, True
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        error_type, retryable = JobErrorType.TIMEOUT, True
    elif isinstance(error, (httpx.RequestError, ConnectionError)):
        error_type, retryable = JobErrorType.NETWORK_ERROR, True
    elif isinstance(error, (ValueError, KeyError)):
        error_type, retryable = JobErrorType.PARSE_ERROR, True
    elif isinstance(error, asyncio.CancelledError):
        error_type, retryable = JobErrorType.CANCELLED, True
    else:
        error_type, retryable = JobErrorType.UNKNOWN_ERROR, False

    return JobError(
        message=f"Batch {batch_number + 1}/{total_batches} failed: {error}",
        type=error_type,
        failed_batch=batch_number + 1,
        total_batches=total_batches,
        retryable=retryable,
    )


# =============================================================================
# Batch loop
# =============================================================================

def _record_resume(config: BatchLoopConfig) -> None:
    """Bring server progress in line with the batches a resumed job already has."""
    if config.server_progress is None or config.start_batch == 0:
        return
    progress = config.server_progress.get(config.job_id)
    if progress is None:
        return
    progress.completed_batches = config.start_batch
    progress.scenes = list(config.initial_scenes)
    progress.character_registry = dict(config.initial_characters)
    progress.status = JobStatus.IN_PROGRESS
    config.server_progress.set(config.job_id, progress)
    logger.info(
        f"[Batch] Resuming {config.job_id} from batch {config.start_batch + 1}/"
        f"{config.total_batches} with {len(config.initial_scenes)} existing scenes"
    )


def _cached_batches(config: BatchLoopConfig) -> Dict[int, BatchOutput]:
    """Batches from start_batch on that the phase cache already holds for this job."""
    if config.phase_cache is None or config.cache_context is None:
        return {}
    entry = config.phase_cache.get(config.job_id)
    if entry is None:
        return {}
    if entry.settings != config.cache_context.settings:
        logger.info(f"[Batch] Phase cache of {config.job_id} was written with other settings, ignored")
        return {}

    cached = {}
    for batch_num in entry.completed_batch_numbers():
        if config.start_batch <= batch_num < config.total_batches:
            cached[batch_num] = BatchOutput(
                scenes=entry.batch_scenes(batch_num),
                characters=dict(entry.phase2_batches[batch_num].get("characters") or {}),
            )
    return cached


async def run_batch_loop(config: BatchLoopConfig) -> BatchLoopResult:
    """
    Generate batches start_batch..total_batches-1 for one job.

    Never raises for a batch failure; the failure is returned on the result.
    """
    started = time.monotonic()
    all_scenes = list(config.initial_scenes)
    registry = dict(config.initial_characters)
    completed = config.start_batch
    batches_run: List[int] = []
    batches_reused: List[int] = []
    duplicates_removed = 0
    error: Optional[JobError] = None

    _record_resume(config)
    cached = _cached_batches(config)

    for batch_num in range(config.start_batch, config.total_batches):
        if config.cancel is not None and config.cancel.is_set():
            logger.info(f"[Batch] {config.job_id} cancelled before batch {batch_num + 1}")
            error = JobError(
                message=f"Cancelled before batch {batch_num + 1}/{config.total_batches}",
                type=JobErrorType.CANCELLED,
                failed_batch=batch_num + 1,
                total_batches=config.total_batches,
                retryable=True,
            )
            break

        reused = batch_num in cached
        if reused:
            logger.info(
                f"[Batch] {config.job_id} batch {batch_num + 1}/{config.total_batches} "
                f"taken from phase cache"
            )
            output = cached[batch_num]
            batches_reused.append(batch_num)
        else:
            logger.info(
                f"[Batch] {config.job_id} batch {batch_num + 1}/{config.total_batches} "
                f"({len(all_scenes)} scenes so far)"
            )
            context = BatchContext(
                batch_number=batch_num,
                total_batches=config.total_batches,
                all_scenes=list(all_scenes),
                character_registry=dict(registry),
            )

            try:
                output = await config.generate_batch(batch_num, context)
            except Exception as e:
                error = classify_error(e, batch_num, config.total_batches)
                logger.error(
                    f"[Batch] {error.message} (type={error.type.value}, "
                    f"retryable={error.retryable}, scenes kept={len(all_scenes)})"
                )
                break

        dedup = deduplicate_scenes(all_scenes, output.scenes, config.dedup_threshold)
        duplicates_removed += len(dedup.duplicates)
        all_scenes.extend(dedup.unique)
        registry = {**registry, **output.characters}
        completed += 1
        batches_run.append(batch_num)

        if config.server_progress is not None:
            progress = config.server_progress.get(config.job_id)
            if progress is not None and progress.completed_batches < progress.total_batches:
                config.server_progress.set(
                    config.job_id,
                    update_progress_after_batch(progress, dedup.unique, output.characters),
                )

        if reused:
            continue

        if config.phase_cache is not None and config.cache_context is not None:
            await config.phase_cache.cache_phase2_batch(
                config.job_id, config.cache_context, batch_num, dedup.unique, output.characters
            )

        if batch_num < config.total_batches - 1 and config.batch_delay > 0:
            await asyncio.sleep(config.batch_delay)

    if config.server_progress is not None:
        progress = config.server_progress.get(config.job_id)
        if progress is not None:
            if error is None:
                progress = mark_progress_completed(progress)
            else:
                progress = mark_progress_failed(progress, error.message)
            config.server_progress.set(config.job_id, progress)

    return BatchLoopResult(
        scenes=all_scenes,
        character_registry=registry,
        completed_batches=completed,
        total_batches=config.total_batches,
        elapsed=time.monotonic() - started,
        batches_run=batches_run,
        batches_reused=batches_reused,
        duplicates_removed=duplicates_removed,
        error=error,
    )


# =============================================================================
# Job assembly and resume
# =============================================================================

def build_job_from_result(
    request: JobRequest,
    result: BatchLoopResult,
    color_profile: Optional[dict] = None,
    script: Optional[dict] = None,
    logs: Optional[List[dict]] = None,
) -> Job:
    """
    Assemble the Job to persist after a batch loop.

    Status is completed when every batch ran, partial when it stopped with
    scenes kept, failed when it stopped with none. Unfinished jobs carry
    resume data.
    """
    if result.error is None:
        status = JobStatus.COMPLETED
    elif result.scenes:
        status = JobStatus.PARTIAL
    else:
        status = JobStatus.FAILED

    resume_data = None
    if status != JobStatus.COMPLETED:
        resume_data = {
            "completed_batches": result.completed_batches,
            "total_batches": result.total_batches,
            "mode": request.mode,
            "scene_count": request.scene_count,
            "batch_size": request.batch_size,
            "voice": request.voice,
            "workflow": request.workflow,
            "script_text": request.script_text,
        }

    summary = JobSummary(
        mode=request.mode,
        source_url=request.source_url,
        source_id=request.source_id,
        target_scenes=request.scene_count,
        actual_scenes=len(result.scenes),
        batches=result.total_batches,
        batch_size=request.batch_size,
        voice=request.voice,
        characters_found=len(result.character_registry),
        characters=list(result.character_registry),
        processing_time=f"{result.elapsed:.1f}s",
        created_at=now_iso(),
    )

    return Job(
        job_id=request.job_id,
        source_id=request.source_id,
        source_url=request.source_url,
        summary=summary,
        scenes=list(result.scenes),
        character_registry=dict(result.character_registry),
        status=status,
        error=result.error,
        script=script,
        color_profile=color_profile,
        logs=list(logs or []),
        resume_data=resume_data,
    )


def resume_request_from_job(job: Job) -> ResumeData:
    """
    Resume parameters for a stored unfinished job.

    Raises:
        InvalidOperationError: If the job cannot be resumed
    """
    data = job.resume_data or {}
    completed = int(data.get("completed_batches") or 0)
    total = int(data.get("total_batches") or 0)

    if job.status == JobStatus.COMPLETED or completed <= 0 or completed >= total:
        raise InvalidOperationError(
            f"Job {job.job_id} is not resumable (status={JobStatus(job.status).value}, "
            f"batches {completed}/{total})"
        )

    return ResumeData(
        job_id=job.job_id,
        source_url=job.source_url,
        mode=data.get("mode", job.summary.mode),
        scene_count=int(data.get("scene_count") or job.summary.target_scenes),
        batch_size=int(data.get("batch_size") or job.summary.batch_size or 0),
        voice=data.get("voice", job.summary.voice),
        completed_batches=completed,
        total_batches=total,
        existing_scenes=list(job.scenes),
        existing_characters=dict(job.character_registry),
        script_text=data.get("script_text"),
    )


async def execute_job(
    request: JobRequest,
    generate_batch: GenerateBatch,
    synchronizer: "JobSynchronizer",
    server_progress: Optional[ServerProgressStore] = None,
    phase_cache: Optional[PhaseCache] = None,
    resume: Optional[ResumeData] = None,
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
    batch_delay: float = BATCH_DELAY_SECONDS,
    cancel: Optional[asyncio.Event] = None,
) -> Job:
    """
    Run a job (or resume one) and persist the outcome through the synchronizer.

    The phase cache entry of a job that finishes completed is purged; an
    unfinished job keeps it so a later resume can reuse cached batches.

    Returns:
        The job as saved locally
    """
    total_batches = request.total_batches
    if server_progress is not None and not server_progress.has(request.job_id):
        server_progress.set(request.job_id, create_progress(
            job_id=request.job_id,
            mode=request.mode,
            source_url=request.source_url,
            source_id=request.source_id,
            scene_count=request.scene_count,
            batch_size=request.batch_size,
            voice=request.voice,
            total_batches=total_batches,
            script_text=request.script_text,
        ))

    cache_context = PhaseCacheContext(
        source_url=request.source_url,
        settings=create_phase_cache_settings(
            request.mode, request.scene_count, request.batch_size, request.workflow
        ),
    )

    result = await run_batch_loop(BatchLoopConfig(
        job_id=request.job_id,
        total_batches=total_batches,
        generate_batch=generate_batch,
        start_batch=resume.next_batch if resume else 0,
        initial_scenes=list(resume.existing_scenes) if resume else [],
        initial_characters=dict(resume.existing_characters) if resume else {},
        dedup_threshold=dedup_threshold,
        batch_delay=batch_delay,
        cancel=cancel,
        server_progress=server_progress,
        phase_cache=phase_cache,
        cache_context=cache_context,
    ))

    job = build_job_from_result(request, result)
    saved = await synchronizer.save_job(job)
    if phase_cache is not None and saved.status == JobStatus.COMPLETED:
        phase_cache.clear(request.job_id)
    logger.info(
        f"[Batch] {request.job_id} finished as {saved.status.value}: "
        f"{saved.scene_count} scenes, {result.duplicates_removed} duplicates removed"
    )
    return saved
