"""
Pipeline Domain Entities.

- Scene: One generated item (opaque except for the fields dedup compares)
- Job: Aggregate root for one generation task, as stored in either tier
- JobInfo: Lightweight listing view of a Job
- PhaseCacheEntry: Per-job cache of phase results
- ProgressRecord: Live progress of an in-flight job
- ResumeData: Everything needed to continue an interrupted job

Timestamps used for expiry and ordering are epoch seconds (float);
human-facing timestamps are ISO strings.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import time

from scene_pipeline.infra.config import (
    COMPLETED_JOB_TTL_SECONDS,
    FAILED_JOB_TTL_SECONDS,
)


class JobStatus(str, Enum):
    """
    Job lifecycle status.

    - PENDING: Created, no batch finished yet
    - IN_PROGRESS: At least one batch finished, more to go
    - COMPLETED: Every batch finished
    - PARTIAL: Stopped early with some scenes kept
    - FAILED: Stopped early with nothing useful kept
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class JobErrorType(str, Enum):
    """Classification of a failed generation batch."""

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    GENERATION_API_ERROR = "GENERATION_API_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PARSE_ERROR = "PARSE_ERROR"
    CANCELLED = "CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


def now_ts() -> float:
    """Current time as epoch seconds."""
    return time.time()


def now_iso() -> str:
    """Current UTC time as ISO format string."""
    return datetime.now(timezone.utc).isoformat()


def compute_expires_at(status: JobStatus, timestamp: float) -> float:
    """
    Expiration for a job written at `timestamp` with `status`.

    Failed and partial jobs are kept for a shorter window so they can be
    inspected or retried; everything else gets the long horizon.
    """
    if JobStatus(status) in (JobStatus.FAILED, JobStatus.PARTIAL):
        return timestamp + FAILED_JOB_TTL_SECONDS
    return timestamp + COMPLETED_JOB_TTL_SECONDS


# =============================================================================
# Scene
# =============================================================================

_SCENE_FIELDS = ("description", "character", "object", "prompt",
                 "style", "visual_specs", "lighting", "composition")


@dataclass
class Scene:
    """
    One generated scene.

    Only description, character, object, visual_specs["environment"],
    lighting, composition and prompt take part in similarity scoring.
    Every other key of the generated payload is kept in `extra` and written
    back unchanged.
    """
    description: str = ""
    character: str = ""
    object: str = ""
    prompt: str = ""
    style: Dict[str, Any] = field(default_factory=dict)
    visual_specs: Dict[str, Any] = field(default_factory=dict)
    lighting: Dict[str, Any] = field(default_factory=dict)
    composition: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def environment(self) -> str:
        """Environment text from the visual specs block."""
        return str(self.visual_specs.get("environment") or "")

    def to_dict(self) -> dict:
        """Flatten back to the generated payload shape."""
        data = dict(self.extra)
        for name in _SCENE_FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Scene":
        """Build a Scene from a generated payload."""
        if not isinstance(data, dict):
            raise ValueError(f"Scene payload must be an object, got {type(data).__name__}")
        known = {name: data[name] for name in _SCENE_FIELDS if data.get(name) is not None}
        extra = {k: v for k, v in data.items() if k not in _SCENE_FIELDS}
        return cls(**known, extra=extra)


def scenes_to_dicts(scenes: List[Scene]) -> List[dict]:
    """Serialize a scene list."""
    return [scene.to_dict() for scene in scenes]


def scenes_from_dicts(items: Optional[List[dict]]) -> List[Scene]:
    """Deserialize a scene list (None reads as empty)."""
    return [Scene.from_dict(item) for item in (items or [])]


# =============================================================================
# Job
# =============================================================================

@dataclass
class JobError:
    """Structured failure recorded on a job."""
    message: str
    type: JobErrorType = JobErrorType.UNKNOWN_ERROR
    failed_batch: Optional[int] = None
    total_batches: Optional[int] = None
    retryable: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = JobErrorType(self.type).value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobError":
        error_type = data.get("type", JobErrorType.UNKNOWN_ERROR.value)
        try:
            error_type = JobErrorType(error_type)
        except ValueError:
            error_type = JobErrorType.UNKNOWN_ERROR
        return cls(
            message=data.get("message", ""),
            type=error_type,
            failed_batch=data.get("failed_batch"),
            total_batches=data.get("total_batches"),
            retryable=bool(data.get("retryable", False)),
        )


@dataclass
class JobSummary:
    """Headline numbers for a job."""
    mode: str = "direct"
    source_url: str = ""
    source_id: str = ""
    target_scenes: int = 0
    actual_scenes: int = 0
    batches: Optional[int] = None
    batch_size: Optional[int] = None
    voice: str = "no-voice"
    characters_found: int = 0
    characters: List[str] = field(default_factory=list)
    processing_time: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "JobSummary":
        data = data or {}
        allowed = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in allowed})


@dataclass
class Job:
    """
    A generation job as stored in a tier.

    Serialized with to_dict() for both the local JSON store and the remote
    HTTP body.
    """
    job_id: str
    source_id: str = ""
    source_url: str = ""
    summary: JobSummary = field(default_factory=JobSummary)
    scenes: List[Scene] = field(default_factory=list)
    character_registry: Dict[str, str] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    error: Optional[JobError] = None
    script: Optional[dict] = None
    color_profile: Optional[dict] = None
    logs: List[dict] = field(default_factory=list)
    resume_data: Optional[dict] = None
    timestamp: float = field(default_factory=now_ts)
    expires_at: Optional[float] = None

    @property
    def scene_count(self) -> int:
        return len(self.scenes)

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True once expires_at has passed."""
        if self.expires_at is None:
            return False
        return (now if now is not None else now_ts()) > self.expires_at

    def to_dict(self) -> dict:
        """Convert job to a JSON-safe dictionary."""
        return {
            "job_id": self.job_id,
            "source_id": self.source_id,
            "source_url": self.source_url,
            "summary": self.summary.to_dict(),
            "scenes": scenes_to_dicts(self.scenes),
            "character_registry": dict(self.character_registry),
            "status": JobStatus(self.status).value,
            "error": self.error.to_dict() if self.error else None,
            "script": self.script,
            "color_profile": self.color_profile,
            "logs": list(self.logs),
            "resume_data": self.resume_data,
            "timestamp": self.timestamp,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        """
        Create job from dictionary.

        Raises:
            ValueError: If the payload is structurally invalid
        """
        if not isinstance(data, dict) or not data.get("job_id"):
            raise ValueError("Job payload is missing job_id")
        try:
            return cls(
                job_id=str(data["job_id"]),
                source_id=data.get("source_id") or "",
                source_url=data.get("source_url") or "",
                summary=JobSummary.from_dict(data.get("summary")),
                scenes=scenes_from_dicts(data.get("scenes")),
                character_registry=dict(data.get("character_registry") or {}),
                status=JobStatus(data.get("status") or JobStatus.PENDING.value),
                error=JobError.from_dict(data["error"]) if data.get("error") else None,
                script=data.get("script"),
                color_profile=data.get("color_profile"),
                logs=list(data.get("logs") or []),
                resume_data=data.get("resume_data"),
                timestamp=float(data.get("timestamp") or now_ts()),
                expires_at=float(data["expires_at"]) if data.get("expires_at") is not None else None,
            )
        except (TypeError, KeyError, AttributeError) as e:
            raise ValueError(f"Malformed job payload for {data.get('job_id')}: {e}") from e

    def to_info(self, storage_source: str = "local") -> "JobInfo":
        """Build the listing view of this job."""
        return JobInfo(
            job_id=self.job_id,
            source_id=self.source_id,
            source_url=self.source_url,
            scene_count=self.scene_count,
            characters_found=len(self.character_registry),
            mode=self.summary.mode,
            voice=self.summary.voice,
            status=JobStatus(self.status),
            timestamp=self.timestamp,
            created_at=self.summary.created_at,
            expires_at=self.expires_at,
            has_script=self.script is not None,
            error=self.error,
            storage_source=storage_source,
        )


@dataclass
class JobInfo:
    """Listing view of a job."""
    job_id: str
    source_id: str = ""
    source_url: str = ""
    scene_count: int = 0
    characters_found: int = 0
    mode: str = "direct"
    voice: str = "no-voice"
    status: JobStatus = JobStatus.PENDING
    timestamp: float = 0.0
    created_at: str = ""
    expires_at: Optional[float] = None
    has_script: bool = False
    error: Optional[JobError] = None
    storage_source: str = "local"

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else now_ts()) > self.expires_at

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = JobStatus(self.status).value
        data["error"] = self.error.to_dict() if self.error else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobInfo":
        if not isinstance(data, dict) or not data.get("job_id"):
            raise ValueError("Job info payload is missing job_id")
        allowed = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in allowed}
        values["status"] = JobStatus(values.get("status") or JobStatus.PENDING.value)
        values["error"] = JobError.from_dict(data["error"]) if data.get("error") else None
        return cls(**values)


# =============================================================================
# Phase cache
# =============================================================================

@dataclass
class PhaseCacheEntry:
    """
    Cached phase results for one job.

    phase2_batches is keyed by batch number; keys may have gaps when batches
    finish out of order.
    """
    job_id: str
    source_url: str
    settings: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=now_ts)
    phase0: Optional[Dict[str, Any]] = None
    phase1: Optional[Dict[str, Any]] = None
    phase2_batches: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    logs: List[dict] = field(default_factory=list)

    def batch_scenes(self, batch_number: int) -> Optional[List[Scene]]:
        """Scenes cached for one batch, or None if that batch is missing."""
        batch = self.phase2_batches.get(batch_number)
        if batch is None:
            return None
        return scenes_from_dicts(batch.get("scenes"))

    def completed_batch_numbers(self) -> List[int]:
        return sorted(self.phase2_batches)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "source_url": self.source_url,
            "settings": dict(self.settings),
            "timestamp": self.timestamp,
            "phase0": self.phase0,
            "phase1": self.phase1,
            # JSON object keys are strings
            "phase2_batches": {str(k): v for k, v in self.phase2_batches.items()},
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseCacheEntry":
        if not isinstance(data, dict) or not data.get("job_id"):
            raise ValueError("Phase cache payload is missing job_id")
        return cls(
            job_id=data["job_id"],
            source_url=data.get("source_url", ""),
            settings=dict(data.get("settings") or {}),
            timestamp=float(data.get("timestamp") or now_ts()),
            phase0=data.get("phase0"),
            phase1=data.get("phase1"),
            phase2_batches={int(k): v for k, v in (data.get("phase2_batches") or {}).items()},
            logs=list(data.get("logs") or []),
        )


# =============================================================================
# Progress
# =============================================================================

@dataclass
class ProgressRecord:
    """Progress of an in-flight job."""
    job_id: str
    mode: str
    source_url: str
    source_id: str
    scene_count: int
    batch_size: int
    voice: str
    total_batches: int
    completed_batches: int = 0
    scenes: List[Scene] = field(default_factory=list)
    character_registry: Dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None
    last_updated: str = field(default_factory=now_iso)
    status: JobStatus = JobStatus.PENDING
    script_text: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["scenes"] = scenes_to_dicts(self.scenes)
        data["status"] = JobStatus(self.status).value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressRecord":
        if not isinstance(data, dict) or not data.get("job_id"):
            raise ValueError("Progress payload is missing job_id")
        allowed = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in allowed}
        values["scenes"] = scenes_from_dicts(data.get("scenes"))
        values["character_registry"] = dict(data.get("character_registry") or {})
        values["status"] = JobStatus(data.get("status") or JobStatus.PENDING.value)
        return cls(**values)


@dataclass
class ResumeData:
    """Request parameters for continuing an interrupted job."""
    job_id: str
    source_url: str
    mode: str
    scene_count: int
    batch_size: int
    voice: str
    completed_batches: int
    total_batches: int
    existing_scenes: List[Scene] = field(default_factory=list)
    existing_characters: Dict[str, str] = field(default_factory=dict)
    script_text: Optional[str] = None

    @property
    def next_batch(self) -> int:
        """Zero-based index of the first batch still to run."""
        return self.completed_batches

    @property
    def remaining_batches(self) -> range:
        """Zero-based indices of the batches still to run."""
        return range(self.completed_batches, self.total_batches)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["existing_scenes"] = scenes_to_dicts(self.existing_scenes)
        return data
