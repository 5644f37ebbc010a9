"""
Conflict resolution between the local and remote copy of a job.

Deterministic: status precedence first, then scene count, then the newer
write, then local. The losing copy is never deleted.
"""

from typing import Tuple, TypeVar, Union

from scene_pipeline.pipeline.entities import Job, JobInfo, JobStatus

STATUS_PRECEDENCE = {
    JobStatus.COMPLETED: 4,
    JobStatus.PARTIAL: 3,
    JobStatus.FAILED: 2,
    JobStatus.IN_PROGRESS: 1,
    JobStatus.PENDING: 0,
}

LOCAL = "local"
CLOUD = "cloud"

Record = TypeVar("Record", Job, JobInfo)


def _rank(record: Union[Job, JobInfo]) -> Tuple[int, int, float]:
    return (
        STATUS_PRECEDENCE[JobStatus(record.status)],
        record.scene_count,
        record.timestamp,
    )


def resolve_conflict(local: Record, remote: Record) -> Tuple[Record, str]:
    """
    Pick the authoritative copy.

    Returns:
        (winner, source) where source is "local" or "cloud"
    """
    if _rank(remote) > _rank(local):
        return remote, CLOUD
    return local, LOCAL
