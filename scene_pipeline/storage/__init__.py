"""
Storage module - local tier, remote tier client and their synchronization.
"""

from .local_store import JsonFileStore, LocalStorageCache
from .local_jobs import LocalJobCache
from .remote_client import (
    RemoteJobClient,
    RemoteStoreError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteRequestError,
    RemoteTransportError,
    RemotePayloadError,
)
from .conflict import resolve_conflict, STATUS_PRECEDENCE
from .retry_queue import SyncRetryQueue, PendingWrite
from .synchronizer import JobSynchronizer, create_job_synchronizer

__all__ = [
    # local tier
    "JsonFileStore",
    "LocalStorageCache",
    "LocalJobCache",
    # remote tier
    "RemoteJobClient",
    "RemoteStoreError",
    "RemoteAuthError",
    "RemoteNotFoundError",
    "RemoteRequestError",
    "RemoteTransportError",
    "RemotePayloadError",
    # sync
    "resolve_conflict",
    "STATUS_PRECEDENCE",
    "SyncRetryQueue",
    "PendingWrite",
    "JobSynchronizer",
    "create_job_synchronizer",
]
