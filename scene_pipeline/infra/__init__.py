"""
Infrastructure module - configuration, paths, logging, and events.
"""

from .config import Settings, get_settings
from .data_paths import (
    get_project_root,
    get_data_root,
    get_local_store_dir,
    get_job_store_db_path,
    get_logs_dir,
    ensure_data_directories,
)
from .events import JobEventBus, JOB_UPDATED, SYNC_SUCCESS, SYNC_FAILED
from .logging_config import setup_logging

__all__ = [
    # config
    "Settings",
    "get_settings",
    # data_paths
    "get_project_root",
    "get_data_root",
    "get_local_store_dir",
    "get_job_store_db_path",
    "get_logs_dir",
    "ensure_data_directories",
    # events
    "JobEventBus",
    "JOB_UPDATED",
    "SYNC_SUCCESS",
    "SYNC_FAILED",
    # logging
    "setup_logging",
]
