"""
Data path helpers for scene-pipeline.

Centralized path management for local state.

Directory structure:
data/
 ├── local_store/              # Local tier (one JSON file per key)
 │   ├── job_<id>.json         # Cached jobs
 │   ├── phase_<id>.json       # Phase cache entries
 │   └── progress_current.json # Client progress record
 └── job_store.sqlite          # Remote job store server database

logs/                          # Daily rotated log files

Environment Variables:
- SCENE_DATA_DIR: Override data root (default: <project>/data)
- LOCAL_STORE_DIR: Override local tier directory (default: data/local_store)
- JOB_STORE_DB_PATH: Override job store database (default: data/job_store.sqlite)
- LOG_DIR: Override log directory (default: logs)
"""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def get_project_root() -> Path:
    """
    Get the project root directory.

    File is at scene_pipeline/infra/data_paths.py, so project root is 2 levels up.

    Returns:
        Path: Project root directory
    """
    return Path(__file__).parent.parent.parent.resolve()


def get_data_root() -> Path:
    """
    Get the data root directory.

    Returns:
        Path: data/ directory path (or SCENE_DATA_DIR)
    """
    override = os.getenv("SCENE_DATA_DIR")
    if override:
        return Path(override)
    return get_project_root() / "data"


def get_local_store_dir() -> Path:
    """Get the local tier directory."""
    override = os.getenv("LOCAL_STORE_DIR")
    if override:
        return Path(override)
    return get_data_root() / "local_store"


def get_job_store_db_path() -> Path:
    """Get the SQLite path used by the remote job store server."""
    override = os.getenv("JOB_STORE_DB_PATH")
    if override:
        return Path(override)
    return get_data_root() / "job_store.sqlite"


def get_logs_dir() -> Path:
    """Get the log directory."""
    return Path(os.getenv("LOG_DIR", "logs"))


def ensure_data_directories() -> None:
    """Create all data directories if they don't exist."""
    for directory in (get_data_root(), get_local_store_dir()):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"[DataPaths] Created directory: {directory}")
