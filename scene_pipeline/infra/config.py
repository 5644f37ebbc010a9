"""
Runtime configuration for scene-pipeline.

All values come from environment variables (a .env file is loaded by the
entry points via python-dotenv). Invalid values are logged and replaced by
the default rather than raising.

Environment Variables:
- SCENE_DEDUP_THRESHOLD: Similarity at/above which a scene is a duplicate (default: 0.75)
- REMOTE_STORE_URL: Base URL of the remote job store (default: unset = local-only)
- DATABASE_KEY: Credential sent to the remote job store (default: unset = local-only)
- REMOTE_TIMEOUT_SECONDS: Per-request timeout for remote calls (default: 10)
- SYNC_MAX_RETRY_ATTEMPTS: Attempts before a pending remote write is dropped (default: 3)
- SYNC_RETRY_BASE_DELAY_SECONDS: Base delay of the retry backoff (default: 1.0)
- MAX_CACHED_JOBS: Local tier job capacity (default: 20)
- PHASE_CACHE_MAX_ITEMS: Phase cache capacity (default: 10)
- SERVER_PROGRESS_TTL_SECONDS: Server progress entry lifetime (default: 1800)
- SERVER_PROGRESS_MAX_SIZE: Server progress table capacity (default: 100)
- BATCH_DELAY_SECONDS: Pause between generation batches (default: 2)
- DELETE_GRACE_HOURS: How long a local delete suppresses remote copies (default: 48)
- DATABASE_KEYS: Comma-separated keys accepted by the job store server
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_DEDUP_THRESHOLD = 0.75

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR

# Job expiration horizons
COMPLETED_JOB_TTL_SECONDS = 7 * SECONDS_PER_DAY
FAILED_JOB_TTL_SECONDS = 48 * SECONDS_PER_HOUR

# Local tier
CACHE_TTL_SECONDS = 7 * SECONDS_PER_DAY
MAX_CACHED_JOBS = 20

# Phase cache
PHASE_CACHE_TTL_SECONDS = 7 * SECONDS_PER_DAY
PHASE_CACHE_MAX_ITEMS = 10
MAX_LOG_BODY_LENGTH = 10_000

# Server progress
SERVER_PROGRESS_TTL_SECONDS = 30 * 60
SERVER_PROGRESS_MAX_SIZE = 100

# Remote tier
REMOTE_TIMEOUT_SECONDS = 10.0
SYNC_MAX_RETRY_ATTEMPTS = 3
SYNC_RETRY_BASE_DELAY_SECONDS = 1.0
DELETE_GRACE_SECONDS = 48 * SECONDS_PER_HOUR

# Batch loop
BATCH_DELAY_SECONDS = 2.0


# =============================================================================
# Environment helpers
# =============================================================================

def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"[Config] Invalid integer for {key}: {val}, using default: {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"[Config] Invalid number for {key}: {val}, using default: {default}")
    return default


def _get_env_str(key: str) -> Optional[str]:
    """Get a stripped string, treating blank as unset."""
    val = os.getenv(key, "").strip()
    return val or None


# =============================================================================
# Settings
# =============================================================================

@dataclass
class Settings:
    """Resolved runtime settings."""
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD
    remote_store_url: Optional[str] = None
    database_key: Optional[str] = None
    remote_timeout: float = REMOTE_TIMEOUT_SECONDS
    sync_max_retry_attempts: int = SYNC_MAX_RETRY_ATTEMPTS
    sync_retry_base_delay: float = SYNC_RETRY_BASE_DELAY_SECONDS
    max_cached_jobs: int = MAX_CACHED_JOBS
    phase_cache_max_items: int = PHASE_CACHE_MAX_ITEMS
    server_progress_ttl: float = SERVER_PROGRESS_TTL_SECONDS
    server_progress_max_size: int = SERVER_PROGRESS_MAX_SIZE
    batch_delay: float = BATCH_DELAY_SECONDS
    delete_grace: float = DELETE_GRACE_SECONDS
    accepted_database_keys: list = field(default_factory=list)
    log_level: str = "INFO"

    @property
    def remote_enabled(self) -> bool:
        """Remote tier is used only with both a URL and a key."""
        return bool(self.remote_store_url and self.database_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        threshold = _get_env_float("SCENE_DEDUP_THRESHOLD", DEFAULT_DEDUP_THRESHOLD)
        if not 0.0 <= threshold <= 1.0:
            logger.warning(
                f"[Config] SCENE_DEDUP_THRESHOLD out of range: {threshold}, "
                f"using default: {DEFAULT_DEDUP_THRESHOLD}"
            )
            threshold = DEFAULT_DEDUP_THRESHOLD

        keys_raw = os.getenv("DATABASE_KEYS", "")
        accepted_keys = [k.strip() for k in keys_raw.split(",") if k.strip()]

        return cls(
            dedup_threshold=threshold,
            remote_store_url=_get_env_str("REMOTE_STORE_URL"),
            database_key=_get_env_str("DATABASE_KEY"),
            remote_timeout=_get_env_float("REMOTE_TIMEOUT_SECONDS", REMOTE_TIMEOUT_SECONDS),
            sync_max_retry_attempts=_get_env_int("SYNC_MAX_RETRY_ATTEMPTS", SYNC_MAX_RETRY_ATTEMPTS),
            sync_retry_base_delay=_get_env_float(
                "SYNC_RETRY_BASE_DELAY_SECONDS", SYNC_RETRY_BASE_DELAY_SECONDS
            ),
            max_cached_jobs=_get_env_int("MAX_CACHED_JOBS", MAX_CACHED_JOBS),
            phase_cache_max_items=_get_env_int("PHASE_CACHE_MAX_ITEMS", PHASE_CACHE_MAX_ITEMS),
            server_progress_ttl=_get_env_float(
                "SERVER_PROGRESS_TTL_SECONDS", SERVER_PROGRESS_TTL_SECONDS
            ),
            server_progress_max_size=_get_env_int("SERVER_PROGRESS_MAX_SIZE", SERVER_PROGRESS_MAX_SIZE),
            batch_delay=_get_env_float("BATCH_DELAY_SECONDS", BATCH_DELAY_SECONDS),
            delete_grace=_get_env_float("DELETE_GRACE_HOURS", DELETE_GRACE_SECONDS / SECONDS_PER_HOUR)
            * SECONDS_PER_HOUR,
            accepted_database_keys=accepted_keys,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def get_settings() -> Settings:
    """Read settings from the environment (not cached; env may change in tests)."""
    return Settings.from_env()
