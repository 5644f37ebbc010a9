"""
Database key authentication dependency.

Every job store endpoint requires an X-Database-Key header matching one of
the keys in the DATABASE_KEYS environment variable (comma-separated).
"""

from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from scene_pipeline.api.store import JobStore
from scene_pipeline.infra.config import get_settings
from scene_pipeline.infra.data_paths import get_job_store_db_path

database_key_header = APIKeyHeader(
    name="X-Database-Key",
    auto_error=False,  # Missing and invalid keys both answer 401
    description="Database key (one of DATABASE_KEYS)",
)


async def verify_database_key(
    database_key: Optional[str] = Security(database_key_header),
) -> str:
    """
    Verify the database key header.

    Raises:
        HTTPException: 401 if the key is missing or not accepted

    Returns:
        The accepted key
    """
    accepted = get_settings().accepted_database_keys
    if not database_key or database_key not in accepted:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Invalid database key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return database_key


@lru_cache(maxsize=1)
def get_job_store() -> JobStore:
    """Process-wide store at JOB_STORE_DB_PATH (overridden in tests)."""
    return JobStore(get_job_store_db_path())
