"""
API Dependencies package.

Cross-cutting concerns like authentication and store access.
"""

from .auth import verify_database_key, get_job_store

__all__ = ["verify_database_key", "get_job_store"]
