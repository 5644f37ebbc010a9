"""
API routers.
"""

from . import jobs

__all__ = ["jobs"]
