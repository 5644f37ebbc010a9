"""
FastAPI application entry point.

Remote tier job store: gzip-compressed job documents in SQLite, guarded by
X-Database-Key.
"""

from fastapi import Depends, FastAPI

from scene_pipeline import __version__
from .routers import jobs
from .dependencies.auth import verify_database_key

tags_metadata = [
    {
        "name": "jobs",
        "description": "Job documents - list, read, upsert and delete generation jobs",
    },
]

app = FastAPI(
    title="Scene Pipeline Job Store",
    description="""
## Scene Pipeline Job Store

Authoritative remote tier for scene generation jobs.

### Authentication
All `/jobs` endpoints require an `X-Database-Key` header matching one of the
keys in the `DATABASE_KEYS` environment variable.

### Usage
```bash
# Start server
python -m scene_pipeline serve --host 127.0.0.1 --port 8000

# List jobs
curl http://localhost:8000/jobs -H "X-Database-Key: your-key"
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


app.include_router(
    jobs.router, prefix="/jobs", tags=["jobs"], dependencies=[Depends(verify_database_key)]
)
