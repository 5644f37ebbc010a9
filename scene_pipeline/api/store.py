"""
SQLite persistence for the remote job store.

Two tables:
- jobs: listing metadata (one row per job, used for GET /jobs)
- job_data: the full job document, gzip-compressed JSON

Rows whose expires_at has passed are invisible to every read and are
purged on each write.
"""

import gzip
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from scene_pipeline.infra.config import COMPLETED_JOB_TTL_SECONDS
from scene_pipeline.pipeline.entities import Job, JobStatus

logger = logging.getLogger(__name__)


def compress_job(job: dict) -> bytes:
    """JSON -> gzip."""
    return gzip.compress(json.dumps(job, ensure_ascii=False).encode("utf-8"))


def decompress_job(blob: bytes) -> dict:
    """gzip -> JSON."""
    return json.loads(gzip.decompress(blob).decode("utf-8"))


class JobStore:
    """
    Job documents in SQLite.

    Does NOT resolve conflicts; the last PUT for an id wins.
    """

    def __init__(self, db_path: Union[str, Path], clock: Callable[[], float] = time.time):
        """
        Args:
            db_path: Path to SQLite database file
            clock: Epoch-seconds time source
        """
        self.db_path = str(db_path)
        self._clock = clock
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL DEFAULT '',
                    source_url TEXT NOT NULL DEFAULT '',
                    scene_count INTEGER NOT NULL DEFAULT 0,
                    characters_found INTEGER NOT NULL DEFAULT 0,
                    mode TEXT NOT NULL DEFAULT 'direct',
                    voice TEXT NOT NULL DEFAULT 'no-voice',
                    status TEXT NOT NULL,
                    has_script INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT '',
                    updated_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    error_json TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_data (
                    job_id TEXT PRIMARY KEY,
                    data_compressed BLOB NOT NULL,
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_expires ON jobs (expires_at)
            """)

    # =========================================================================
    # Reads
    # =========================================================================

    def list_jobs(self) -> List[dict]:
        """Listing view of every live job, newest write first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE expires_at > ? ORDER BY updated_at DESC",
                (self._clock(),),
            ).fetchall()

        return [
            {
                "job_id": row["job_id"],
                "source_id": row["source_id"],
                "source_url": row["source_url"],
                "scene_count": row["scene_count"],
                "characters_found": row["characters_found"],
                "mode": row["mode"],
                "voice": row["voice"],
                "status": row["status"],
                "has_script": bool(row["has_script"]),
                "created_at": row["created_at"],
                "timestamp": row["updated_at"],
                "expires_at": row["expires_at"],
                "error": json.loads(row["error_json"]) if row["error_json"] else None,
                "storage_source": "cloud",
            }
            for row in rows
        ]

    def get_job(self, job_id: str) -> Optional[dict]:
        """Full job document, or None if missing or expired."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT job_data.data_compressed FROM job_data
                JOIN jobs ON job_data.job_id = jobs.job_id
                WHERE job_data.job_id = ? AND jobs.expires_at > ?
                """,
                (job_id, self._clock()),
            ).fetchone()

        if row is None:
            return None
        return decompress_job(row["data_compressed"])

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_job(self, job_id: str, document: dict) -> Job:
        """
        Insert or replace a job.

        Raises:
            ValueError: If the document is not a valid job
        """
        document = {**document, "job_id": job_id}
        job = Job.from_dict(document)
        expires_at = job.expires_at
        if expires_at is None:
            expires_at = job.timestamp + COMPLETED_JOB_TTL_SECONDS

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO jobs (
                    job_id, source_id, source_url, scene_count, characters_found, mode, voice,
                    status, has_script, created_at, updated_at, expires_at, error_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    job.source_id,
                    job.source_url,
                    job.scene_count,
                    len(job.character_registry),
                    job.summary.mode,
                    job.summary.voice,
                    JobStatus(job.status).value,
                    1 if job.script else 0,
                    job.summary.created_at,
                    job.timestamp,
                    expires_at,
                    json.dumps(job.error.to_dict()) if job.error else None,
                ),
            )
            conn.execute(
                "INSERT OR REPLACE INTO job_data (job_id, data_compressed) VALUES (?, ?)",
                (job_id, compress_job(document)),
            )
            conn.execute("DELETE FROM jobs WHERE expires_at < ?", (self._clock(),))

        return job

    def delete_job(self, job_id: str) -> bool:
        """Returns False if the job did not exist."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            return cursor.rowcount > 0

    def delete_all(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs")
            conn.execute("DELETE FROM job_data")
            return cursor.rowcount

    def cleanup_expired(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE expires_at < ?", (self._clock(),))
            return cursor.rowcount

    def fix_orphaned(self) -> List[str]:
        """
        Mark in_progress jobs that already have scenes as completed.

        Returns:
            IDs of the jobs that were fixed
        """
        fixed = []
        for info in self.list_jobs():
            if info["status"] != JobStatus.IN_PROGRESS.value or info["scene_count"] <= 0:
                continue
            document = self.get_job(info["job_id"])
            if document is None:
                continue
            document["status"] = JobStatus.COMPLETED.value
            self.upsert_job(info["job_id"], document)
            fixed.append(info["job_id"])
            logger.info(
                f"[JobStore] Fixed orphaned job {info['job_id']}: "
                f"{info['scene_count']} scenes, status now completed"
            )
        return fixed
