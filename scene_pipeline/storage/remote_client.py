"""
Remote tier HTTP client.

Consumes the job store contract served by scene_pipeline.api:

    GET    /jobs           -> {"jobs": [JobInfo, ...]}
    GET    /jobs/{job_id}  -> {"job": Job}
    PUT    /jobs/{job_id}  <- Job
    DELETE /jobs/{job_id}
    DELETE /jobs

The credential travels in the X-Database-Key header. Every call has its own
timeout; failures surface as RemoteStoreError subclasses so the synchronizer
can decide between fallback, retry and giving up.
"""

import logging
from typing import List, Optional

import httpx

from scene_pipeline.infra.config import REMOTE_TIMEOUT_SECONDS
from scene_pipeline.pipeline.entities import Job, JobInfo

logger = logging.getLogger(__name__)

DATABASE_KEY_HEADER = "X-Database-Key"
USER_AGENT = "ScenePipeline/1.0"


class RemoteStoreError(Exception):
    """Base exception for remote tier failures."""
    pass


class RemoteAuthError(RemoteStoreError):
    """Credential missing or rejected (HTTP 401)."""
    pass


class RemoteNotFoundError(RemoteStoreError):
    """Requested job does not exist remotely (HTTP 404)."""
    pass


class RemoteRequestError(RemoteStoreError):
    """Any other non-2xx response."""

    def __init__(self, message: str, status_code: int):
        self.status_code = status_code
        super().__init__(message)


class RemoteTransportError(RemoteStoreError):
    """Timeout or connection failure; the request may not have arrived."""
    pass


class RemotePayloadError(RemoteStoreError):
    """Response body could not be parsed into the expected shape."""
    pass


class RemoteJobClient:
    """
    Async client for the remote job store.

    The underlying httpx.AsyncClient is created on first use and reused
    until aclose().
    """

    def __init__(
        self,
        base_url: Optional[str],
        database_key: Optional[str],
        timeout: float = REMOTE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.database_key = database_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        """False without a URL or credential (local-only mode)."""
        return bool(self.base_url and self.database_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "User-Agent": USER_AGENT,
                    DATABASE_KEY_HEADER: self.database_key or "",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        if not self.enabled:
            raise RemoteAuthError("Remote store is not configured")

        try:
            response = await self._get_client().request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise RemoteTransportError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise RemoteTransportError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise RemoteAuthError(f"{method} {path} rejected: invalid database key")
        if response.status_code == 404:
            raise RemoteNotFoundError(f"{method} {path}: not found")
        if not 200 <= response.status_code < 300:
            raise RemoteRequestError(
                f"{method} {path} failed: HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise RemotePayloadError(f"Invalid JSON from remote store: {e}") from e
        if not isinstance(body, dict):
            raise RemotePayloadError("Remote store returned a non-object body")
        return body

    async def list_jobs(self) -> List[JobInfo]:
        """All remote jobs (listing view)."""
        body = self._json(await self._request("GET", "/jobs"))
        try:
            return [JobInfo.from_dict(item) for item in body.get("jobs") or []]
        except (ValueError, TypeError) as e:
            raise RemotePayloadError(f"Malformed job list: {e}") from e

    async def get_job(self, job_id: str) -> Job:
        """
        Full remote job.

        Raises:
            RemoteNotFoundError: If the job does not exist remotely
        """
        body = self._json(await self._request("GET", f"/jobs/{job_id}"))
        if not body.get("job"):
            raise RemoteNotFoundError(f"GET /jobs/{job_id}: empty body")
        try:
            return Job.from_dict(body["job"])
        except ValueError as e:
            raise RemotePayloadError(str(e)) from e

    async def put_job(self, job: Job) -> None:
        await self._request("PUT", f"/jobs/{job.job_id}", json=job.to_dict())
        logger.debug(f"[Remote] PUT {job.job_id} ok")

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/jobs/{job_id}")

    async def clear_jobs(self) -> None:
        await self._request("DELETE", "/jobs")

    async def fix_orphaned(self) -> int:
        """Ask the store to complete in_progress jobs that have scenes. Returns the count fixed."""
        body = self._json(await self._request("POST", "/jobs/fix-orphaned"))
        return int(body.get("fixed") or 0)
