"""Job backend protocol and an HTTP implementation.

The backend speaks a small vocabulary: ``PENDING``, ``RUNNING``,
``SUCCEEDED``, ``FAILED``. Results come back as structured fields; nothing
is parsed out of free text.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp

from studiosync.errors import ConcurrentJobConflict, JobFailed, RemoteRejected, RemoteUnavailable

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """One status report from the job backend."""

    status: str
    progress: float | None = None
    result_url: str | None = None
    error: str | None = None


@runtime_checkable
class JobClient(Protocol):
    """Protocol for the external create-job / poll-job collaborator."""

    async def create_job(self, kind: str, request: dict[str, Any]) -> str:
        """Start a job and return the backend's job id."""
        ...

    async def poll_job(self, job_id: str, *, kind: str | None = None) -> PollResult:
        """Report the job's current status. ``kind`` is a routing hint."""
        ...


class HttpJobClient:
    """JobClient for ``/api/generate-{kind}`` + ``/api/check-{kind}-status`` endpoints."""

    def __init__(
        self,
        api_base: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        create_path: str = "/api/generate-{kind}",
        status_path: str = "/api/check-{kind}-status",
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.create_path = create_path
        self.status_path = status_path
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = self.api_base + path
        try:
            async with self._get_session().post(url, json=body, headers=headers) as resp:
                data = await resp.json(content_type=None)
                if not isinstance(data, dict):
                    data = {}
                message = data.get("details") or data.get("error") or f"HTTP {resp.status}"
                if resp.status == 409:
                    raise ConcurrentJobConflict(message)
                if resp.status >= 500:
                    raise RemoteUnavailable(f"POST {path}: {message}")
                if resp.status >= 400:
                    raise RemoteRejected(f"POST {path}: {message}", status=resp.status)
                return data
        except aiohttp.ClientError as e:
            raise RemoteUnavailable(f"POST {path}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RemoteUnavailable(f"POST {path}: timed out") from e
        except ValueError as e:
            raise RemoteUnavailable(f"POST {path}: malformed response body") from e

    async def create_job(self, kind: str, request: dict[str, Any]) -> str:
        data = await self._post(self.create_path.format(kind=kind), request)
        job_id = data.get("jobId") or data.get("taskId")
        if not job_id:
            raise JobFailed(data.get("error") or "backend accepted the request but returned no job id")
        return str(job_id)

    async def poll_job(self, job_id: str, *, kind: str | None = None) -> PollResult:
        data = await self._post(self.status_path.format(kind=kind or "job"), {"taskId": job_id})
        progress = data.get("progress")
        return PollResult(
            status=str(data.get("status", "")).upper(),
            progress=float(progress) if isinstance(progress, (int, float)) else None,
            result_url=data.get("resultUrl") or data.get("videoUrl") or data.get("imageUrl"),
            error=data.get("error"),
        )
