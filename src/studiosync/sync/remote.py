"""Remote entity store protocol and an HTTP (PostgREST-style) implementation.

Remote rows are ``{"id", "owner_id", "updated_at", "data"}`` where ``data`` is
the record dict exactly as the local cache holds it. Every write is a
full-state upsert, so replaying one is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

import aiohttp

from studiosync.errors import RemoteRejected, RemoteUnavailable

logger = logging.getLogger(__name__)


@runtime_checkable
class RemoteEntityStore(Protocol):
    """Protocol every remote backend must implement."""

    async def push(
        self,
        owner_id: str,
        collection: str,
        record: dict[str, Any],
        *,
        force: bool = True,
    ) -> None:
        """Upsert the full state of ``record``.

        ``force=True`` overwrites unconditionally; ``force=False`` updates an
        existing row and inserts only when none matched.
        """
        ...

    async def pull(self, owner_id: str, collection: str) -> list[dict[str, Any]]:
        """Return every record the owner has in ``collection``."""
        ...

    async def delete(self, owner_id: str, collection: str, record_ids: list[str]) -> None:
        ...


class HttpRemoteStore:
    """RemoteEntityStore over a PostgREST-compatible REST endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
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

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        collection: str,
        *,
        params: dict[str, str] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        url = f"{self.base_url}/rest/v1/{collection}"
        try:
            async with self._get_session().request(
                method, url, params=params, json=body, headers=self._headers(prefer)
            ) as resp:
                if resp.status >= 500:
                    raise RemoteUnavailable(f"{method} {collection}: HTTP {resp.status}")
                if resp.status >= 400:
                    detail = (await resp.text())[:200]
                    raise RemoteRejected(
                        f"{method} {collection}: HTTP {resp.status} {detail}", status=resp.status
                    )
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RemoteUnavailable(f"{method} {collection}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RemoteUnavailable(f"{method} {collection}: timed out") from e

    @staticmethod
    def _row(owner_id: str, record: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": record["id"],
            "owner_id": owner_id,
            "updated_at": record.get("updated_at", 0),
            "data": record,
        }

    async def push(
        self,
        owner_id: str,
        collection: str,
        record: dict[str, Any],
        *,
        force: bool = True,
    ) -> None:
        row = self._row(owner_id, record)
        if force:
            await self._request(
                "POST",
                collection,
                params={"on_conflict": "id"},
                body=[row],
                prefer="resolution=merge-duplicates,return=minimal",
            )
            return

        updated = await self._request(
            "PATCH",
            collection,
            params={"id": f"eq.{row['id']}", "owner_id": f"eq.{owner_id}"},
            body=row,
            prefer="return=representation",
        )
        if not updated:
            await self._request("POST", collection, body=[row], prefer="return=minimal")

    async def pull(self, owner_id: str, collection: str) -> list[dict[str, Any]]:
        rows = await self._request(
            "GET",
            collection,
            params={
                "owner_id": f"eq.{owner_id}",
                "select": "data",
                "order": "updated_at.desc",
            },
        )
        return [row["data"] for row in rows or [] if isinstance(row, dict) and row.get("data")]

    async def delete(self, owner_id: str, collection: str, record_ids: list[str]) -> None:
        if not record_ids:
            return
        await self._request(
            "DELETE",
            collection,
            params={"owner_id": f"eq.{owner_id}", "id": f"in.({','.join(record_ids)})"},
        )
