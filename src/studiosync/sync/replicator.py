"""Best-effort, non-blocking replication to a remote entity store.

Writes run as background tasks on the running event loop. Each write gets
exactly two attempts: a primary forced upsert, then a secondary non-forced
upsert (deletes: one batch delete, then per-id deletes). After that the
failure is logged and dropped; there is no retry queue.

Guest data (``owner_id=None``) is never replicated.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from studiosync.sync.remote import RemoteEntityStore

logger = logging.getLogger(__name__)

# Called with True once the remote accepted the write, False once both attempts failed.
DoneCallback = Callable[[bool], None]


class RemoteReplicator:
    def __init__(self, remote: RemoteEntityStore | None) -> None:
        self.remote = remote
        self._tasks: set[asyncio.Task] = set()

    def accepts(self, owner_id: str | None) -> bool:
        return self.remote is not None and owner_id is not None

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ── Scheduling ───────────────────────────────────────────

    def _schedule(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, skipped background %s", label)
            return None
        task = loop.create_task(coro, name=f"studiosync:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background write scheduled so far (and any they schedule)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Two-attempt policy ───────────────────────────────────

    async def _two_attempt(
        self,
        label: str,
        primary: Callable[[], Awaitable[None]],
        secondary: Callable[[], Awaitable[None]],
    ) -> bool:
        try:
            await primary()
            return True
        except Exception as e:
            logger.warning("Remote %s failed, trying fallback: %s", label, e)
        try:
            await secondary()
            return True
        except Exception as e:
            logger.warning("Remote %s fallback failed, giving up: %s", label, e)
            return False

    @staticmethod
    def _notify(on_done: DoneCallback | None, ok: bool) -> None:
        if on_done is None:
            return
        try:
            on_done(ok)
        except Exception:
            logger.exception("Replication callback %r failed", on_done)

    # ── Writes ───────────────────────────────────────────────

    def push(
        self,
        owner_id: str | None,
        collection: str,
        record: dict[str, Any],
        on_done: DoneCallback | None = None,
    ) -> asyncio.Task | None:
        """Schedule a background upsert of ``record``. Never blocks, never raises."""
        if not self.accepts(owner_id):
            return None
        return self._schedule(
            self.push_now(owner_id, collection, record, on_done),
            f"push {collection}/{record.get('id')}",
        )

    async def push_now(
        self,
        owner_id: str,
        collection: str,
        record: dict[str, Any],
        on_done: DoneCallback | None = None,
    ) -> bool:
        remote = self.remote
        if remote is None:
            return False
        ok = await self._two_attempt(
            f"push {collection}/{record.get('id')}",
            lambda: remote.push(owner_id, collection, record, force=True),
            lambda: remote.push(owner_id, collection, record, force=False),
        )
        self._notify(on_done, ok)
        return ok

    def delete(
        self,
        owner_id: str | None,
        collection: str,
        record_ids: list[str],
        on_done: DoneCallback | None = None,
    ) -> asyncio.Task | None:
        if not self.accepts(owner_id) or not record_ids:
            return None
        return self._schedule(
            self.delete_now(owner_id, collection, list(record_ids), on_done),
            f"delete {collection} x{len(record_ids)}",
        )

    async def delete_now(
        self,
        owner_id: str,
        collection: str,
        record_ids: list[str],
        on_done: DoneCallback | None = None,
    ) -> bool:
        remote = self.remote
        if remote is None:
            return False

        async def one_by_one() -> None:
            for record_id in record_ids:
                await remote.delete(owner_id, collection, [record_id])

        ok = await self._two_attempt(
            f"delete {collection} {record_ids}",
            lambda: remote.delete(owner_id, collection, record_ids),
            one_by_one,
        )
        self._notify(on_done, ok)
        return ok

    # ── Reads ────────────────────────────────────────────────

    async def pull(self, owner_id: str | None, collection: str) -> list[dict[str, Any]] | None:
        """Fetch remote records; None when replication is off or the remote failed."""
        if not self.accepts(owner_id):
            return None
        try:
            return await self.remote.pull(owner_id, collection)
        except Exception as e:
            logger.warning("Remote pull of %s for %s failed: %s", collection, owner_id, e)
            return None
