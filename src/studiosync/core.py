"""Studio hub: wires the state layer together for one process.

Responsibilities:
1. Build the local cache, event bus and replicator from a StudioConfig
2. Own one repository per collection, the job tracker and the quota ledger
3. React to identity changes: clear the old scope, start the new session
4. Turn finished jobs into usage records and history entries
5. Drain background work on shutdown
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from studiosync.config import StorageConfig, StudioConfig
from studiosync.events import EventBus
from studiosync.jobs.client import HttpJobClient
from studiosync.jobs.tracker import JobTracker
from studiosync.models import HistoryKind, Job, Message
from studiosync.quota import QUOTA_KINDS, QuotaLedger
from studiosync.repository import (
    ActivityRepository,
    FavoriteRepository,
    HistoryRepository,
    PageStateRepository,
)
from studiosync.session import SessionContext
from studiosync.storage.backends import FileBackend, MemoryBackend
from studiosync.storage.namespaced import NamespacedStore
from studiosync.sync.remote import HttpRemoteStore
from studiosync.sync.replicator import RemoteReplicator

if TYPE_CHECKING:
    from studiosync.jobs.client import JobClient
    from studiosync.storage.backends import StorageBackend
    from studiosync.sync.remote import RemoteEntityStore

logger = logging.getLogger(__name__)

JOB_KINDS = ("image", "video")
_HISTORY_KIND_BY_JOB = {"image": HistoryKind.DRAW, "video": HistoryKind.VIDEO}


def build_backend(config: StorageConfig) -> StorageBackend:
    if config.backend == "memory":
        return MemoryBackend(config.max_bytes)
    return FileBackend(config.root, config.max_bytes)


class Studio:
    """Composition root for the durable state layer."""

    def __init__(
        self,
        config: StudioConfig,
        *,
        session: SessionContext | None = None,
        backend: StorageBackend | None = None,
        remote: RemoteEntityStore | None = None,
        job_client: JobClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.session = session or SessionContext()
        self.bus = EventBus()
        self.store = NamespacedStore(backend or build_backend(config.storage))

        if remote is None and config.remote.base_url:
            remote = HttpRemoteStore(
                config.remote.base_url,
                api_key=config.remote.api_key,
                timeout=config.remote.timeout,
            )
        self.remote = remote
        self.replicator = RemoteReplicator(remote)

        self.histories = HistoryRepository(self.store, self.bus, self.replicator, clock=clock)
        self.favorites = FavoriteRepository(self.store, self.bus, self.replicator, clock=clock)
        self.activities = ActivityRepository(self.store, self.bus, self.replicator, clock=clock)
        self.pages = PageStateRepository(self.store, self.bus, clock=clock)

        if job_client is None:
            job_client = HttpJobClient(
                config.jobs.api_base or config.remote.base_url,
                api_key=config.remote.api_key,
                timeout=config.remote.timeout,
            )
        self.job_client = job_client
        self.tracker = JobTracker.from_config(
            self.store, self.bus, job_client, config.jobs, clock=clock
        )
        self.ledger = QuotaLedger(self.store, self.bus, self.session, self.replicator, clock=clock)

        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = [
            self.session.subscribe(self._on_identity_change),
            self.tracker.add_completion_listener(self._on_job_succeeded),
        ]

    @property
    def owner_id(self) -> str | None:
        return self.session.owner_id

    # ── Identity ─────────────────────────────────────────────

    def _on_identity_change(self, previous: str | None, current: str | None) -> None:
        stopped = self.tracker.stop_owner(previous)
        if stopped:
            logger.info("Stopped %d job poll loop(s) of %s", stopped, previous or "guest")
        if previous is not None and self.config.clear_on_logout:
            removed = self.store.clear_owner(previous)
            logger.info("Signed out %s, removed %d local keys", previous, removed)
            self.bus.emit()
        if current is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, session start for %s deferred", current)
            return
        task = loop.create_task(self.start_session(current), name=f"studiosync:session {current}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start_session(self, owner_id: str | None = None) -> None:
        """Reconcile usage counters, then resume every persisted job of the owner."""
        owner_id = self.owner_id if owner_id is None else owner_id
        try:
            await self.ledger.start_session(owner_id)
        except Exception:
            logger.exception("Usage reconciliation failed for %s", owner_id)
        await self.resume_jobs(owner_id)

    async def resume_jobs(self, owner_id: str | None = None) -> list[Job]:
        owner_id = self.owner_id if owner_id is None else owner_id
        results = await asyncio.gather(
            *(self.tracker.resume(owner_id, kind) for kind in JOB_KINDS),
            return_exceptions=True,
        )
        jobs: list[Job] = []
        for kind, result in zip(JOB_KINDS, results):
            if isinstance(result, BaseException):
                logger.error("Resuming %s job for %s failed: %s", kind, owner_id, result)
            elif result is not None:
                jobs.append(result)
        return jobs

    # ── Job completion ───────────────────────────────────────

    def _on_job_succeeded(self, job: Job) -> None:
        if job.kind in QUOTA_KINDS:
            self.ledger.record(job.kind, owner_id=job.owner_id)

        history_kind = _HISTORY_KIND_BY_JOB.get(job.kind)
        if history_kind is None:
            return
        prompt = str(job.request.get("prompt") or job.kind)
        model_label = str(job.request.get("model") or job.kind)
        messages = [
            Message(content=prompt, is_user=True),
            Message(
                content=job.result or "",
                is_user=False,
                model_name=model_label,
                metadata={"job_id": job.id, "result_url": job.result},
            ),
        ]
        self.histories.save_conversation(job.owner_id, messages, model_label, history_kind)
        self.activities.log(job.owner_id, job.kind, prompt, description=job.result or "")

    # ── Sync ─────────────────────────────────────────────────

    async def sync_pending(self, owner_id: str | None = None) -> dict[str, Any]:
        """One explicit pass over every replicated collection."""
        owner_id = self.owner_id if owner_id is None else owner_id
        counts: dict[str, Any] = {}
        for repo in (self.histories, self.favorites, self.activities):
            counts[repo.collection] = await repo.sync_pending(owner_id)
        return counts

    # ── Lifecycle ────────────────────────────────────────────

    async def close(self) -> None:
        """Stop polling, wait for background writes, close HTTP sessions."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        await self.tracker.close()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.replicator.drain()
        for client in (self.remote, self.job_client):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
