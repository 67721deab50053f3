"""Local-first CRUD over one entity collection.

Every mutation runs the same sequence: synchronous read-modify-write of the
owner's JSON array, persist, emit on the bus, then hand the remote write to
the replicator without awaiting it. Reads never touch the network except
``list_async``, which merges a remote snapshot in and falls back to local on
any failure.

Sync bookkeeping: a successful push marks the entity ``synced`` only when the
local copy still carries the ``updated_at`` that was pushed; a newer local
mutation stays ``pending``. Deleted ids are tombstoned until the remote
confirms the delete so a later ``list_async`` cannot resurrect them.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from studiosync.events import EventBus
from studiosync.models import Entity, SyncStatus, entity_sort_key, new_entity_id
from studiosync.storage.namespaced import GUEST_OWNER, NamespacedStore
from studiosync.sync.replicator import RemoteReplicator

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class EntityRepository(Generic[E]):
    """Generic repository; subclasses pin ``collection`` and ``entity_cls``."""

    collection: str = "entities"
    entity_cls: type[Entity] = Entity

    def __init__(
        self,
        store: NamespacedStore,
        bus: EventBus,
        replicator: RemoteReplicator | None = None,
        *,
        collection: str | None = None,
        entity_cls: type[Entity] | None = None,
        max_items: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.bus = bus
        self.replicator = replicator
        if collection is not None:
            self.collection = collection
        if entity_cls is not None:
            self.entity_cls = entity_cls
        self.max_items = max_items
        self._clock = clock

    # ── Local persistence ────────────────────────────────────

    @property
    def _key(self) -> str:
        return f"entities:{self.collection}"

    @property
    def _tombstone_key(self) -> str:
        return f"tombstones:{self.collection}"

    def _load(self, owner_id: str | None) -> list[E]:
        raw = self.store.get(owner_id, self._key, [])
        if not isinstance(raw, list):
            logger.warning("Ignoring non-list %s blob for %s", self.collection, owner_id)
            return []
        entities: list[E] = []
        for item in raw:
            try:
                entities.append(self.entity_cls.from_dict(item))  # type: ignore[arg-type]
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                logger.warning("Skipping malformed %s record: %s", self.collection, e)
        return entities

    def _save(self, owner_id: str | None, entities: list[E]) -> bool:
        if self.max_items is not None:
            entities = entities[: self.max_items]
        return self.store.set(owner_id, self._key, [e.to_dict() for e in entities])

    def _tombstones(self, owner_id: str | None) -> set[str]:
        return set(self.store.get(owner_id, self._tombstone_key, []) or [])

    def _add_tombstones(self, owner_id: str | None, ids: Iterable[str]) -> None:
        self.store.set(owner_id, self._tombstone_key, sorted(self._tombstones(owner_id) | set(ids)))

    def _clear_tombstones(self, owner_id: str | None, ids: Iterable[str]) -> None:
        remaining = self._tombstones(owner_id) - set(ids)
        if remaining:
            self.store.set(owner_id, self._tombstone_key, sorted(remaining))
        else:
            self.store.remove(owner_id, self._tombstone_key)

    # ── Replication hooks ────────────────────────────────────

    def _replicates(self, owner_id: str | None) -> bool:
        return self.replicator is not None and self.replicator.accepts(owner_id)

    def _push(self, owner_id: str | None, entity: E) -> None:
        if not self._replicates(owner_id):
            return
        version = entity.updated_at
        self.replicator.push(
            owner_id,
            self.collection,
            entity.to_dict(),
            on_done=lambda ok: self._mark_synced(owner_id, entity.id, version, ok),
        )

    def _mark_synced(self, owner_id: str | None, entity_id: str, version: float, ok: bool) -> None:
        entities = self._load(owner_id)
        for i, entity in enumerate(entities):
            if entity.id != entity_id:
                continue
            if entity.updated_at != version:
                return  # a newer local mutation is still pending
            if entity.sync_status == SyncStatus.SYNCED and not ok:
                return
            status = SyncStatus.SYNCED if ok else SyncStatus.FAILED
            if entity.sync_status == status:
                return
            entities[i] = entity.with_patch({"sync_status": status})  # type: ignore[assignment]
            self._save(owner_id, entities)
            self.bus.emit()
            return

    def _remote_delete(self, owner_id: str | None, ids: list[str]) -> None:
        if not ids or not self._replicates(owner_id):
            return
        self._add_tombstones(owner_id, ids)

        def on_done(ok: bool) -> None:
            if ok:
                self._clear_tombstones(owner_id, ids)

        self.replicator.delete(owner_id, self.collection, ids, on_done=on_done)

    # ── Public API ───────────────────────────────────────────

    def list(self, owner_id: str | None) -> list[E]:
        """Local snapshot, newest first. Never touches the network."""
        return self._load(owner_id)

    def get(self, owner_id: str | None, entity_id: str) -> E | None:
        for entity in self._load(owner_id):
            if entity.id == entity_id:
                return entity
        return None

    def create(self, owner_id: str | None, payload: dict[str, Any]) -> E:
        now = self._clock()
        data = dict(payload)
        data.update(
            id=new_entity_id(now),
            owner_id=owner_id or GUEST_OWNER,
            updated_at=now,
            sync_status=SyncStatus.PENDING,
        )
        entity: E = self.entity_cls.from_dict(data)  # type: ignore[assignment]

        entities = self._load(owner_id)
        entities.insert(0, entity)
        self._save(owner_id, entities)
        self.bus.emit()
        self._push(owner_id, entity)
        return entity

    def update(self, owner_id: str | None, entity_id: str, patch: dict[str, Any]) -> E | None:
        """Apply ``patch`` to an existing entity. Returns None if the id is absent."""
        entities = self._load(owner_id)
        for i, entity in enumerate(entities):
            if entity.id != entity_id:
                continue
            # updated_at doubles as the sync version, so it must move forward.
            version = max(self._clock(), entity.updated_at + 0.001)
            updated: E = entity.with_patch(  # type: ignore[assignment]
                {**patch, "updated_at": version, "sync_status": SyncStatus.PENDING}
            )
            entities[i] = updated
            self._save(owner_id, entities)
            self.bus.emit()
            self._push(owner_id, updated)
            return updated
        logger.debug("update: %s/%s not found for %s", self.collection, entity_id, owner_id)
        return None

    def delete(self, owner_id: str | None, entity_id: str) -> bool:
        return self.delete_many(owner_id, [entity_id]) > 0

    def delete_many(self, owner_id: str | None, entity_ids: Iterable[str]) -> int:
        """Remove the given ids locally; returns how many were present."""
        doomed = set(entity_ids)
        entities = self._load(owner_id)
        kept = [e for e in entities if e.id not in doomed]
        removed = [e.id for e in entities if e.id in doomed]
        if not removed:
            return 0
        self._save(owner_id, kept)
        self.bus.emit()
        self._remote_delete(owner_id, removed)
        return len(removed)

    def clear(self, owner_id: str | None) -> int:
        """Delete the owner's whole collection."""
        return self.delete_many(owner_id, [e.id for e in self._load(owner_id)])

    async def list_async(self, owner_id: str | None) -> list[E]:
        """Merge in the remote snapshot; on any remote failure return the local one."""
        remote_records = None
        if self._replicates(owner_id):
            remote_records = await self.replicator.pull(owner_id, self.collection)
        # Read local after the await so writes made meanwhile are included.
        local = self._load(owner_id)
        if remote_records is None:
            return local

        merged = self._merge(owner_id, local, remote_records)
        if self.max_items is not None:
            merged = merged[: self.max_items]
        if [e.to_dict() for e in merged] != [e.to_dict() for e in local]:
            self._save(owner_id, merged)
            self.bus.emit()
        return merged

    def _merge(
        self, owner_id: str | None, local: list[E], remote_records: list[dict[str, Any]]
    ) -> list[E]:
        tombstones = self._tombstones(owner_id)
        by_id: dict[str, E] = {e.id: e for e in local}
        for record in remote_records:
            try:
                remote: E = self.entity_cls.from_dict(  # type: ignore[assignment]
                    {
                        **record,
                        "owner_id": owner_id or GUEST_OWNER,
                        "sync_status": SyncStatus.SYNCED,
                    }
                )
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                logger.warning("Skipping malformed remote %s record: %s", self.collection, e)
                continue
            if remote.id in tombstones:
                continue
            existing = by_id.get(remote.id)
            if existing is None or remote.updated_at > existing.updated_at:
                by_id[remote.id] = remote
        return sorted(by_id.values(), key=lambda e: entity_sort_key(e.id), reverse=True)

    async def sync_pending(self, owner_id: str | None) -> int:
        """One bounded pass: re-push unsynced entities and retry tombstoned deletes.

        Returns the number of entities the remote accepted.
        """
        if not self._replicates(owner_id):
            return 0
        accepted = 0
        for entity in self._load(owner_id):
            if entity.sync_status == SyncStatus.SYNCED:
                continue
            version = entity.updated_at
            entity_id = entity.id
            ok = await self.replicator.push_now(
                owner_id,
                self.collection,
                entity.to_dict(),
                on_done=lambda ok, eid=entity_id, v=version: self._mark_synced(owner_id, eid, v, ok),
            )
            accepted += int(ok)

        tombstones = sorted(self._tombstones(owner_id))
        if tombstones and await self.replicator.delete_now(owner_id, self.collection, tombstones):
            self._clear_tombstones(owner_id, tombstones)
        if accepted:
            logger.info("Synced %d pending %s for %s", accepted, self.collection, owner_id)
        return accepted
