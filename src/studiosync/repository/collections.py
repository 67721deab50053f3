"""Favorites, recent activity and per-page draft state."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from studiosync.events import EventBus
from studiosync.models import ActivityRecord, FavoriteRecord, PageState, SyncStatus
from studiosync.repository.base import EntityRepository
from studiosync.storage.namespaced import GUEST_OWNER, NamespacedStore
from studiosync.sync.replicator import RemoteReplicator

ACTIVITY_LIMIT = 100


class FavoriteRepository(EntityRepository[FavoriteRecord]):
    collection = "favorites"
    entity_cls = FavoriteRecord

    def add(
        self, owner_id: str | None, kind: str, title: str, description: str = ""
    ) -> FavoriteRecord:
        return self.create(owner_id, {"kind": kind, "title": title, "description": description})

    def find(
        self,
        owner_id: str | None,
        *,
        kind: str | None = None,
        contains: str | None = None,
    ) -> list[FavoriteRecord]:
        """Favorites of ``kind`` whose title or description contains ``contains``."""
        results = []
        for fav in self.list(owner_id):
            if kind and fav.kind != kind:
                continue
            if contains and contains not in fav.description and contains not in fav.title:
                continue
            results.append(fav)
        return results


class ActivityRepository(EntityRepository[ActivityRecord]):
    collection = "activities"
    entity_cls = ActivityRecord

    def __init__(
        self,
        store: NamespacedStore,
        bus: EventBus,
        replicator: RemoteReplicator | None = None,
        *,
        max_items: int | None = ACTIVITY_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(store, bus, replicator, max_items=max_items, clock=clock)

    def log(
        self, owner_id: str | None, kind: str, title: str, description: str = ""
    ) -> ActivityRecord:
        return self.create(owner_id, {"kind": kind, "title": title, "description": description})


class PageStateRepository(EntityRepository[PageState]):
    """Local-only draft state, one entity per page name."""

    collection = "pages"
    entity_cls = PageState

    def __init__(
        self,
        store: NamespacedStore,
        bus: EventBus,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(store, bus, None, clock=clock)

    def save(self, owner_id: str | None, page: str, state: dict[str, Any]) -> PageState:
        entity = PageState(
            id=page,
            owner_id=owner_id or GUEST_OWNER,
            updated_at=self._clock(),
            sync_status=SyncStatus.PENDING,
            state=dict(state),
        )
        entities = [e for e in self._load(owner_id) if e.id != page]
        entities.insert(0, entity)
        self._save(owner_id, entities)
        self.bus.emit()
        return entity

    def load(self, owner_id: str | None, page: str) -> dict[str, Any]:
        entity = self.get(owner_id, page)
        return dict(entity.state) if entity else {}

    def has_state(self, owner_id: str | None, page: str) -> bool:
        return bool(self.load(owner_id, page))

    def clear_page(self, owner_id: str | None, page: str) -> bool:
        return self.delete(owner_id, page)
