"""Tests for favorites, activities and page state."""

from __future__ import annotations

import pytest

from studiosync.events import EventBus
from studiosync.repository import ActivityRepository, FavoriteRepository, PageStateRepository
from studiosync.storage import MemoryBackend, NamespacedStore
from studiosync.sync import RemoteReplicator


class Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        self.now += 0.5
        return self.now


class RecordingRemote:
    def __init__(self):
        self.pushed: list[tuple[str, str]] = []

    async def push(self, owner_id, collection, record, *, force=True):
        self.pushed.append((collection, record["id"]))

    async def pull(self, owner_id, collection):
        return []

    async def delete(self, owner_id, collection, record_ids):
        pass


@pytest.fixture
def store() -> NamespacedStore:
    return NamespacedStore(MemoryBackend())


class TestFavorites:
    def test_add_and_find(self, store):
        favorites = FavoriteRepository(store, EventBus(), clock=Clock())
        favorites.add("u1", "image", "Sunset", "https://cdn/sunset.png")
        favorites.add("u1", "conversation", "Trip plan", "Three days in Kyoto")

        assert [f.title for f in favorites.find("u1", kind="image")] == ["Sunset"]
        assert [f.title for f in favorites.find("u1", contains="Kyoto")] == ["Trip plan"]
        assert favorites.find("u1", kind="image", contains="Kyoto") == []
        assert favorites.find("u2") == []


class TestActivities:
    def test_capped_at_limit(self, store):
        activities = ActivityRepository(store, EventBus(), clock=Clock(), max_items=3)
        for i in range(5):
            activities.log("u1", "image", f"job {i}")
        assert [a.title for a in activities.list("u1")] == ["job 4", "job 3", "job 2"]

    def test_default_limit(self, store):
        activities = ActivityRepository(store, EventBus(), clock=Clock())
        for i in range(105):
            activities.log("u1", "conversation", str(i))
        assert len(activities.list("u1")) == 100
        assert activities.list("u1")[0].title == "104"


class TestPageState:
    def test_save_load_clear(self, store):
        pages = PageStateRepository(store, EventBus(), clock=Clock())
        assert pages.load("u1", "draw") == {}
        assert pages.has_state("u1", "draw") is False

        pages.save("u1", "draw", {"prompt": "a cat", "size": "1024"})
        pages.save("u1", "draw", {"prompt": "a dog"})
        pages.save("u1", "chat", {"input": "hi"})

        assert pages.load("u1", "draw") == {"prompt": "a dog"}
        assert len(pages.list("u1")) == 2
        assert pages.clear_page("u1", "draw") is True
        assert pages.load("u1", "draw") == {}
        assert pages.load("u1", "chat") == {"input": "hi"}

    @pytest.mark.asyncio
    async def test_never_replicated(self, store):
        remote = RecordingRemote()
        favorites = FavoriteRepository(store, EventBus(), RemoteReplicator(remote), clock=Clock())
        pages = PageStateRepository(store, EventBus(), clock=Clock())

        pages.save("u1", "video", {"prompt": "waves"})
        favorites.add("u1", "image", "x")
        await favorites.replicator.drain()
        assert [c for c, _ in remote.pushed] == ["favorites"]
