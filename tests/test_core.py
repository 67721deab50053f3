"""Tests for the Studio hub."""

from __future__ import annotations

import asyncio
import pytest
from pathlib import Path

from studiosync.config import JobConfig, StorageConfig, StudioConfig
from studiosync.core import Studio, build_backend
from studiosync.jobs import PollResult
from studiosync.models import HistoryKind, Job, JobStatus, Message
from studiosync.session import SessionContext
from studiosync.storage import FileBackend, MemoryBackend


class MockRemote:
    def __init__(self):
        self.rows: dict[tuple[str, str, str], dict] = {}
        self.closed = False

    async def push(self, owner_id, collection, record, *, force=True):
        self.rows[(owner_id, collection, record["id"])] = dict(record)

    async def pull(self, owner_id, collection):
        return [dict(r) for (o, c, _), r in self.rows.items() if o == owner_id and c == collection]

    async def delete(self, owner_id, collection, record_ids):
        for record_id in record_ids:
            self.rows.pop((owner_id, collection, record_id), None)

    async def close(self):
        self.closed = True


class MockJobClient:
    def __init__(self, statuses=()):
        self.statuses = list(statuses)
        self.created = 0

    async def create_job(self, kind, request):
        self.created += 1
        return f"remote-{self.created}"

    async def poll_job(self, job_id, *, kind=None):
        return self.statuses.pop(0) if self.statuses else PollResult("RUNNING")


@pytest.fixture
def config() -> StudioConfig:
    return StudioConfig(
        storage=StorageConfig(backend="memory"),
        jobs=JobConfig(poll_interval=0.01),
    )


def make_studio(config, *, owner="U1", statuses=(), remote=None) -> Studio:
    return Studio(
        config,
        session=SessionContext(owner),
        remote=remote if remote is not None else MockRemote(),
        job_client=MockJobClient(statuses),
    )


class TestBuild:
    def test_backend_selection(self, tmp_path: Path):
        assert isinstance(build_backend(StorageConfig(backend="memory")), MemoryBackend)
        assert isinstance(build_backend(StorageConfig(root=tmp_path)), FileBackend)

    @pytest.mark.asyncio
    async def test_defaults_without_remote(self, config):
        studio = Studio(config)
        assert studio.owner_id is None
        assert studio.replicator.remote is None
        studio.histories.save_conversation(None, [Message("hi", True)], "m")
        assert len(studio.histories.list(None)) == 1
        await studio.close()


class TestJobCompletion:
    @pytest.mark.asyncio
    async def test_success_records_usage_and_history(self, config):
        studio = make_studio(config, statuses=[PollResult("SUCCEEDED", result_url="https://cdn/cat.png")])
        job = await studio.tracker.submit("U1", "image", {"prompt": "a cat", "model": "painter-2"})
        job = await studio.tracker.poll(job)
        assert job.status == JobStatus.SUCCEEDED

        assert studio.ledger.used("image") == 1
        drawings = studio.histories.by_kind("U1", HistoryKind.DRAW)
        assert len(drawings) == 1
        assert drawings[0].model_label == "painter-2"
        assert [m.content for m in drawings[0].messages] == ["a cat", "https://cdn/cat.png"]
        assert studio.activities.list("U1")[0].description == "https://cdn/cat.png"

        await studio.close()
        assert ("U1", "histories", drawings[0].id) in studio.remote.rows
        assert ("U1", "usage_counters", "U1") in studio.remote.rows
        assert studio.remote.closed is True

    @pytest.mark.asyncio
    async def test_video_goes_to_video_history(self, config):
        studio = make_studio(config, statuses=[PollResult("SUCCEEDED", result_url="v.mp4")])
        await studio.tracker.poll(await studio.tracker.submit("U1", "video", {"prompt": "waves"}))
        assert studio.ledger.used("video") == 1
        assert len(studio.histories.by_kind("U1", "video")) == 1
        await studio.close()

    @pytest.mark.asyncio
    async def test_guest_job_finishing_after_login_counts_for_guest(self, config):
        studio = make_studio(config, owner=None, statuses=[PollResult("SUCCEEDED", result_url="g.png")])
        job = await studio.tracker.submit(None, "image", {"prompt": "guest cat"})
        studio.session.set_identity("U1")

        await studio.tracker.poll(job)
        assert studio.ledger.used("image", owner_id=None) == 1
        assert studio.ledger.used("image", owner_id="U1") == 0
        assert studio.ledger.used("image") == 0
        assert len(studio.histories.by_kind(None, HistoryKind.DRAW)) == 1
        await studio.close()


class TestIdentity:
    @pytest.mark.asyncio
    async def test_logout_clears_previous_scope(self, config):
        studio = make_studio(config)
        studio.favorites.add("U1", "image", "mine")
        studio.pages.save("U1", "draw", {"prompt": "x"})
        studio.pages.save(None, "draw", {"prompt": "guest"})

        studio.session.set_identity(None)
        assert studio.favorites.list("U1") == []
        assert studio.pages.load("U1", "draw") == {}
        assert studio.pages.load(None, "draw") == {"prompt": "guest"}
        await studio.close()

    @pytest.mark.asyncio
    async def test_logout_keeps_data_when_disabled(self, config):
        config.clear_on_logout = False
        studio = make_studio(config)
        studio.favorites.add("U1", "image", "mine")
        studio.session.set_identity(None)
        assert len(studio.favorites.list("U1")) == 1
        await studio.close()

    @pytest.mark.asyncio
    async def test_identity_change_stops_previous_owners_poll_loops(self, config):
        config.clear_on_logout = False
        config.jobs.poll_interval = 10
        studio = make_studio(config)
        await studio.tracker.submit("U1", "video", {"prompt": "sea"})
        resuming = asyncio.ensure_future(studio.resume_jobs("U1"))
        await asyncio.sleep(0.05)

        studio.session.set_identity("U2")
        jobs = await asyncio.wait_for(resuming, timeout=1)
        assert [j.status for j in jobs] == [JobStatus.POLLING]
        await studio.close()

    @pytest.mark.asyncio
    async def test_start_session_resumes_jobs(self, config):
        studio = make_studio(
            config, owner=None, statuses=[PollResult("RUNNING"), PollResult("SUCCEEDED", result_url="r")]
        )
        job = Job(
            id="j1",
            owner_id="U1",
            kind="video",
            status=JobStatus.POLLING,
            submitted_at=studio.tracker._clock(),
            remote_id="remote-7",
            request={"prompt": "sea"},
        )
        studio.store.set("U1", "job:video", job.to_dict())

        await studio.start_session("U1")
        resumed = studio.tracker.current_job("U1", "video")
        assert resumed.status == JobStatus.SUCCEEDED
        assert resumed.result == "r"
        assert studio.ledger.used("video", owner_id="U1") == 1
        await studio.close()

    @pytest.mark.asyncio
    async def test_sync_pending_covers_collections(self, config):
        studio = make_studio(config)
        studio.favorites.add("U1", "image", "a")
        await studio.replicator.drain()
        counts = await studio.sync_pending()
        assert counts == {"histories": 0, "favorites": 0, "activities": 0}
        await studio.close()
