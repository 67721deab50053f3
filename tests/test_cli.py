"""Tests for the command-line entry point."""

import pytest
from pathlib import Path

from studiosync.__main__ import main
from studiosync.models import Job, JobStatus, UsageCounters
from studiosync.storage import FileBackend, NamespacedStore


@pytest.fixture
def state_dir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("STUDIOSYNC_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("STUDIOSYNC_OWNER", "U1")
    for key in [
        "STUDIOSYNC_REMOTE_URL",
        "STUDIOSYNC_JOBS_URL",
        "STUDIOSYNC_MEMBERSHIP",
        "STUDIOSYNC_STORAGE_BACKEND",
    ]:
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "state"


class TestCli:
    def test_status(self, state_dir: Path, monkeypatch, capsys):
        store = NamespacedStore(FileBackend(state_dir))
        store.set("U1", "usage", UsageCounters(used_by_kind={"image": 2}).to_dict())
        store.set(
            "U1",
            "job:video",
            Job(id="j", owner_id="U1", kind="video", status=JobStatus.SUCCEEDED,
                progress_pct=100, result="https://cdn/v.mp4").to_dict(),
        )
        monkeypatch.setattr("sys.argv", ["studiosync", "status"])

        main()
        out = capsys.readouterr().out
        assert "owner: U1 (free)" in out
        assert "image" in out and "2 / 5" in out
        assert "video job: succeeded 100% https://cdn/v.mp4" in out
        assert "image job: none" in out

    def test_resume_without_job(self, state_dir: Path, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["studiosync", "resume", "image"])
        with pytest.raises(SystemExit) as excinfo:
            main()
        assert excinfo.value.code == 1
        assert "No image job to resume" in capsys.readouterr().out

    def test_unknown_command(self, state_dir: Path, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["studiosync", "frobnicate"])
        with pytest.raises(SystemExit):
            main()
        assert "Usage" in capsys.readouterr().out
