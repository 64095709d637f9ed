import asyncio
import os
import time
from pathlib import Path

import pytest

from core.storage import ArtifactStore
from helpers import list_files
from utils.cleanup import EvictionSweeper


@pytest.fixture()
def store(tmp_path: Path) -> ArtifactStore:
    s = ArtifactStore(tmp_path / "uploads", tmp_path / "outputs")
    s.ensure_directories()
    return s


def _touch(path: Path, age_seconds: float, now: float) -> Path:
    path.write_bytes(b"x")
    os.utime(path, (now - age_seconds, now - age_seconds))
    return path


class TestSweepOnce:
    def test_deletes_only_files_older_than_retention(self, store: ArtifactStore) -> None:
        now = time.time()
        _touch(store.incoming_dir / "image-old.png", 31 * 60, now)
        _touch(store.incoming_dir / "image-new.png", 5 * 60, now)
        _touch(store.outgoing_dir / "upscaled_old.png", 2 * 3600, now)

        deleted = EvictionSweeper(store, retention_seconds=30 * 60).sweep_once(now=now)

        assert deleted == 2
        assert list_files(store.incoming_dir) == ["image-new.png"]
        assert list_files(store.outgoing_dir) == []

    def test_one_bad_entry_does_not_stop_the_sweep(
        self, store: ArtifactStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        now = time.time()
        bad = _touch(store.incoming_dir / "a-bad.png", 3600, now)
        _touch(store.incoming_dir / "b-old.png", 3600, now)
        real_stat_age = store.stat_age

        def flaky_stat_age(path, now=None):
            if path == bad:
                raise PermissionError("denied")
            return real_stat_age(path, now=now)

        monkeypatch.setattr(store, "stat_age", flaky_stat_age)

        deleted = EvictionSweeper(store, retention_seconds=60).sweep_once(now=now)

        assert deleted == 1
        assert list_files(store.incoming_dir) == ["a-bad.png"]

    def test_missing_directory_is_logged_and_skipped(
        self, store: ArtifactStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        now = time.time()
        store.incoming_dir.rmdir()
        _touch(store.outgoing_dir / "upscaled_old.png", 3600, now)

        deleted = EvictionSweeper(store, retention_seconds=60).sweep_once(now=now)

        assert deleted == 1
        assert "Cannot list" in caplog.text


class TestLifecycle:
    async def test_start_sweeps_immediately_and_stop_ends_task(self, store: ArtifactStore) -> None:
        _touch(store.outgoing_dir / "upscaled_stale.png", 3600, time.time())
        sweeper = EvictionSweeper(store, interval_seconds=3600, retention_seconds=60)

        sweeper.start()
        for _ in range(100):
            if not list_files(store.outgoing_dir):
                break
            await asyncio.sleep(0.02)

        assert list_files(store.outgoing_dir) == []
        assert sweeper.running

        await sweeper.stop()

        assert not sweeper.running

    async def test_start_twice_reuses_task(self, store: ArtifactStore) -> None:
        sweeper = EvictionSweeper(store)

        first = sweeper.start()
        second = sweeper.start()

        assert first is second
        await sweeper.stop()
