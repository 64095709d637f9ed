"""
Background cleanup of expired upload and result files
"""
import asyncio
import contextlib
import logging
import time
from typing import Optional

from core.storage import ArtifactStore

logger = logging.getLogger(__name__)


class EvictionSweeper:
    """Deletes files older than the retention window, once at start then every interval

    Safety net for requests that crashed before their own cleanup ran. Assumes
    the retention window is far longer than any request, so no locking.
    """

    def __init__(self, store: ArtifactStore, interval_seconds: float = 3600, retention_seconds: float = 1800):
        self.store = store
        self.interval_seconds = interval_seconds
        self.retention_seconds = retention_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def sweep_once(self, now: Optional[float] = None) -> int:
        """Run one sweep over both directories; returns how many files were deleted"""
        current_time = time.time() if now is None else now
        deleted_count = 0
        processed_count = 0

        for directory in self.store.directories:
            try:
                entries = self.store.list_entries(directory)
            except OSError as e:
                logger.error(f"❌ Cannot list {directory}: {e}")
                continue

            for path in entries:
                processed_count += 1
                try:
                    age_seconds = self.store.stat_age(path, now=current_time)
                except FileNotFoundError:
                    continue  # removed by its request meanwhile
                except OSError as e:
                    logger.error(f"❌ Error processing file {path}: {e}")
                    continue

                if age_seconds > self.retention_seconds:
                    if self.store.delete(path):
                        deleted_count += 1
                        logger.info(f"🗑️ Deleted expired file: {path.name} (age: {int(age_seconds) // 60} minutes)")

        logger.info(f"🧹 Cleanup complete: processed {processed_count}, deleted {deleted_count}")
        return deleted_count

    async def run(self) -> None:
        """Sweep immediately, then every interval until stop() is called"""
        stop_event = self._stop_event or asyncio.Event()
        self._stop_event = stop_event
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("❌ Cleanup sweep failed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="upscaler-eviction-sweep")
        logger.info(
            f"⏰ Cleanup scheduled every {self.interval_seconds:.0f}s "
            f"(retention {self.retention_seconds:.0f}s)"
        )
        return self._task

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._stop_event = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
