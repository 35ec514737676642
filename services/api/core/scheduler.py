# services/api/core/scheduler.py
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from core.job_queue import OfflineJobQueue
from core.sync_engine import ManifestSyncEngine

logger = logging.getLogger(__name__)


class BackgroundSyncScheduler:
    """
    Periodic background work on the running event loop:
      - delta sync every `sync_interval_seconds`
      - failed-job re-scheduling every `retry_interval_seconds`, followed by a
        sync when jobs are due
    """

    def __init__(
        self,
        engine: ManifestSyncEngine,
        job_queue: OfflineJobQueue,
        page_cache=None,
        sync_interval_seconds: int = 300,
        retry_interval_seconds: int = 60,
    ):
        self.engine = engine
        self.job_queue = job_queue
        self.page_cache = page_cache
        self.sync_interval = sync_interval_seconds
        self.retry_interval = retry_interval_seconds
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._sync_loop(), name="doclib-sync"),
            asyncio.create_task(self._retry_loop(), name="doclib-job-retry"),
        ]
        logger.info(
            f"Background sync started (sync every {self.sync_interval}s, retry every {self.retry_interval}s)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background sync stopped")

    async def trigger_if_needed(self) -> bool:
        """Sync now if jobs are due and no sync is running."""
        if self.engine.is_syncing or not self.job_queue.has_due_jobs():
            return False
        await self.engine.perform_delta_sync()
        return True

    async def run_sync_once(self) -> None:
        await self.engine.perform_delta_sync()
        if self.page_cache is not None:
            await asyncio.to_thread(self.page_cache.perform_maintenance)

    async def run_retry_once(self) -> Optional[int]:
        rescheduled = self.job_queue.process_retryable_jobs()
        self.job_queue.clear_old_jobs()
        await self.trigger_if_needed()
        return rescheduled

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            try:
                await self.run_sync_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic sync failed")

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.retry_interval)
            try:
                await self.run_retry_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Job retry pass failed")
