"""Periodic provider status polling."""

import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from lock_manager.core.exceptions import LockManagerError

logger = logging.getLogger(__name__)


class StatusPoller:
    """Refreshes the status of every provider-bound lock on an interval."""

    JOB_ID = "status_poll"

    def __init__(
        self,
        list_lock_ids: Callable[[], Awaitable[list[str]]],
        refresh: Callable[[str], Awaitable[object]],
        interval_seconds: int = 300,
    ):
        """Initialize the poller.

        Args:
            list_lock_ids: Callback returning the ids of provider-bound locks
            refresh: Callback refreshing one lock's status. Args: (lock_id)
            interval_seconds: How often to poll; 0 disables polling
        """
        self._list_lock_ids = list_lock_ids
        self._refresh = refresh
        self._interval = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the poller."""
        if self._interval <= 0:
            logger.info("Status polling disabled")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.poll_once,
            IntervalTrigger(seconds=self._interval),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Status poller started (every %ds)", self._interval)

    def stop(self) -> None:
        """Stop the poller."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Status poller stopped")
        self._scheduler = None

    async def poll_once(self) -> dict[str, int]:
        """Refresh every bound lock once; one lock failing does not stop the rest."""
        refreshed = failed = 0
        for lock_id in await self._list_lock_ids():
            try:
                await self._refresh(lock_id)
                refreshed += 1
            except LockManagerError as e:
                failed += 1
                logger.error("Status refresh failed for lock %s: %s", lock_id, e)
        logger.debug("Status poll: %d refreshed, %d failed", refreshed, failed)
        return {"refreshed": refreshed, "failed": failed}
