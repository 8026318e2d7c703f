"""Scheduling of background resync passes."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .resync import ResyncDriver, ResyncOutcome, ResyncResult

logger = logging.getLogger(__name__)

ConnectivityProbe = Callable[[], Awaitable[bool]]


class SyncScheduler:
    """Runs the resync driver when the network allows it.

    At most one one-shot job exists at a time: scheduling again replaces
    the running job. A job waits for connectivity, then retries with
    exponential backoff until a pass succeeds.
    """

    JOB_NAME = "item_sync_work"

    def __init__(
        self,
        driver: ResyncDriver,
        connectivity: ConnectivityProbe | None = None,
        initial_backoff_seconds: float = 30.0,
        max_backoff_seconds: float = 3600.0,
        connectivity_poll_seconds: float = 10.0,
    ):
        """Initialize the scheduler.

        Args:
            driver: Resync driver to run.
            connectivity: Async callable returning True when online.
                Without one the network is assumed available.
            initial_backoff_seconds: First retry delay.
            max_backoff_seconds: Upper bound for retry delays.
            connectivity_poll_seconds: How often to re-check while offline.
        """
        self.driver = driver
        self._connectivity = connectivity
        self.initial_backoff = initial_backoff_seconds
        self.max_backoff = max_backoff_seconds
        self.connectivity_poll = connectivity_poll_seconds
        self._job: asyncio.Task | None = None
        self._was_offline = False
        self._consecutive_failures = 0

    @property
    def job(self) -> asyncio.Task | None:
        return self._job

    @property
    def is_scheduled(self) -> bool:
        return self._job is not None and not self._job.done()

    async def _is_online(self) -> bool:
        if self._connectivity is None:
            return True
        try:
            return await self._connectivity()
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False

    async def _wait_for_connectivity(self) -> None:
        while not await self._is_online():
            logger.debug(f"Offline, checking again in {self.connectivity_poll}s")
            await asyncio.sleep(self.connectivity_poll)

    def schedule_sync(self) -> asyncio.Task:
        """Enqueue a resync job, replacing any job already scheduled."""
        logger.debug(f"Scheduling {self.JOB_NAME}")
        if self.is_scheduled:
            self._job.cancel()
        self._job = asyncio.create_task(self._run_job(), name=self.JOB_NAME)
        return self._job

    async def cancel_sync(self) -> None:
        """Cancel the scheduled job, if any."""
        job = self._job
        self._job = None
        if job is None or job.done():
            return
        logger.debug(f"Canceling {self.JOB_NAME}")
        job.cancel()
        try:
            await job
        except asyncio.CancelledError:
            pass

    async def _run_job(self) -> ResyncResult:
        backoff = self.initial_backoff
        while True:
            await self._wait_for_connectivity()
            result = await self.driver.run_resync()
            if result.outcome is ResyncOutcome.SUCCESS:
                return result

            logger.info(f"Resync {result.outcome.value}, retrying in {backoff}s")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    def on_connectivity_changed(self, online: bool) -> None:
        """Schedule a resync when the network comes back."""
        logger.debug(f"Connectivity report: {'online' if online else 'offline'}")
        if online and self._was_offline:
            logger.info("Back online, scheduling sync")
            self.schedule_sync()
        self._was_offline = not online

    async def run_periodic(
        self,
        interval_seconds: float = 900,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run resync passes on a fixed interval.

        Args:
            interval_seconds: Seconds between passes.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting resync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            if await self._is_online():
                try:
                    result = await self.driver.run_resync()
                    if result.outcome is ResyncOutcome.SUCCESS:
                        self._consecutive_failures = 0
                    else:
                        self._consecutive_failures += 1
                except Exception as e:
                    logger.error(f"Resync loop error: {e}")
                    self._consecutive_failures += 1

            # Back off while passes keep failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = max(
                    interval_seconds,
                    min(
                        interval_seconds * (2 ** self._consecutive_failures),
                        self.max_backoff,
                    ),
                )
                logger.debug(f"Backing off resync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Resync loop stopped")
