"""Tests for the resync scheduler."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from itemsync.sync import ResyncOutcome, ResyncResult, SyncScheduler


def result(outcome: ResyncOutcome) -> ResyncResult:
    return ResyncResult(outcome=outcome)


@pytest.fixture
def driver():
    driver = MagicMock()
    driver.run_resync = AsyncMock(return_value=result(ResyncOutcome.SUCCESS))
    return driver


def make_scheduler(driver, connectivity=None) -> SyncScheduler:
    return SyncScheduler(
        driver,
        connectivity=connectivity,
        initial_backoff_seconds=0,
        max_backoff_seconds=0,
        connectivity_poll_seconds=0,
    )


class TestScheduleSync:
    """Tests for the one-shot sync job."""

    @pytest.mark.asyncio
    async def test_job_runs_until_success(self, driver):
        driver.run_resync.side_effect = [
            result(ResyncOutcome.FAILURE),
            result(ResyncOutcome.RETRY),
            result(ResyncOutcome.SUCCESS),
        ]
        scheduler = make_scheduler(driver)

        job = scheduler.schedule_sync()
        final = await asyncio.wait_for(job, timeout=1)

        assert final.outcome == ResyncOutcome.SUCCESS
        assert driver.run_resync.await_count == 3
        assert not scheduler.is_scheduled

    @pytest.mark.asyncio
    async def test_job_waits_for_connectivity(self, driver):
        connectivity = AsyncMock(side_effect=[False, False, True])
        scheduler = make_scheduler(driver, connectivity)

        await asyncio.wait_for(scheduler.schedule_sync(), timeout=1)

        assert connectivity.await_count == 3
        driver.run_resync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_probe_error_counts_as_offline(self, driver):
        connectivity = AsyncMock(side_effect=[OSError("no route"), True])
        scheduler = make_scheduler(driver, connectivity)

        await asyncio.wait_for(scheduler.schedule_sync(), timeout=1)

        driver.run_resync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_schedule_replaces_existing_job(self, driver):
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return result(ResyncOutcome.SUCCESS)

        driver.run_resync.side_effect = blocked
        scheduler = make_scheduler(driver)

        first = scheduler.schedule_sync()
        await asyncio.sleep(0)
        second = scheduler.schedule_sync()
        await asyncio.sleep(0)

        assert scheduler.job is second

        gate.set()
        await asyncio.wait_for(second, timeout=1)
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_sync(self, driver):
        driver.run_resync.return_value = result(ResyncOutcome.FAILURE)
        scheduler = SyncScheduler(driver, initial_backoff_seconds=60)

        job = scheduler.schedule_sync()
        await asyncio.sleep(0)
        await scheduler.cancel_sync()

        assert job.cancelled()
        assert scheduler.job is None
        assert not scheduler.is_scheduled

    @pytest.mark.asyncio
    async def test_cancel_without_job(self, driver):
        scheduler = make_scheduler(driver)

        await scheduler.cancel_sync()

        assert scheduler.job is None


class TestConnectivityChanges:
    """Tests for scheduling on network transitions."""

    @pytest.mark.asyncio
    async def test_schedules_when_back_online(self, driver):
        scheduler = make_scheduler(driver)

        scheduler.on_connectivity_changed(False)
        assert scheduler.job is None

        scheduler.on_connectivity_changed(True)
        assert scheduler.job is not None
        await asyncio.wait_for(scheduler.job, timeout=1)

    @pytest.mark.asyncio
    async def test_online_without_prior_offline_does_nothing(self, driver):
        scheduler = make_scheduler(driver)

        scheduler.on_connectivity_changed(True)
        scheduler.on_connectivity_changed(True)

        assert scheduler.job is None


class TestRunPeriodic:
    """Tests for the periodic resync loop."""

    @pytest.mark.asyncio
    async def test_stops_on_event(self, driver):
        stop_event = asyncio.Event()
        calls = []

        async def run_resync():
            calls.append(1)
            if len(calls) == 2:
                stop_event.set()
            return result(ResyncOutcome.SUCCESS)

        driver.run_resync.side_effect = run_resync
        scheduler = make_scheduler(driver)

        await asyncio.wait_for(
            scheduler.run_periodic(interval_seconds=0.01, stop_event=stop_event),
            timeout=1,
        )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_skips_pass_while_offline(self, driver):
        stop_event = asyncio.Event()

        async def offline():
            stop_event.set()
            return False

        scheduler = make_scheduler(driver, connectivity=offline)

        await asyncio.wait_for(
            scheduler.run_periodic(interval_seconds=0.01, stop_event=stop_event),
            timeout=1,
        )

        driver.run_resync.assert_not_called()

    @pytest.mark.asyncio
    async def test_driver_error_does_not_stop_loop(self, driver):
        stop_event = asyncio.Event()
        calls = []

        async def run_resync():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            stop_event.set()
            return result(ResyncOutcome.SUCCESS)

        driver.run_resync.side_effect = run_resync
        scheduler = SyncScheduler(driver, max_backoff_seconds=0.05)

        await asyncio.wait_for(
            scheduler.run_periodic(interval_seconds=0.01, stop_event=stop_event),
            timeout=1,
        )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_backoff_never_shorter_than_interval(self, driver):
        driver.run_resync.return_value = result(ResyncOutcome.FAILURE)
        scheduler = SyncScheduler(driver, max_backoff_seconds=60)
        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with patch("itemsync.sync.scheduler.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await scheduler.run_periodic(interval_seconds=900)

        assert [c.args[0] for c in sleep.await_args_list] == [900, 900]

    @pytest.mark.asyncio
    async def test_backoff_grows_up_to_cap(self, driver):
        driver.run_resync.return_value = result(ResyncOutcome.RETRY)
        scheduler = SyncScheduler(driver, max_backoff_seconds=300)
        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("itemsync.sync.scheduler.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await scheduler.run_periodic(interval_seconds=100)

        assert [c.args[0] for c in sleep.await_args_list] == [200, 300, 300]
