"""Unit tests for the watchdog."""

from unittest.mock import AsyncMock

import pytest

from genqueue.jobs.types import TIMED_OUT, JobStatus
from genqueue.services.watchdog import (
    WATCHDOG_LAST_SCAN_TIMESTAMP,
    WATCHDOG_RECLAIMED_TOTAL,
    Watchdog,
)


@pytest.fixture
def watchdog(job_store, clock):
    return Watchdog(job_store, timeout_minutes=15, batch_size=100, clock=clock)


class TestWatchdogScan:
    @pytest.mark.asyncio
    async def test_stale_job_with_attempts_left_requeued(self, watchdog, job_store, make_job, clock):
        job = await job_store.insert(
            make_job(status=JobStatus.PROCESSING, attempts=1, max_attempts=2)
        )
        clock.advance(minutes=16)

        report = await watchdog.scan()

        assert report.requeued == 1
        stored = await job_store.get(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.retry_count == 1
        assert stored.error == TIMED_OUT

    @pytest.mark.asyncio
    async def test_stale_job_without_attempts_failed(self, watchdog, job_store, make_job, clock):
        job = await job_store.insert(
            make_job(status=JobStatus.PROCESSING, attempts=2, max_attempts=2)
        )
        clock.advance(minutes=16)

        report = await watchdog.scan()

        assert report.failed == 1
        stored = await job_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "timed out"

    @pytest.mark.asyncio
    async def test_recent_jobs_untouched(self, watchdog, job_store, make_job, clock):
        job = await job_store.insert(make_job(status=JobStatus.PROCESSING, attempts=1))
        clock.advance(minutes=14)

        report = await watchdog.scan()

        assert report.reclaimed == 0
        assert (await job_store.get(job.id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_one_bad_job_does_not_stop_scan(self, watchdog, job_store, make_job, clock):
        first = await job_store.insert(make_job(status=JobStatus.PROCESSING, attempts=1))
        second = await job_store.insert(make_job(status=JobStatus.PROCESSING, attempts=1))
        clock.advance(minutes=30)
        real_save = job_store.save_transition

        async def flaky(before, after):
            if before.id == first.id:
                raise ConnectionResetError()
            return await real_save(before, after)

        job_store.save_transition = flaky

        report = await watchdog.scan()

        assert report.errors == 1
        assert report.requeued == 1
        assert (await job_store.get(second.id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_conflict_counted(self, watchdog, job_store, make_job, clock):
        await job_store.insert(make_job(status=JobStatus.PROCESSING, attempts=1))
        clock.advance(minutes=30)
        job_store.save_transition = AsyncMock(return_value=None)

        report = await watchdog.scan()

        assert report.conflicts == 1
        assert report.reclaimed == 0


class TestWatchdogMetrics:
    @pytest.mark.asyncio
    async def test_outcomes_counted(self, watchdog, job_store, make_job, clock):
        requeued = WATCHDOG_RECLAIMED_TOTAL.labels(outcome="requeued")
        failed = WATCHDOG_RECLAIMED_TOTAL.labels(outcome="failed")
        requeued_before, failed_before = requeued._value.get(), failed._value.get()
        await job_store.insert(
            make_job(status=JobStatus.PROCESSING, attempts=1, max_attempts=2)
        )
        await job_store.insert(
            make_job(status=JobStatus.PROCESSING, attempts=2, max_attempts=2)
        )
        clock.advance(minutes=16)

        await watchdog.scan()

        assert requeued._value.get() - requeued_before == 1
        assert failed._value.get() - failed_before == 1

    @pytest.mark.asyncio
    async def test_last_scan_timestamp_set_on_empty_scan(self, watchdog, clock):
        await watchdog.scan()

        assert WATCHDOG_LAST_SCAN_TIMESTAMP._value._value == clock().timestamp()
