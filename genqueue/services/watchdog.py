"""Watchdog: reclaims jobs stuck in processing past their deadline."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from prometheus_client import Counter, Gauge

from genqueue.jobs.errors import IllegalTransitionError
from genqueue.jobs.models import utcnow
from genqueue.jobs.state_machine import JobAction, transition
from genqueue.jobs.types import JobStatus
from genqueue.repositories.protocols import JobStore

logger = structlog.get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

WATCHDOG_RECLAIMED_TOTAL = Counter(
    "genqueue_watchdog_reclaimed_total",
    "Stale processing jobs handled by the watchdog",
    ["outcome"],  # requeued, failed, conflict, error
)
WATCHDOG_LAST_SCAN_TIMESTAMP = Gauge(
    "genqueue_watchdog_last_scan_timestamp",
    "Timestamp of last watchdog scan (unix seconds)",
)


@dataclass
class WatchdogReport:
    """Outcome of one watchdog scan."""

    requeued: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def reclaimed(self) -> int:
        return self.requeued + self.failed


class Watchdog:
    """Periodic scan for processing jobs with no update within the deadline.

    Each stale job is timed out through the state machine: back to queued while
    attempts remain, otherwise failed with ``timed out``. Enforcement is
    cooperative, so a job may run up to deadline + scan interval.
    """

    def __init__(
        self,
        jobs: JobStore,
        timeout_minutes: int = 15,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._timeout = timedelta(minutes=timeout_minutes)
        self._batch_size = batch_size
        self._clock = clock

    async def scan(self) -> WatchdogReport:
        now = self._clock()
        cutoff = now - self._timeout
        report = WatchdogReport()

        stale = await self._jobs.list_stale_processing(cutoff, self._batch_size)
        for job in stale:
            log = logger.bind(job_id=str(job.id), attempts=job.attempts)
            try:
                after = transition(job, JobAction.TIME_OUT, now=now)
                saved = await self._jobs.save_transition(job, after)
            except asyncio.CancelledError:
                raise
            except IllegalTransitionError as e:
                log.error("stale_job_illegal", error=str(e))
                report.errors += 1
                WATCHDOG_RECLAIMED_TOTAL.labels(outcome="error").inc()
                continue
            except Exception as e:
                log.error("stale_job_reclaim_failed", error=str(e))
                report.errors += 1
                WATCHDOG_RECLAIMED_TOTAL.labels(outcome="error").inc()
                continue

            if saved is None:
                # The supervisor finished (or another watchdog reclaimed) first
                report.conflicts += 1
                WATCHDOG_RECLAIMED_TOTAL.labels(outcome="conflict").inc()
                continue

            if saved.status == JobStatus.QUEUED:
                report.requeued += 1
                WATCHDOG_RECLAIMED_TOTAL.labels(outcome="requeued").inc()
                log.warning("stale_job_requeued", last_update=job.updated_at.isoformat())
            else:
                report.failed += 1
                WATCHDOG_RECLAIMED_TOTAL.labels(outcome="failed").inc()
                log.warning("stale_job_failed", last_update=job.updated_at.isoformat())

        WATCHDOG_LAST_SCAN_TIMESTAMP.set(now.timestamp())
        if stale:
            logger.info(
                "watchdog_scan_complete",
                scanned=len(stale),
                requeued=report.requeued,
                failed=report.failed,
                conflicts=report.conflicts,
                errors=report.errors,
            )
        return report
