"""Dispatcher: selects and claims the next eligible job."""

from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from prometheus_client import Counter, Gauge

from genqueue.jobs.errors import IllegalTransitionError
from genqueue.jobs.models import Job, utcnow
from genqueue.jobs.state_machine import JobAction, transition
from genqueue.repositories.protocols import JobStore

logger = structlog.get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

JOBS_DISPATCHED_TOTAL = Counter(
    "genqueue_jobs_dispatched_total",
    "Jobs claimed for execution",
    ["tier"],
)
DISPATCH_CLAIMS_LOST_TOTAL = Counter(
    "genqueue_dispatch_claims_lost_total",
    "Claims that lost to another dispatcher or a filled cap",
)
JOBS_PROCESSING = Gauge(
    "genqueue_jobs_processing",
    "Jobs in processing as last seen by this dispatcher",
    ["tier"],
)

# Receives each claimed job (normally the execution pool's submit)
JobHandoff = Callable[[Job], Awaitable[None]]


class Dispatcher:
    """Priority/FIFO dispatcher bounded by per-tier and global caps.

    Safe to run in many processes at once: the store's claim is the single
    point where a job changes hands, and it re-checks status, attempts and both
    caps at write time. Counts read here only pre-filter the candidate window.
    """

    def __init__(
        self,
        jobs: JobStore,
        global_limit: int,
        candidate_window: int = 10,
        handoff: Optional[JobHandoff] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._global_limit = global_limit
        self._candidate_window = candidate_window
        self._handoff = handoff
        self._clock = clock
        self._gauged_tiers: set[str] = set()

    def set_handoff(self, handoff: Optional[JobHandoff]) -> None:
        self._handoff = handoff

    async def dispatch_next(self, handoff: Optional[JobHandoff] = None) -> Optional[Job]:
        """Claim the next eligible job and hand it off.

        Args:
            handoff: Receives the claimed job instead of the configured handoff

        Returns:
            The claimed job (status processing), or None if nothing is eligible
        """
        by_tier = await self._jobs.count_processing_by_tier()
        self._gauged_tiers.update(by_tier)
        for tier_name in self._gauged_tiers:
            JOBS_PROCESSING.labels(tier=tier_name).set(by_tier.get(tier_name, 0))
        total = sum(by_tier.values())
        if total >= self._global_limit:
            logger.debug("dispatch_global_cap_reached", processing=total)
            return None

        candidates = await self._jobs.list_dispatch_candidates(self._candidate_window)
        for candidate in candidates:
            tier = candidate.tier
            if tier is None:
                logger.warning("dispatch_skip_no_tier", job_id=str(candidate.id))
                continue
            if by_tier.get(tier.name, 0) >= tier.max_concurrent_requests:
                continue

            try:
                claimed_state = transition(candidate, JobAction.CLAIM, now=self._clock())
            except IllegalTransitionError as e:
                logger.error("dispatch_skip_illegal", job_id=str(candidate.id), error=str(e))
                continue

            claimed = await self._jobs.claim(
                candidate,
                claimed_state,
                tier_limit=tier.max_concurrent_requests,
                global_limit=self._global_limit,
            )
            if claimed is None:
                # Another dispatcher won this job or filled a cap; try the next one
                DISPATCH_CLAIMS_LOST_TOTAL.inc()
                logger.debug("dispatch_claim_lost", job_id=str(candidate.id))
                continue

            JOBS_DISPATCHED_TOTAL.labels(tier=tier.name).inc()
            logger.info(
                "job_dispatched",
                job_id=str(claimed.id),
                tier=tier.name,
                priority=claimed.priority,
                attempt=claimed.attempts,
            )
            target = handoff or self._handoff
            if target is not None:
                await target(claimed)
            return claimed

        return None
