"""GenerationQueue: the caller-facing surface of the scheduling engine.

Wires the admission controller, dispatcher, execution supervisor, watchdog and
queue position indexer over one set of stores. API handlers call
``submit``/``retry``/``cancel``/``get_status``; the worker process drives
``dispatch_pending``, ``run_watchdog`` and ``refresh_queue_positions``.
"""

from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union
from uuid import UUID

import structlog

from genqueue.config import Settings
from genqueue.jobs.errors import (
    CancelNotAllowedError,
    IllegalTransitionError,
    JobNotFoundError,
    RetryNotAllowedError,
)
from genqueue.jobs.models import Job, TierConfig, utcnow
from genqueue.jobs.state_machine import JobAction, transition
from genqueue.jobs.types import JobKind, JobStatus
from genqueue.repositories.protocols import AccountStore, JobStore, ResourceKeyStore
from genqueue.services.admission import AdmissionController
from genqueue.services.artifacts import ArtifactStore, LocalArtifactStore
from genqueue.services.backends import GenerationBackend, HttpGenerationBackend
from genqueue.services.dispatcher import Dispatcher
from genqueue.services.executor import ExecutionPool
from genqueue.services.ledger import TokenLedger
from genqueue.services.queue_positions import QueuePositionIndexer
from genqueue.services.resource_pool import ResourcePoolManager
from genqueue.services.supervisor import ExecutionSupervisor
from genqueue.services.tiers import TierRegistry
from genqueue.services.watchdog import Watchdog, WatchdogReport

logger = structlog.get_logger(__name__)


class GenerationQueue:
    """Job queue facade over pluggable stores."""

    def __init__(
        self,
        jobs: JobStore,
        accounts: AccountStore,
        keys: ResourceKeyStore,
        backend: GenerationBackend,
        artifacts: ArtifactStore,
        tiers: Optional[Mapping[str, TierConfig]] = None,
        global_max_concurrent: int = 10,
        candidate_window: int = 10,
        worker_concurrency: int = 4,
        job_timeout_minutes: int = 15,
        watchdog_batch_size: int = 100,
        eager_dispatch: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self._clock = clock
        self._eager_dispatch = eager_dispatch
        self._positions_dirty = False

        self.ledger = TokenLedger(accounts, clock=clock)
        self.tiers = TierRegistry(accounts, tiers)
        self.resource_pool = ResourcePoolManager(keys, clock=clock)
        self.admission = AdmissionController(jobs, self.ledger, self.tiers, clock=clock)
        self.supervisor = ExecutionSupervisor(
            jobs, self.resource_pool, backend, artifacts, clock=clock
        )
        self.executor = ExecutionPool(
            self.supervisor.execute,
            size=worker_concurrency,
            on_done=self._on_job_done,
        )
        self.dispatcher = Dispatcher(
            jobs,
            global_limit=global_max_concurrent,
            candidate_window=candidate_window,
            handoff=self.executor.submit,
            clock=clock,
        )
        self.watchdog = Watchdog(
            jobs,
            timeout_minutes=job_timeout_minutes,
            batch_size=watchdog_batch_size,
            clock=clock,
        )
        self.indexer = QueuePositionIndexer(jobs)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool=None,
        backend: Optional[GenerationBackend] = None,
        artifacts: Optional[ArtifactStore] = None,
        tiers: Optional[Mapping[str, TierConfig]] = None,
    ) -> "GenerationQueue":
        """Build a queue from settings.

        Uses the PostgreSQL repositories when ``pool`` is given and the
        in-process stores otherwise.
        """
        if pool is not None:
            from genqueue.repositories.accounts import AccountRepository
            from genqueue.repositories.jobs import JobRepository
            from genqueue.repositories.resource_keys import ResourceKeyRepository

            jobs = JobRepository(pool)
            accounts = AccountRepository(pool)
            keys = ResourceKeyRepository(pool)
        else:
            from genqueue.repositories.memory import (
                InMemoryAccountStore,
                InMemoryJobStore,
                InMemoryResourceKeyStore,
            )

            logger.warning("queue_using_in_memory_store")
            jobs = InMemoryJobStore()
            accounts = InMemoryAccountStore()
            keys = InMemoryResourceKeyStore()

        if backend is None:
            if not settings.generation_backend_url:
                raise ValueError("generation_backend_url is required without a backend")
            backend = HttpGenerationBackend(
                settings.generation_backend_url, timeout=settings.generation_timeout_s
            )
        if artifacts is None:
            artifacts = LocalArtifactStore(
                settings.artifact_dir, base_url=settings.artifact_base_url
            )

        return cls(
            jobs,
            accounts,
            keys,
            backend,
            artifacts,
            tiers=tiers,
            global_max_concurrent=settings.global_max_concurrent,
            candidate_window=settings.dispatch_candidate_window,
            worker_concurrency=settings.worker_concurrency,
            job_timeout_minutes=settings.job_timeout_minutes,
            watchdog_batch_size=settings.watchdog_batch_size,
            eager_dispatch=settings.eager_dispatch,
        )

    # Caller-facing operations

    async def submit(
        self,
        user_id: Optional[str],
        kind: Union[JobKind, str, None],
        prompt: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Admit a job and, with eager dispatch, try to start it right away.

        Raises:
            AdmissionError: If the submission is rejected
        """
        job = await self.admission.submit(user_id, kind, prompt, metadata)
        await self._after_change()
        return await self.jobs.get(job.id) or job

    async def retry(self, job_id: UUID, caller_id: str) -> Job:
        """Requeue a failed job owned by ``caller_id``.

        ``attempts`` and ``tokens_charged`` are kept; the job gets a fresh
        attempt budget from its tier snapshot.

        Raises:
            JobNotFoundError: If the job does not exist
            RetryNotAllowedError: If the caller is not the owner, the job is not
                failed, or it was rejected at admission
        """
        job = await self._get_owned(job_id, caller_id, RetryNotAllowedError)
        if job.status != JobStatus.FAILED:
            raise RetryNotAllowedError(
                f"Job {job_id} is {job.status.value}; only failed jobs can be retried"
            )
        try:
            after = transition(job, JobAction.RETRY, now=self._clock())
        except IllegalTransitionError as e:
            raise RetryNotAllowedError(str(e)) from e

        saved = await self.jobs.save_transition(job, after)
        if saved is None:
            raise RetryNotAllowedError(f"Job {job_id} changed concurrently")

        logger.info(
            "job_retry_requested",
            job_id=str(job_id),
            user_id=caller_id,
            attempts=saved.attempts,
            max_attempts=saved.max_attempts,
        )
        await self._after_change()
        return await self.jobs.get(job_id) or saved

    async def cancel(self, job_id: UUID, caller_id: str) -> Job:
        """Cancel a waiting job owned by ``caller_id`` and refund its tokens.

        Raises:
            JobNotFoundError: If the job does not exist
            CancelNotAllowedError: If the caller is not the owner or the job is
                not waiting
        """
        job = await self._get_owned(job_id, caller_id, CancelNotAllowedError)
        if not job.status.is_waiting:
            raise CancelNotAllowedError(
                f"Job {job_id} is {job.status.value}; only waiting jobs can be cancelled"
            )

        after = transition(job, JobAction.CANCEL, now=self._clock())
        saved = await self.jobs.save_transition(job, after)
        if saved is None:
            raise CancelNotAllowedError(f"Job {job_id} changed concurrently")

        if saved.tokens_charged:
            try:
                await self.ledger.refund(
                    caller_id, saved.tokens_charged, f"refund:cancelled:{job_id}"
                )
            except Exception as e:
                # The job stays cancelled; the refund must be replayed by hand
                logger.error(
                    "job_cancel_refund_failed",
                    job_id=str(job_id),
                    user_id=caller_id,
                    amount=saved.tokens_charged,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
        logger.info(
            "job_cancelled",
            job_id=str(job_id),
            user_id=caller_id,
            refunded=saved.tokens_charged,
        )
        self._positions_dirty = True
        await self.refresh_queue_positions()
        return saved

    async def get_status(self, job_id: UUID) -> Job:
        """Raises JobNotFoundError if the job does not exist."""
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        """A user's jobs, most recent first."""
        return await self.jobs.list_for_user(user_id, limit)

    # Worker-driven operations

    async def dispatch_next(self) -> Optional[Job]:
        job = await self.dispatcher.dispatch_next()
        if job is not None:
            self._positions_dirty = True
        return job

    async def dispatch_pending(self, max_jobs: Optional[int] = None) -> int:
        """Claim jobs while the execution pool has free slots.

        Returns:
            Number of jobs claimed
        """
        claimed = 0
        while max_jobs is None or claimed < max_jobs:
            # Reserve the slot first so a claimed job never waits for capacity
            if not await self.executor.try_reserve():
                break
            try:
                job = await self.dispatcher.dispatch_next(handoff=self._start_reserved)
            except BaseException:
                self.executor.release()
                raise
            if job is None:
                self.executor.release()
                break
            self._positions_dirty = True
            claimed += 1
        return claimed

    async def run_watchdog(self) -> WatchdogReport:
        report = await self.watchdog.scan()
        if report.reclaimed:
            self._positions_dirty = True
        return report

    async def refresh_queue_positions(self, force: bool = False) -> Optional[int]:
        """Recompute positions if anything changed since the last refresh."""
        if not (force or self._positions_dirty):
            return None
        self._positions_dirty = False
        return await self.indexer.recompute()

    @property
    def positions_dirty(self) -> bool:
        return self._positions_dirty

    async def _after_change(self) -> None:
        """Opportunistic follow-up to a caller operation that already succeeded.

        Failures are logged, not raised; the worker loop dispatches and
        refreshes on its next pass.
        """
        self._positions_dirty = True
        try:
            if self._eager_dispatch:
                await self.dispatch_pending()
            await self.refresh_queue_positions()
        except Exception as e:
            self._positions_dirty = True
            logger.error(
                "eager_dispatch_failed", error=str(e), error_type=type(e).__name__
            )

    async def _start_reserved(self, job: Job) -> None:
        await self.executor.submit(job, reserved=True)

    def _on_job_done(self, job: Job) -> None:
        self._positions_dirty = True

    async def _get_owned(
        self, job_id: UUID, caller_id: str, denied: type[Exception]
    ) -> Job:
        job = await self.get_status(job_id)
        if job.user_id != caller_id:
            logger.warning(
                "job_access_denied", job_id=str(job_id), caller_id=caller_id
            )
            raise denied(f"Job {job_id} is not owned by {caller_id}")
        return job
