"""Execution supervisor: drives one claimed job to its next state."""

import asyncio
import time
from datetime import datetime
from typing import Callable, Optional

import structlog
from prometheus_client import Counter, Histogram

from genqueue.jobs.errors import IllegalTransitionError
from genqueue.jobs.models import Job, utcnow
from genqueue.jobs.state_machine import JobAction, transition
from genqueue.jobs.types import NO_RESOURCE_AVAILABLE, JobKind, JobStatus
from genqueue.repositories.protocols import JobStore
from genqueue.services.artifacts import ArtifactStore, artifact_path
from genqueue.services.backends import GenerationBackend
from genqueue.services.resource_pool import ResourcePoolManager

logger = structlog.get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

JOB_ATTEMPTS_TOTAL = Counter(
    "genqueue_job_attempts_total",
    "Execution attempts by how they ended",
    ["outcome"],  # completed, requeued, failed, superseded, error
)
GENERATION_DURATION = Histogram(
    "genqueue_generation_duration_seconds",
    "Duration of generation backend calls",
    ["kind"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)


_OUTCOMES = {
    JobStatus.COMPLETED: "completed",
    JobStatus.QUEUED: "requeued",
    JobStatus.FAILED: "failed",
}


def default_service_for(kind: JobKind) -> str:
    """Resource pool service name for a job kind."""
    return f"{kind.value}-generation"


class ExecutionSupervisor:
    """Runs one attempt of a processing job.

    Acquires a pooled key, calls the generation backend, stores raw output,
    and finalizes the job as completed, requeued or failed. Every lower-level
    error is converted into a status transition with a readable ``error``;
    nothing but cancellation propagates to the caller.

    Writes are compare-and-swap on the claimed (status, attempts). If the
    watchdog reclaimed the job meanwhile, the stale supervisor's writes are
    dropped instead of double-finalizing.
    """

    def __init__(
        self,
        jobs: JobStore,
        resource_pool: ResourcePoolManager,
        backend: GenerationBackend,
        artifacts: ArtifactStore,
        clock: Callable[[], datetime] = utcnow,
        service_for: Callable[[JobKind], str] = default_service_for,
    ):
        self._jobs = jobs
        self._pool = resource_pool
        self._backend = backend
        self._artifacts = artifacts
        self._clock = clock
        self._service_for = service_for

    async def execute(self, job: Job) -> Job:
        """Execute a claimed job.

        Returns:
            The job as last persisted (or as claimed, if a write lost its race)
        """
        log = logger.bind(job_id=str(job.id), kind=job.kind.value, attempt=job.attempts)
        if job.status != JobStatus.PROCESSING:
            log.error("execute_not_processing", status=job.status.value)
            return job

        current = job
        try:
            if not await self._still_owned(job):
                log.warning("job_ownership_lost", stage="before_acquire")
                JOB_ATTEMPTS_TOTAL.labels(outcome="superseded").inc()
                return job

            key = await self._pool.acquire(self._service_for(job.kind))
            if key is None:
                return await self._fail(current, NO_RESOURCE_AVAILABLE, log)

            advanced = await self._advance(current, resource_key=key.id)
            if advanced is None:
                log.warning("job_ownership_lost", stage="assign_key", resource_key=key.id)
                JOB_ATTEMPTS_TOTAL.labels(outcome="superseded").inc()
                return job
            current = advanced

            async def on_progress(value: int) -> None:
                nonlocal current
                current = await self.report_progress(current, value) or current

            log.info("job_executing", resource_key=key.id)
            started = time.monotonic()
            try:
                result = await self._backend.generate(
                    job.kind,
                    job.prompt,
                    job.metadata.to_dict(),
                    key.credential,
                    on_progress=on_progress,
                )
            finally:
                GENERATION_DURATION.labels(kind=job.kind.value).observe(
                    time.monotonic() - started
                )

            if result.is_file:
                result_ref = await self._artifacts.store(
                    result.data, artifact_path(job, self._clock())
                )
            else:
                result_ref = result.result_ref

            return await self._finalize(
                current, JobAction.COMPLETE, log, result_ref=result_ref
            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            log.warning("job_attempt_failed", error=error, error_type=type(e).__name__)
            return await self._fail(current, error, log)

    async def report_progress(self, job: Job, progress: int) -> Optional[Job]:
        """Persist an intermediate progress value (non-decreasing per attempt)."""
        return await self._advance(job, progress=progress)

    async def _still_owned(self, job: Job) -> bool:
        """True while the store still holds this attempt in processing."""
        stored = await self._jobs.get(job.id)
        return (
            stored is not None
            and stored.status == JobStatus.PROCESSING
            and stored.attempts == job.attempts
        )

    async def _advance(
        self,
        job: Job,
        progress: Optional[int] = None,
        resource_key: Optional[str] = None,
    ) -> Optional[Job]:
        after = transition(
            job,
            JobAction.PROGRESS,
            now=self._clock(),
            progress=progress,
            resource_key=resource_key,
        )
        return await self._jobs.save_transition(job, after)

    async def _fail(self, job: Job, error: str, log) -> Job:
        return await self._finalize(job, JobAction.FAIL, log, error=error)

    async def _finalize(
        self,
        job: Job,
        action: JobAction,
        log,
        result_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        try:
            after = transition(
                job, action, now=self._clock(), result_ref=result_ref, error=error
            )
            saved = await self._jobs.save_transition(job, after)
        except asyncio.CancelledError:
            raise
        except IllegalTransitionError as e:
            log.error("job_finalize_illegal", error=str(e))
            JOB_ATTEMPTS_TOTAL.labels(outcome="error").inc()
            return job
        except Exception as e:
            # Left in processing; the watchdog will reclaim it
            log.error("job_finalize_failed", error=str(e), error_type=type(e).__name__)
            JOB_ATTEMPTS_TOTAL.labels(outcome="error").inc()
            return job

        if saved is None:
            log.warning("job_finalize_conflict", action=action.value)
            JOB_ATTEMPTS_TOTAL.labels(outcome="superseded").inc()
            return job

        JOB_ATTEMPTS_TOTAL.labels(outcome=_OUTCOMES[saved.status]).inc()
        if saved.status == JobStatus.COMPLETED:
            log.info("job_completed", result_ref=saved.result_ref)
        elif saved.status == JobStatus.QUEUED:
            log.info(
                "job_retry_scheduled",
                error=saved.error,
                retry_count=saved.retry_count,
                attempts=saved.attempts,
                max_attempts=saved.max_attempts,
            )
        else:
            log.warning("job_failed", error=saved.error, attempts=saved.attempts)
        return saved
