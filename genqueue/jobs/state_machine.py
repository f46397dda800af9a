"""Job state machine.

Every status change goes through :func:`transition`. It validates the
(status, action) pair and returns a new Job; it never writes anything. Stores
persist the result with a compare-and-swap keyed on the prior job's
``(status, attempts)``, so two workers racing on one job cannot both win.

    queued/pending --CLAIM--> processing --COMPLETE--> completed
                                  |
                                  +--FAIL / TIME_OUT--> queued   (attempts remain)
                                  +--FAIL / TIME_OUT--> failed   (attempts exhausted)
    failed --RETRY (owner)--> queued
    queued/pending --CANCEL (owner)--> cancelled
"""

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Optional

from genqueue.jobs.errors import IllegalTransitionError
from genqueue.jobs.models import Job
from genqueue.jobs.types import TIMED_OUT, WAITING_STATUSES, JobStatus


class JobAction(str, Enum):
    """Events that move a job through its lifecycle."""

    CLAIM = "claim"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAIL = "fail"
    TIME_OUT = "time_out"
    RETRY = "retry"
    CANCEL = "cancel"


ALLOWED_FROM: dict[JobAction, tuple[JobStatus, ...]] = {
    JobAction.CLAIM: WAITING_STATUSES,
    JobAction.PROGRESS: (JobStatus.PROCESSING,),
    JobAction.COMPLETE: (JobStatus.PROCESSING,),
    JobAction.FAIL: (JobStatus.PROCESSING,),
    JobAction.TIME_OUT: (JobStatus.PROCESSING,),
    JobAction.RETRY: (JobStatus.FAILED,),
    JobAction.CANCEL: WAITING_STATUSES,
}


def transition(
    job: Job,
    action: JobAction,
    *,
    now: datetime,
    progress: Optional[int] = None,
    resource_key: Optional[str] = None,
    result_ref: Optional[str] = None,
    error: Optional[str] = None,
) -> Job:
    """Apply ``action`` to ``job`` and return the resulting job.

    Raises:
        IllegalTransitionError: If the action is not valid from the job's status
        ValueError: If a progress value is outside 0..100
    """
    if job.status not in ALLOWED_FROM[action]:
        raise IllegalTransitionError(
            f"Cannot {action.value} job {job.id} in status {job.status.value}"
        )

    if action is JobAction.CLAIM:
        if job.attempts >= job.max_attempts:
            raise IllegalTransitionError(
                f"Job {job.id} has no attempts left ({job.attempts}/{job.max_attempts})"
            )
        return replace(
            job,
            status=JobStatus.PROCESSING,
            attempts=job.attempts + 1,
            progress=0,
            assigned_resource_key=None,
            started_at=now,
            updated_at=now,
            queue_position=None,
        )

    if action is JobAction.PROGRESS:
        value = job.progress
        if progress is not None:
            if not 0 <= progress <= 100:
                raise ValueError(f"progress must be within 0..100, got {progress}")
            # Non-decreasing within one attempt
            value = max(job.progress, progress)
        return replace(
            job,
            progress=value,
            assigned_resource_key=resource_key or job.assigned_resource_key,
            updated_at=now,
        )

    if action is JobAction.COMPLETE:
        return replace(
            job,
            status=JobStatus.COMPLETED,
            progress=100,
            result_ref=result_ref,
            error=None,
            completed_at=now,
            updated_at=now,
        )

    if action in (JobAction.FAIL, JobAction.TIME_OUT):
        reason = error or (TIMED_OUT if action is JobAction.TIME_OUT else "unknown error")
        if job.attempts < job.max_attempts:
            # Back into the candidate pool; created_at is untouched so the job
            # keeps its place in FIFO order.
            return replace(
                job,
                status=JobStatus.QUEUED,
                error=reason,
                retry_count=job.retry_count + 1,
                started_at=None,
                updated_at=now,
            )
        return replace(
            job,
            status=JobStatus.FAILED,
            error=reason,
            completed_at=now,
            updated_at=now,
            queue_position=None,
        )

    if action is JobAction.RETRY:
        if job.attempts == 0:
            raise IllegalTransitionError(
                f"Job {job.id} was rejected at admission and cannot be retried"
            )
        budget = job.tier.max_attempts if job.tier else 1
        return replace(
            job,
            status=JobStatus.QUEUED,
            error=None,
            max_attempts=job.attempts + budget,
            progress=0,
            started_at=None,
            completed_at=None,
            updated_at=now,
        )

    # JobAction.CANCEL
    return replace(
        job,
        status=JobStatus.CANCELLED,
        completed_at=now,
        updated_at=now,
        queue_position=None,
    )
