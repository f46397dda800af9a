"""Exceptions raised by the job queue."""

from typing import TYPE_CHECKING, Optional

from genqueue.jobs.types import RejectionReason

if TYPE_CHECKING:
    from genqueue.jobs.models import Job


class JobQueueError(Exception):
    """Base class for job queue errors."""

    pass


class AccountNotFoundError(JobQueueError):
    """Raised when a user has no token account."""

    def __init__(self, user_id: str):
        super().__init__(f"Account {user_id} not found")
        self.user_id = user_id


class JobNotFoundError(JobQueueError):
    """Raised when a job id does not exist."""

    pass


class UnknownTierError(JobQueueError):
    """Raised when an account references a tier that is not configured."""

    pass


class IllegalTransitionError(JobQueueError):
    """Raised when an action is not allowed from the job's current status."""

    pass


class AdmissionError(JobQueueError):
    """Raised when a submission is rejected.

    The rejected job is still recorded (status failed) and attached as ``job``.
    """

    def __init__(
        self, reason: RejectionReason, detail: str, job: Optional["Job"] = None
    ):
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail
        self.job = job


class RetryNotAllowedError(JobQueueError):
    """Raised when a user retry request fails its preconditions."""

    pass


class CancelNotAllowedError(JobQueueError):
    """Raised when a user cancel request fails its preconditions."""

    pass


class GenerationError(JobQueueError):
    """Raised by generation backends when a call fails."""

    pass


class ArtifactStoreError(JobQueueError):
    """Raised when a generated artifact cannot be stored."""

    pass
