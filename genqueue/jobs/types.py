"""Job system type definitions."""

from enum import Enum


class JobKind(str, Enum):
    """Kinds of generation work."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class JobStatus(str, Enum):
    """Job lifecycle statuses.

    PENDING is a legacy synonym of QUEUED kept for rows written by older producers.
    """

    QUEUED = "queued"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def is_waiting(self) -> bool:
        """Check if the job is waiting to be dispatched."""
        return self in WAITING_STATUSES


WAITING_STATUSES = (JobStatus.QUEUED, JobStatus.PENDING)
ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PENDING, JobStatus.PROCESSING)


class TierName(str, Enum):
    """Service tiers."""

    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class RejectionReason(str, Enum):
    """Reasons a submission is refused at admission."""

    INVALID_REQUEST = "invalid-request"
    QUEUE_LIMIT_EXCEEDED = "queue-limit-exceeded"
    INSUFFICIENT_TOKENS = "insufficient-tokens"


# Execution-side failure reasons surfaced in Job.error
NO_RESOURCE_AVAILABLE = "no-resource-available"
TIMED_OUT = "timed out"
