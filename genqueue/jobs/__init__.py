"""Job system package."""

from genqueue.jobs.types import JobKind, JobStatus, RejectionReason, TierName
from genqueue.jobs.models import Job, JobMetadata, ResourceKey, TierConfig, TokenTransaction, UserAccount
from genqueue.jobs.state_machine import JobAction, transition

__all__ = [
    "JobKind",
    "JobStatus",
    "RejectionReason",
    "TierName",
    "Job",
    "JobMetadata",
    "ResourceKey",
    "TierConfig",
    "TokenTransaction",
    "UserAccount",
    "JobAction",
    "transition",
]
