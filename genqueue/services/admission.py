"""Admission controller: the gate between a submission and the queue."""

from datetime import datetime
from typing import Any, Callable, NoReturn, Optional, Union
from uuid import uuid4

import structlog

from genqueue.jobs.errors import AccountNotFoundError, AdmissionError, UnknownTierError
from genqueue.jobs.models import Job, JobMetadata, TierConfig, utcnow
from genqueue.jobs.types import JobKind, JobStatus, RejectionReason
from genqueue.repositories.protocols import JobStore
from genqueue.services.ledger import TokenLedger
from genqueue.services.tiers import TierRegistry

logger = structlog.get_logger(__name__)


BASE_TOKEN_COSTS: dict[JobKind, int] = {
    JobKind.IMAGE: 30,
    JobKind.VIDEO: 50,
    JobKind.AUDIO: 20,
}


def token_cost(kind: JobKind, tier: TierConfig) -> int:
    """Base cost for ``kind`` minus the tier discount, floored."""
    base = BASE_TOKEN_COSTS[kind]
    return base * (100 - tier.token_discount_pct) // 100


def _parse_kind(kind: Union[JobKind, str, None]) -> Optional[JobKind]:
    if kind is None or isinstance(kind, JobKind):
        return kind
    try:
        return JobKind(kind)
    except ValueError:
        return None


class AdmissionController:
    """Validates submissions, enforces queue limits and charges tokens.

    Every submission leaves a job record: either ``queued`` with tokens charged,
    or ``failed`` with the rejection reason in ``error`` and nothing charged.
    """

    def __init__(
        self,
        jobs: JobStore,
        ledger: TokenLedger,
        tiers: TierRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._ledger = ledger
        self._tiers = tiers
        self._clock = clock

    async def submit(
        self,
        user_id: Optional[str],
        kind: Union[JobKind, str, None],
        prompt: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Admit a job.

        Returns:
            The queued job

        Raises:
            AdmissionError: With reason invalid-request, queue-limit-exceeded or
                insufficient-tokens; the recorded failed job is attached
        """
        now = self._clock()
        job_kind = _parse_kind(kind)
        draft = Job.new(
            user_id=user_id or "",
            kind=job_kind,
            prompt=prompt or "",
            status=JobStatus.QUEUED,
            now=now,
            id=uuid4(),
            metadata=JobMetadata.from_dict(metadata),
            tier=self._tiers.default,
        )
        log = logger.bind(job_id=str(draft.id), user_id=user_id, kind=str(kind))

        missing = [
            name
            for name, value in (("user_id", user_id), ("kind", kind), ("prompt", prompt))
            if not value or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            await self._reject(
                draft, RejectionReason.INVALID_REQUEST, f"missing {', '.join(missing)}"
            )
        if job_kind is None:
            await self._reject(
                draft, RejectionReason.INVALID_REQUEST, f"unsupported kind {kind!r}"
            )

        try:
            tier = await self._tiers.resolve(user_id)
        except UnknownTierError as e:
            await self._reject(draft, RejectionReason.INVALID_REQUEST, str(e))
        draft.tier = tier
        draft.priority = tier.priority_level
        draft.max_attempts = tier.max_attempts

        active = await self._jobs.count_active_for_user(user_id)
        if active >= tier.max_queue_size:
            await self._reject(
                draft,
                RejectionReason.QUEUE_LIMIT_EXCEEDED,
                f"{active} active jobs, tier {tier.name} allows {tier.max_queue_size}",
            )

        cost = token_cost(job_kind, tier)
        reason = f"generation:{job_kind.value}:{draft.id}"
        try:
            charged = await self._ledger.charge(user_id, cost, reason)
        except AccountNotFoundError as e:
            await self._reject(draft, RejectionReason.INVALID_REQUEST, str(e))
        if not charged:
            await self._reject(
                draft, RejectionReason.INSUFFICIENT_TOKENS, f"cost {cost} tokens"
            )
        draft.tokens_charged = cost

        try:
            job = await self._jobs.insert_within_limit(draft, tier.max_queue_size)
        except Exception as e:
            # The insert may have committed before the error surfaced
            job = await self._jobs.get(draft.id)
            if job is None:
                await self._ledger.refund(
                    user_id, cost, f"refund:admission_error:{draft.id}"
                )
                raise
            log.warning("job_insert_error_after_commit", error=str(e))
        if job is None:
            # Lost a race against this user's concurrent submissions
            await self._ledger.refund(user_id, cost, f"refund:queue_limit:{draft.id}")
            draft.tokens_charged = 0
            await self._reject(
                draft,
                RejectionReason.QUEUE_LIMIT_EXCEEDED,
                f"tier {tier.name} allows {tier.max_queue_size} active jobs",
            )

        log.info(
            "job_admitted",
            tier=tier.name,
            priority=job.priority,
            tokens_charged=cost,
        )
        return job

    async def _reject(self, draft: Job, reason: RejectionReason, detail: str) -> NoReturn:
        """Record ``draft`` as failed and raise."""
        draft.status = JobStatus.FAILED
        draft.error = reason.value
        draft.tokens_charged = 0
        draft.completed_at = draft.updated_at
        job = await self._jobs.insert(draft)
        logger.info(
            "job_rejected",
            job_id=str(draft.id),
            user_id=draft.user_id,
            reason=reason.value,
            detail=detail,
        )
        raise AdmissionError(reason, detail, job)
