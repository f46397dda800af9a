"""Job system data models."""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from genqueue.jobs.types import JobKind, JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TierConfig:
    """Service tier reference data.

    A copy is embedded in every job at admission, so later tier changes never
    alter jobs already in the queue.
    """

    name: str
    max_concurrent_requests: int
    priority_level: int
    max_queue_size: int
    max_attempts: int
    token_discount_pct: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_concurrent_requests": self.max_concurrent_requests,
            "priority_level": self.priority_level,
            "max_queue_size": self.max_queue_size,
            "max_attempts": self.max_attempts,
            "token_discount_pct": self.token_discount_pct,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TierConfig":
        return cls(
            name=data["name"],
            max_concurrent_requests=int(data["max_concurrent_requests"]),
            priority_level=int(data["priority_level"]),
            max_queue_size=int(data["max_queue_size"]),
            max_attempts=int(data["max_attempts"]),
            token_discount_pct=int(data.get("token_discount_pct", 0)),
        )


@dataclass
class JobMetadata:
    """Known optional request fields plus an opaque extension map.

    Keys that are not modelled here land in ``extra`` and are written back
    unchanged, so producers can add fields without a schema change.
    """

    is_public: bool = False
    subscription_level: Optional[str] = None
    duration_seconds: Optional[float] = None
    style: Optional[str] = None
    negative_prompt: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> "JobMetadata":
        if not raw:
            return cls()
        if isinstance(raw, JobMetadata):
            return raw

        data = dict(raw)
        # camelCase keys written by older clients
        if "isPublic" in data and "is_public" not in data:
            data["is_public"] = data.pop("isPublic")
        if "subscriptionLevel" in data and "subscription_level" not in data:
            data["subscription_level"] = data.pop("subscriptionLevel")

        extra = dict(data.pop("extra", None) or {})
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: data.pop(k) for k in list(data) if k in known}
        extra.update(data)

        duration = kwargs.get("duration_seconds")
        if duration is not None:
            kwargs["duration_seconds"] = float(duration)
        if "is_public" in kwargs:
            kwargs["is_public"] = bool(kwargs["is_public"])
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"is_public": self.is_public}
        for name in ("subscription_level", "duration_seconds", "style", "negative_prompt"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.extra:
            data["extra"] = dict(self.extra)
        return data


@dataclass
class Job:
    """A generation job in the queue."""

    id: UUID
    user_id: str
    kind: Optional[JobKind]
    prompt: str
    status: JobStatus
    metadata: JobMetadata = field(default_factory=JobMetadata)
    tier: Optional[TierConfig] = None
    priority: int = 0

    # Retry handling
    attempts: int = 0
    max_attempts: int = 3
    retry_count: int = 0

    # Execution
    progress: int = 0
    tokens_charged: int = 0
    assigned_resource_key: Optional[str] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None

    # Advisory only, never used for dispatch decisions
    queue_position: Optional[int] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within 0..100, got {self.progress}")
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            )

    @property
    def tier_name(self) -> Optional[str]:
        return self.tier.name if self.tier else None

    @classmethod
    def new(
        cls,
        user_id: str,
        kind: Optional[JobKind],
        prompt: str,
        status: JobStatus,
        now: datetime,
        **kwargs: Any,
    ) -> "Job":
        return cls(
            id=kwargs.pop("id", None) or uuid4(),
            user_id=user_id,
            kind=kind,
            prompt=prompt,
            status=status,
            created_at=now,
            updated_at=now,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status responses."""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "kind": self.kind.value if self.kind else None,
            "prompt": self.prompt,
            "status": self.status.value,
            "priority": self.priority,
            "tier": self.tier.to_dict() if self.tier else None,
            "metadata": self.metadata.to_dict(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "retry_count": self.retry_count,
            "progress": self.progress,
            "tokens_charged": self.tokens_charged,
            "assigned_resource_key": self.assigned_resource_key,
            "result_ref": self.result_ref,
            "error": self.error,
            "queue_position": self.queue_position,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class UserAccount:
    """A tenant's token account."""

    user_id: str
    balance: int
    initial_balance: int = 0
    tier: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TokenTransaction:
    """Immutable ledger entry for one balance mutation."""

    user_id: str
    delta: int
    reason: str
    resulting_balance: int
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class ResourceKey:
    """An external-service credential with a daily usage quota."""

    id: str
    service: str
    credential: str
    daily_limit: int
    usage_count_today: int = 0
    last_used_at: Optional[datetime] = None
    is_active: bool = True

    def usage_on(self, now: datetime) -> int:
        """Usage within the UTC calendar day containing ``now``.

        The stored counter belongs to the day of ``last_used_at``; a key last used
        on an earlier day has a fresh quota.
        """
        if self.last_used_at is None:
            return 0
        last_day = self.last_used_at.astimezone(timezone.utc).date()
        today = now.astimezone(timezone.utc).date()
        return self.usage_count_today if last_day == today else 0

    def has_quota(self, now: datetime) -> bool:
        return self.is_active and self.usage_on(now) < self.daily_limit
