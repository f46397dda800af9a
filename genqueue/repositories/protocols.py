"""Store interfaces used by the scheduling services.

Services depend on these protocols only. Two implementations ship: the asyncpg
repositories (one module per store) and the in-process stores in
``genqueue.repositories.memory``.

Every mutating method is a single atomic step on the underlying store: a
conditional write that either applies entirely or reports that its guard failed.
"""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from genqueue.jobs.models import Job, ResourceKey, TokenTransaction, UserAccount


class JobStore(Protocol):
    """Persistence for generation jobs."""

    async def insert(self, job: Job) -> Job:
        """Persist a new job as-is (used for rejected submissions)."""
        ...

    async def insert_within_limit(self, job: Job, max_active: int) -> Optional[Job]:
        """Persist a new job only if its owner has fewer than ``max_active``
        non-terminal jobs at write time. Returns None when the limit is hit."""
        ...

    async def get(self, job_id: UUID) -> Optional[Job]:
        ...

    async def save_transition(self, before: Job, after: Job) -> Optional[Job]:
        """Write ``after`` if the stored job still has ``before``'s status and
        attempts. Returns None when the guard fails."""
        ...

    async def claim(
        self, before: Job, after: Job, tier_limit: int, global_limit: int
    ) -> Optional[Job]:
        """Compare-and-swap a waiting job into processing, additionally guarded by
        the tier and global processing caps. Returns None if any guard fails."""
        ...

    async def count_active_for_user(self, user_id: str) -> int:
        ...

    async def count_processing_by_tier(self) -> dict[str, int]:
        ...

    async def list_dispatch_candidates(self, limit: int) -> list[Job]:
        """Waiting jobs ordered by priority desc, created_at asc."""
        ...

    async def list_stale_processing(self, cutoff: datetime, limit: int) -> list[Job]:
        """Processing jobs whose updated_at is older than ``cutoff``."""
        ...

    async def list_waiting_ids(self) -> list[UUID]:
        """Ids of all waiting jobs in dispatch order."""
        ...

    async def assign_queue_positions(self, ordered_ids: list[UUID]) -> int:
        """Set queue_position 1..N for ``ordered_ids``; clear it on other
        non-terminal jobs. Returns the number of positions assigned."""
        ...

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Job]:
        ...


class AccountStore(Protocol):
    """Persistence for token accounts and their append-only ledger."""

    async def get(self, user_id: str) -> Optional[UserAccount]:
        ...

    async def create(
        self, user_id: str, initial_balance: int, tier: Optional[str] = None
    ) -> UserAccount:
        ...

    async def apply_delta(
        self, user_id: str, delta: int, reason: str, now: datetime
    ) -> Optional[TokenTransaction]:
        """Atomically add ``delta`` to the balance and append a transaction.

        Returns None (and changes nothing) if the balance would go negative.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        ...

    async def list_transactions(
        self, user_id: str, limit: int = 100
    ) -> list[TokenTransaction]:
        ...


class ResourceKeyStore(Protocol):
    """Persistence for pooled external-service credentials."""

    async def add(self, key: ResourceKey) -> ResourceKey:
        ...

    async def acquire(self, service: str, now: datetime) -> Optional[ResourceKey]:
        """Pick the active key with the lowest usage today (ties by id) that is
        below its daily limit, and record one use of it in the same atomic step."""
        ...

    async def set_active(self, key_id: str, is_active: bool) -> bool:
        ...

    async def list_for_service(self, service: str) -> list[ResourceKey]:
        ...
