"""In-process stores using asyncio for local development and tests.

Each store holds its documents in a dict and guards every mutating method with an
asyncio.Lock, which gives the same one-step atomicity as the PostgreSQL
repositories for any number of coroutines in one event loop. No external
dependencies (PostgreSQL, Redis) needed.
"""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Optional
from uuid import UUID

from genqueue.jobs.errors import AccountNotFoundError
from genqueue.jobs.models import Job, ResourceKey, TokenTransaction, UserAccount
from genqueue.jobs.types import JobStatus


def _dispatch_order(job: Job):
    return (-job.priority, job.created_at, str(job.id))


class InMemoryJobStore:
    """Job store backed by a dict."""

    def __init__(self):
        self._jobs: dict[UUID, Job] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    async def insert_within_limit(self, job: Job, max_active: int) -> Optional[Job]:
        async with self._lock:
            if job.id in self._jobs:
                return copy.deepcopy(self._jobs[job.id])
            if self._count_active(job.user_id) >= max_active:
                return None
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    async def get(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def save_transition(self, before: Job, after: Job) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(before.id)
            if (
                current is None
                or current.status != before.status
                or current.attempts != before.attempts
            ):
                return None
            # queue_position belongs to the indexer; only leaving the wait set clears it
            stored = replace(
                copy.deepcopy(after),
                queue_position=current.queue_position if after.status.is_waiting else None,
            )
            self._jobs[before.id] = stored
            return copy.deepcopy(stored)

    async def claim(
        self, before: Job, after: Job, tier_limit: int, global_limit: int
    ) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(before.id)
            if (
                current is None
                or current.status != before.status
                or current.attempts != before.attempts
            ):
                return None
            processing = [
                j for j in self._jobs.values() if j.status == JobStatus.PROCESSING
            ]
            if len(processing) >= global_limit:
                return None
            in_tier = sum(1 for j in processing if j.tier_name == before.tier_name)
            if in_tier >= tier_limit:
                return None
            self._jobs[before.id] = copy.deepcopy(after)
            return copy.deepcopy(after)

    def _count_active(self, user_id: str) -> int:
        return sum(
            1
            for j in self._jobs.values()
            if j.user_id == user_id and not j.status.is_terminal
        )

    async def count_active_for_user(self, user_id: str) -> int:
        return self._count_active(user_id)

    async def count_processing_by_tier(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._jobs.values():
            if job.status == JobStatus.PROCESSING:
                counts[job.tier_name] = counts.get(job.tier_name, 0) + 1
        return counts

    def _waiting(self) -> list[Job]:
        return sorted(
            (j for j in self._jobs.values() if j.status.is_waiting),
            key=_dispatch_order,
        )

    async def list_dispatch_candidates(self, limit: int) -> list[Job]:
        return [copy.deepcopy(j) for j in self._waiting()[:limit]]

    async def list_stale_processing(self, cutoff: datetime, limit: int) -> list[Job]:
        stale = sorted(
            (
                j
                for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING and j.updated_at < cutoff
            ),
            key=lambda j: j.updated_at,
        )
        return [copy.deepcopy(j) for j in stale[:limit]]

    async def list_waiting_ids(self) -> list[UUID]:
        return [j.id for j in self._waiting()]

    async def assign_queue_positions(self, ordered_ids: list[UUID]) -> int:
        async with self._lock:
            positions = {job_id: i for i, job_id in enumerate(ordered_ids, start=1)}
            assigned = 0
            for job_id, job in self._jobs.items():
                if job.status.is_terminal:
                    continue
                if job_id in positions and job.status.is_waiting:
                    self._jobs[job_id] = replace(job, queue_position=positions[job_id])
                    assigned += 1
                elif job.queue_position is not None:
                    self._jobs[job_id] = replace(job, queue_position=None)
            return assigned

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Job]:
        jobs = sorted(
            (j for j in self._jobs.values() if j.user_id == user_id),
            key=lambda j: j.created_at,
            reverse=True,
        )
        return [copy.deepcopy(j) for j in jobs[:limit]]

    def all(self) -> list[Job]:
        """Snapshot of every stored job."""
        return [copy.deepcopy(j) for j in self._jobs.values()]


class InMemoryAccountStore:
    """Account store backed by dicts."""

    def __init__(self):
        self._accounts: dict[str, UserAccount] = {}
        self._transactions: dict[str, list[TokenTransaction]] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[UserAccount]:
        account = self._accounts.get(user_id)
        return replace(account) if account else None

    async def create(
        self, user_id: str, initial_balance: int, tier: Optional[str] = None
    ) -> UserAccount:
        if initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        async with self._lock:
            if user_id in self._accounts:
                raise ValueError(f"Account {user_id} already exists")
            account = UserAccount(
                user_id=user_id,
                balance=initial_balance,
                initial_balance=initial_balance,
                tier=tier,
            )
            self._accounts[user_id] = account
            self._transactions[user_id] = []
            return replace(account)

    async def apply_delta(
        self, user_id: str, delta: int, reason: str, now: datetime
    ) -> Optional[TokenTransaction]:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)
            new_balance = account.balance + delta
            if new_balance < 0:
                return None
            self._accounts[user_id] = replace(
                account, balance=new_balance, updated_at=now
            )
            txn = TokenTransaction(
                id=self._next_id,
                user_id=user_id,
                delta=delta,
                reason=reason,
                resulting_balance=new_balance,
                created_at=now,
            )
            self._next_id += 1
            self._transactions[user_id].append(txn)
            return txn

    async def list_transactions(
        self, user_id: str, limit: int = 100
    ) -> list[TokenTransaction]:
        return list(reversed(self._transactions.get(user_id, [])))[:limit]


class InMemoryResourceKeyStore:
    """Resource key store backed by a dict."""

    def __init__(self):
        self._keys: dict[str, ResourceKey] = {}
        self._lock = asyncio.Lock()

    async def add(self, key: ResourceKey) -> ResourceKey:
        async with self._lock:
            self._keys[key.id] = replace(key)
            return replace(key)

    async def acquire(self, service: str, now: datetime) -> Optional[ResourceKey]:
        async with self._lock:
            eligible = [
                k for k in self._keys.values() if k.service == service and k.has_quota(now)
            ]
            if not eligible:
                return None
            chosen = min(eligible, key=lambda k: (k.usage_on(now), k.id))
            updated = replace(
                chosen,
                usage_count_today=chosen.usage_on(now) + 1,
                last_used_at=now,
            )
            self._keys[chosen.id] = updated
            return replace(updated)

    async def set_active(self, key_id: str, is_active: bool) -> bool:
        async with self._lock:
            key = self._keys.get(key_id)
            if key is None:
                return False
            self._keys[key_id] = replace(key, is_active=is_active)
            return True

    async def list_for_service(self, service: str) -> list[ResourceKey]:
        return [
            replace(k)
            for k in sorted(self._keys.values(), key=lambda k: k.id)
            if k.service == service
        ]
