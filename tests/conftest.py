"""Root conftest for test suite.

Auto-skips tests that need a live PostgreSQL database or take long to run.
Run explicitly with: DATABASE_URL=... pytest -m postgres
                  or: pytest -m slow
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from genqueue.core.resilience import reset_db_circuit
from genqueue.jobs.models import Job
from genqueue.jobs.types import JobKind, JobStatus
from genqueue.repositories.memory import (
    InMemoryAccountStore,
    InMemoryJobStore,
    InMemoryResourceKeyStore,
)
from genqueue.services.backends import GenerationResult
from genqueue.services.tiers import DEFAULT_TIERS


def pytest_collection_modifyitems(config, items):
    """Skip postgres and slow tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    explicit_postgres = "postgres" in markexpr
    explicit_slow = "slow" in markexpr
    has_database = bool(os.environ.get("DATABASE_URL"))

    skip_postgres = pytest.mark.skip(
        reason="postgres tests need a database. Run with: DATABASE_URL=... pytest -m postgres"
    )
    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )

    for item in items:
        if "postgres" in item.keywords and not (explicit_postgres and has_database):
            item.add_marker(skip_postgres)

        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def _closed_db_circuit():
    """Each test starts with the database circuit breaker closed."""
    reset_db_circuit()
    yield
    reset_db_circuit()


# =============================================================================
# Shared fakes
# =============================================================================


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeBackend:
    """Generation backend that returns scripted outcomes in order.

    Each outcome is a GenerationResult, an exception instance to raise, or a
    callable ``(kind, prompt) -> GenerationResult``. When the script runs out
    every call succeeds with a generated result URL.
    """

    def __init__(self, outcomes=None, progress=None):
        self.outcomes = list(outcomes or [])
        self.progress = list(progress or [])
        self.calls: list[dict] = []
        self.release: Optional[asyncio.Event] = None

    async def generate(self, kind, prompt, metadata, credential, on_progress=None):
        self.calls.append(
            {"kind": kind, "prompt": prompt, "metadata": metadata, "credential": credential}
        )
        if on_progress is not None:
            for value in self.progress:
                await on_progress(value)
        if self.release is not None:
            await self.release.wait()

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is None:
            return GenerationResult(result_ref=f"https://cdn.test/{kind.value}/{len(self.calls)}")
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(kind, prompt)
        return outcome


class MemoryArtifactStore:
    """Artifact store that keeps bytes in a dict."""

    def __init__(self):
        self.files: dict[str, bytes] = {}

    async def store(self, data: bytes, path: str) -> str:
        self.files[path] = data
        return f"memory://{path}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def account_store():
    return InMemoryAccountStore()


@pytest.fixture
def key_store():
    return InMemoryResourceKeyStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def artifacts():
    return MemoryArtifactStore()


@pytest.fixture
def make_job(clock):
    """Factory for jobs with a free-tier snapshot."""

    def _make(
        status: JobStatus = JobStatus.QUEUED,
        user_id: str = "user-1",
        kind: JobKind = JobKind.IMAGE,
        tier: str = "free",
        **kwargs,
    ) -> Job:
        tier_config = DEFAULT_TIERS[tier]
        kwargs.setdefault("priority", tier_config.priority_level)
        kwargs.setdefault("max_attempts", tier_config.max_attempts)
        kwargs.setdefault("tokens_charged", 30)
        now = kwargs.pop("now", None) or clock()
        return Job.new(
            user_id=user_id,
            kind=kind,
            prompt="a red fox in the snow",
            status=status,
            now=now,
            tier=tier_config,
            **kwargs,
        )

    return _make
