"""Database retry policy and circuit breaker for queue writes.

Every queue write that goes through :func:`with_db_retry` is a short transaction
(charge, admit, claim, key acquire). A failed attempt is replayed only when the
database cannot have committed it:

- the connection could not be acquired, so nothing ran
- the server rolled the transaction back (serialization failure, deadlock)

A connection lost while the transaction was in flight may have committed.
Such a failure is replayed only for operations declared ``replay_safe``,
meaning a second run recognises the first one's committed result. Anything
else is raised to the caller as an unknown outcome.

Usage:
    from genqueue.core.resilience import with_db_retry

    row = await with_db_retry(pool, op)                    # charge, claim
    row = await with_db_retry(pool, op, replay_safe=True)  # admit by job id
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import asyncpg
import structlog

logger = structlog.get_logger(__name__)

# The server aborted the transaction; nothing was committed
ROLLED_BACK_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
    }
)

# The connection or server went away; the transaction may or may not have committed
CONNECTION_SQLSTATES = frozenset(
    {
        "08000",  # connection_exception
        "08003",  # connection_does_not_exist
        "08006",  # connection_failure
        "08001",  # sqlclient_unable_to_establish_sqlconnection
        "08004",  # sqlserver_rejected_establishment_of_sqlconnection
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
    }
)

_CONNECTION_ERRORS = (
    asyncpg.InterfaceError,
    asyncpg.InternalClientError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass
class RetryPolicy:
    """How often and how patiently a write is replayed."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 5.0
    jitter_pct: int = 25

    def delay_for(self, attempt: int) -> float:
        """Backoff before replay number ``attempt`` (0-indexed), with jitter."""
        delay = min(self.base_delay_seconds * 2**attempt, self.max_delay_seconds)
        return delay * (1 + random.uniform(0, self.jitter_pct / 100))


def is_rolled_back_error(error: BaseException) -> bool:
    """True when the server aborted the transaction, so a replay is always safe."""
    return (
        isinstance(error, asyncpg.PostgresError)
        and getattr(error, "sqlstate", None) in ROLLED_BACK_SQLSTATES
    )


def is_connection_error(error: BaseException) -> bool:
    """True for a lost or refused connection, where the write outcome is unknown."""
    if isinstance(error, asyncpg.TooManyConnectionsError):
        return True
    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in CONNECTION_SQLSTATES
    return isinstance(error, _CONNECTION_ERRORS)


def is_transient_db_error(error: BaseException) -> bool:
    """Check if an error may go away on its own (constraint and query errors do not)."""
    return is_rolled_back_error(error) or is_connection_error(error)


class DatabaseCircuitBreaker:
    """Stops queue writes for a cooldown after repeated exhausted retries.

    States:
    - closed: writes go through
    - open: writes fail fast until the cooldown ends
    - half-open: the first write after the cooldown decides open or closed
    """

    FAILURE_THRESHOLD = 5
    COOLDOWN_SECONDS = 30.0

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock
        self.failures = 0
        self.open_until: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None and self._clock() < self.open_until

    def check(self) -> None:
        """Raises RuntimeError while the breaker is open."""
        if self.is_open:
            raise RuntimeError(
                "Database circuit breaker is open - service recovering from outage"
            )

    def record_success(self) -> None:
        if self.failures:
            logger.info("circuit_closed", service="postgres", previous_failures=self.failures)
        self.failures = 0
        self.open_until = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.FAILURE_THRESHOLD:
            self.open_until = self._clock() + timedelta(seconds=self.COOLDOWN_SECONDS)
            logger.warning(
                "circuit_opened",
                service="postgres",
                failures=self.failures,
                reset_at=self.open_until.isoformat(),
            )


db_circuit = DatabaseCircuitBreaker()


def reset_db_circuit() -> None:
    """Close the database circuit (used at worker start-up and in tests)."""
    db_circuit.record_success()


async def with_db_retry(
    pool: Any,
    operation: Callable[[Any], Awaitable[Any]],
    replay_safe: bool = False,
    policy: Optional[RetryPolicy] = None,
) -> Any:
    """Run a write transaction on a fresh connection, replaying it when safe.

    Args:
        pool: asyncpg connection pool
        operation: Async callable that takes a connection and returns a result
        replay_safe: The operation detects its own earlier commit, so it may be
            replayed after a connection loss mid-transaction
        policy: Optional retry policy

    Returns:
        Result of the operation

    Raises:
        RuntimeError: If the circuit breaker is open
        Exception: The last error, when it is not replayable or retries ran out
    """
    policy = policy or RetryPolicy()
    db_circuit.check()

    for attempt in range(policy.max_attempts):
        started = False
        try:
            async with pool.acquire() as conn:
                started = True
                result = await operation(conn)
            db_circuit.record_success()
            return result

        except Exception as e:
            if not is_transient_db_error(e):
                raise

            replayable = not started or is_rolled_back_error(e) or replay_safe
            if not replayable:
                db_circuit.record_failure()
                logger.error(
                    "db_write_outcome_unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if attempt == policy.max_attempts - 1:
                db_circuit.record_failure()
                logger.error(
                    "db_retries_exhausted",
                    attempts=policy.max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "db_retry_attempt",
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 2),
                started=started,
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
