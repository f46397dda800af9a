"""Bounded execution pool for claimed jobs."""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog
from prometheus_client import Gauge

from genqueue.jobs.models import Job

logger = structlog.get_logger(__name__)

EXECUTIONS_INFLIGHT = Gauge(
    "genqueue_executions_inflight",
    "Jobs currently executing in this process",
)


class ExecutionPool:
    """Runs claimed jobs as background tasks, at most ``size`` at once.

    The dispatcher is the producer and hands each claim to the pool; the pool
    never claims work itself. A slot can be reserved before claiming with
    :meth:`try_reserve` so a claimed job never waits for capacity.
    ``on_done`` runs after every finished job (the worker uses it to mark
    queue positions dirty).
    """

    def __init__(
        self,
        execute: Callable[[Job], Awaitable[Job]],
        size: int = 4,
        on_done: Optional[Callable[[Job], None]] = None,
    ):
        if size < 1:
            raise ValueError("size must be >= 1")
        self._execute = execute
        self._size = size
        self._semaphore = asyncio.Semaphore(size)
        self._tasks: set[asyncio.Task] = set()
        self._on_done = on_done

    @property
    def size(self) -> int:
        return self._size

    @property
    def running(self) -> int:
        return len(self._tasks)

    def has_capacity(self) -> bool:
        return not self._semaphore.locked()

    async def try_reserve(self) -> bool:
        """Take a free slot without waiting. False when the pool is full."""
        if self._semaphore.locked():
            return False
        # A free slot is taken without suspending
        await self._semaphore.acquire()
        return True

    def release(self) -> None:
        """Give back a reserved slot that was not used."""
        self._semaphore.release()

    async def submit(self, job: Job, reserved: bool = False) -> None:
        """Start executing ``job``.

        Without ``reserved`` this waits for a free slot when the pool is full.
        """
        if not reserved:
            await self._semaphore.acquire()
        task = asyncio.create_task(self._run(job), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job) -> None:
        EXECUTIONS_INFLIGHT.inc()
        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            logger.warning("job_execution_cancelled", job_id=str(job.id))
            raise
        except Exception as e:
            # The supervisor handles its own errors; this only guards the pool
            logger.error("job_execution_crashed", job_id=str(job.id), error=str(e))
            result = job
        finally:
            EXECUTIONS_INFLIGHT.dec()
            self._semaphore.release()

        if self._on_done is not None:
            self._on_done(result)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for running jobs; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("execution_pool_drain_cancelled", cancelled=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
