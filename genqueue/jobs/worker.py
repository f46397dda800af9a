"""Job worker - dispatches, executes and recovers generation jobs.

Run with ``python -m genqueue.jobs.worker``. Any number of workers may run
against the same database; claims and finalizations are conditional writes, so
they never double-process a job.
"""

import argparse
import asyncio
import os
import signal
import socket
import time
import traceback
from typing import Optional

import structlog
from prometheus_client import Counter, Gauge, start_http_server

from genqueue import __version__
from genqueue.config import Settings, get_settings
from genqueue.core.database import create_db_pool
from genqueue.core.logging import configure_logging
from genqueue.services.queue import GenerationQueue

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

WORKER_LOOP_RUNS_TOTAL = Counter(
    "genqueue_worker_loop_runs_total",
    "Worker loop passes executed",
    ["status"],  # success, idle, failure
)
WORKER_LAST_RUN_TIMESTAMP = Gauge(
    "genqueue_worker_last_run_timestamp",
    "Timestamp of last worker loop pass (unix seconds)",
)
WORKER_RUNNING = Gauge(
    "genqueue_worker_running",
    "Whether the worker loop is running (1=running, 0=stopped)",
)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerRunner:
    """Hosts the dispatch loop, the execution pool and the watchdog cadence."""

    def __init__(
        self,
        queue: GenerationQueue,
        worker_id: Optional[str] = None,
        poll_interval_s: float = 2.0,
        watchdog_interval_s: float = 300.0,
    ):
        self._queue = queue
        self._worker_id = worker_id or generate_worker_id()
        self._poll_interval = poll_interval_s
        self._watchdog_interval = watchdog_interval_s
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker loop."""
        self._running = True
        WORKER_RUNNING.set(1)
        loop = asyncio.get_running_loop()

        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            version=__version__,
            concurrency=self._queue.executor.size,
        )

        # First scan right away: a restarted worker may have left jobs behind
        last_watchdog = loop.time() - self._watchdog_interval

        while self._running:
            try:
                claimed = await self._queue.dispatch_pending()

                now = loop.time()
                if now - last_watchdog >= self._watchdog_interval:
                    await self._queue.run_watchdog()
                    last_watchdog = now

                await self._queue.refresh_queue_positions()

                WORKER_LAST_RUN_TIMESTAMP.set(time.time())
                WORKER_LOOP_RUNS_TOTAL.labels(status="success" if claimed else "idle").inc()
                if not claimed:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker_id=self._worker_id)
                break
            except Exception as e:
                WORKER_LOOP_RUNS_TOTAL.labels(status="failure").inc()
                logger.error(
                    "worker_loop_error", error=str(e), traceback=traceback.format_exc()
                )
                await asyncio.sleep(self._poll_interval)

        WORKER_RUNNING.set(0)
        logger.info("worker_stopped", worker_id=self._worker_id)

    async def stop(self):
        """Stop the worker loop gracefully."""
        self._running = False


async def run_worker(settings: Settings, drain_timeout_s: float) -> None:
    if settings.metrics_port is not None:
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    pool = await create_db_pool(settings)
    queue = GenerationQueue.from_settings(settings, pool=pool)
    runner = WorkerRunner(
        queue,
        poll_interval_s=settings.dispatch_poll_interval_s,
        watchdog_interval_s=settings.watchdog_interval_s,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(runner.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await runner.start()
    finally:
        await queue.executor.drain(timeout=drain_timeout_s)
        if pool is not None:
            await pool.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="genqueue-worker",
        description="Run a generation queue worker",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Executions run at once (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=None,
        help="Log renderer (default: LOG_FORMAT)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for running jobs on shutdown",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    overrides = {}
    if args.concurrency is not None:
        overrides["worker_concurrency"] = args.concurrency
    if args.log_format is not None:
        overrides["log_format"] = args.log_format
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level, settings.log_format)
    asyncio.run(run_worker(settings, args.drain_timeout))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
