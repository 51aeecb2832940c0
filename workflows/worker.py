"""
Workflow: Pipeline Worker
=========================
Polls the jobs table and runs pipeline jobs in-process.

Every tick:
  1. RUNNING jobs with no progress for WORKER_STALL_TIMEOUT seconds go back
     to PENDING (they resume from their last checkpoint).
  2. Up to (max concurrent - active) PENDING jobs are claimed, oldest first,
     with FOR UPDATE SKIP LOCKED, and started as asyncio tasks.

SIGINT/SIGTERM stop the polling; running jobs get --shutdown-timeout seconds
to finish. Jobs still running after that are cancelled and left RUNNING, so
the stall reset picks them up on the next start.

USAGE:
    uv run python -m workflows.worker
    uv run python -m workflows.worker --max-concurrent 1 --poll-interval 2
    uv run python -m workflows.worker --once     # single tick, wait for jobs, exit
    uv run python -m workflows.worker --init-schema  # create tables on a fresh database

ENVIRONMENT:
    WORKER_POLL_INTERVAL        seconds between ticks (default 5)
    WORKER_MAX_CONCURRENT_JOBS  jobs run at once (default 3)
    WORKER_STALL_TIMEOUT        seconds without progress before a reset (default 120)
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio
import os
import signal
from typing import Dict, List, Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict

from db.client import init_db, close_db, apply_schema
from infra import slack
from lib.errors import get_error_message
from services.pipeline.service import IService, Service

load_dotenv()


class WorkerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    poll_interval: float = 5.0
    max_concurrent_jobs: int = 3
    stall_timeout: float = 120.0
    shutdown_timeout: float = 30.0

    @classmethod
    def from_env(cls, **overrides) -> "WorkerConfig":
        values = {
            "poll_interval": float(os.getenv("WORKER_POLL_INTERVAL", "5")),
            "max_concurrent_jobs": int(os.getenv("WORKER_MAX_CONCURRENT_JOBS", "3")),
            "stall_timeout": float(os.getenv("WORKER_STALL_TIMEOUT", "120")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class Worker:
    """Single polling worker with in-process job concurrency."""

    def __init__(
        self,
        service: Optional[IService] = None,
        config: Optional[WorkerConfig] = None,
        notify: bool = True,
    ):
        self.service = service or Service()
        self.config = config or WorkerConfig.from_env()
        self.notify = notify
        self.active: Dict[int, asyncio.Task] = {}
        self._stopping = asyncio.Event()
        self.completed = 0
        self.failed = 0

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        if not self.stopping:
            logger.info(f"Shutdown requested ({len(self.active)} job(s) running)")
        self._stopping.set()

    async def tick(self) -> List[int]:
        """Reset stalled jobs, then claim and start what fits. Returns started ids."""
        await self.service.reset_stalled_jobs(self.config.stall_timeout)

        capacity = self.config.max_concurrent_jobs - len(self.active)
        if capacity <= 0 or self.stopping:
            return []

        started = []
        for job_id in await self.service.claim_pending_jobs(capacity):
            if job_id in self.active:
                # Reset by the stall check while still running here
                continue
            task = asyncio.create_task(self._run_job(job_id), name=f"job-{job_id}")
            self.active[job_id] = task
            task.add_done_callback(lambda _, job_id=job_id: self.active.pop(job_id, None))
            started.append(job_id)

        if started:
            logger.info(f"Started job(s) {started} ({len(self.active)}/{self.config.max_concurrent_jobs} active)")
        return started

    async def _run_job(self, job_id: int) -> None:
        logger.info(f"[Job {job_id}] starting")
        try:
            job = await self.service.execute_job(job_id)
        except Exception as e:
            self.failed += 1
            logger.error(f"[Job {job_id}] failed: {get_error_message(e)}")
            if self.notify:
                await self._alert_failure(job_id, e)
            return

        self.completed += 1
        logger.info(f"[Job {job_id}] finished with status {job.status}")

    async def _alert_failure(self, job_id: int, error: Exception) -> None:
        job = await self.service.get_job(job_id)
        await asyncio.to_thread(
            slack.send_job_failed_alert,
            job_id,
            job.business_type if job else "?",
            job.current_step if job else "?",
            get_error_message(error),
        )

    async def drain(self, timeout: Optional[float]) -> None:
        """Wait for running jobs, cancelling whatever outlives `timeout` (None waits forever)."""
        if not self.active:
            return
        tasks = list(self.active.values())
        logger.info(f"Waiting for {len(tasks)} running job(s)")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} job(s); they stay RUNNING until the stall reset")
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, once: bool = False) -> None:
        logger.info(
            f"Worker ready (poll={self.config.poll_interval}s, "
            f"max_concurrent={self.config.max_concurrent_jobs}, stall={self.config.stall_timeout}s)"
        )
        while not self.stopping:
            try:
                await self.tick()
            except Exception as e:
                # A DB blip should not kill the worker
                logger.error(f"Worker tick failed: {get_error_message(e)}")

            if once:
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass

        await self.drain(None if once else self.config.shutdown_timeout)
        logger.info(f"Worker exiting | completed={self.completed} failed={self.failed}")


async def run(
    config: WorkerConfig,
    once: bool = False,
    notify: bool = True,
    init_schema: bool = False,
) -> None:
    await init_db()
    if init_schema:
        await apply_schema()
    service = Service()
    worker = Worker(service, config, notify=notify)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run(once=once)
    finally:
        await service.close()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Run the pipeline job worker")
    parser.add_argument("--poll-interval", type=float, help="Seconds between polls (default: 5)")
    parser.add_argument("--max-concurrent", type=int, help="Jobs run at once (default: 3)")
    parser.add_argument("--stall-timeout", type=float, help="Seconds without progress before reset (default: 120)")
    parser.add_argument("--shutdown-timeout", type=float, help="Seconds to wait for jobs on shutdown (default: 30)")
    parser.add_argument("--once", action="store_true", help="Claim once, wait for those jobs, exit")
    parser.add_argument("--no-notify", action="store_true", help="Disable Slack alerts")
    parser.add_argument("--init-schema", action="store_true", help="Create missing tables before polling")
    parser.add_argument("--debug", "-d", action="store_true")

    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.debug else "INFO")

    config = WorkerConfig.from_env(
        poll_interval=args.poll_interval,
        max_concurrent_jobs=args.max_concurrent,
        stall_timeout=args.stall_timeout,
        shutdown_timeout=args.shutdown_timeout,
    )
    asyncio.run(run(config, once=args.once, notify=not args.no_notify, init_schema=args.init_schema))


if __name__ == "__main__":
    main()
