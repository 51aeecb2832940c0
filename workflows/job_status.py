#!/usr/bin/env python3
"""
Job Status - inspect and control pipeline jobs.

Usage:
    uv run python -m workflows.job_status                    # recent jobs
    uv run python -m workflows.job_status --status FAILED
    uv run python -m workflows.job_status --job 42           # one job in detail
    uv run python -m workflows.job_status --job 42 --pause
    uv run python -m workflows.job_status --job 42 --resume
    uv run python -m workflows.job_status --job 42 --cancel
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio

from loguru import logger

from db.client import init_db, close_db
from db.models.job import Job
from services.pipeline.constants import STEP_ORDER, JobStatus
from services.pipeline.repo import PipelineRepo
from services.pipeline.service import Service


def print_progress_bar(value: int, total: int, width: int = 30) -> str:
    if total == 0:
        return "░" * width
    filled = int(width * min(value, total) / total)
    return "█" * filled + "░" * (width - filled)


def print_job(job: Job) -> None:
    step_index = STEP_ORDER.index(job.current_step)
    print(f"\nJob {job.id}: {job.business_type} in {', '.join(job.geography)}")
    print("=" * 60)
    print(f"  Status:      {job.status}")
    print(f"  Checkpoint:  {job.current_step} ({step_index}/{len(STEP_ORDER) - 1})")
    print(f"  ZIPs:        {print_progress_bar(job.zips_processed, job.total_zips)} {job.zips_processed}/{job.total_zips}")
    print(f"  Found:       {job.businesses_found}")
    print(f"  Enriched:    {print_progress_bar(job.businesses_enriched, job.businesses_found)} {job.businesses_enriched}")
    print(f"  Scraped:     {job.businesses_scraped}")
    print(f"  Verified:    {job.emails_verified}")
    print(f"  Errors:      {job.errors_encountered}")
    print(f"  API calls:   places={job.places_api_calls} serp={job.serp_api_calls} llm={job.llm_api_calls}")
    print(f"  Est. cost:   ${job.estimated_cost}")
    if job.last_progress_at:
        print(f"  Last beat:   {job.last_progress_at:%Y-%m-%d %H:%M:%S}")
    if job.error_log:
        print("  Log:")
        for line in job.error_log.splitlines():
            print(f"    {line}")


def print_jobs(jobs) -> None:
    if not jobs:
        print("No jobs")
        return
    print(f"\n{'ID':>6}  {'STATUS':<10} {'STEP':<11} {'FOUND':>6} {'SCRAPED':>8} {'COST':>9}  BUSINESS TYPE")
    print("-" * 72)
    for job in jobs:
        print(
            f"{job.id:>6}  {job.status:<10} {job.current_step:<11} {job.businesses_found:>6} "
            f"{job.businesses_scraped:>8} {'$' + str(job.estimated_cost):>9}  {job.business_type}"
        )


async def run(args) -> int:
    await init_db()
    service = Service()
    try:
        if args.job is None:
            print_jobs(await PipelineRepo().list_jobs(limit=args.limit, status=args.status))
            return 0

        changed = None
        if args.pause:
            changed = await service.pause_job(args.job)
        elif args.resume:
            changed = await service.resume_job(args.job)
        elif args.cancel:
            changed = await service.cancel_job(args.job)
        if changed is False:
            logger.warning(f"Job {args.job}: no change (status does not allow it)")

        job = await service.get_job(args.job)
        if job is None:
            logger.error(f"Job {args.job} not found")
            return 1
        print_job(job)
        return 0
    finally:
        await service.close()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Inspect and control pipeline jobs")
    parser.add_argument("--job", type=int, help="Job id")
    parser.add_argument("--status", choices=[s.value for s in JobStatus], help="Filter the job list")
    parser.add_argument("--limit", type=int, default=20)
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--pause", action="store_true")
    action.add_argument("--resume", action="store_true", help="FAILED/PAUSED -> PENDING")
    action.add_argument("--cancel", action="store_true")

    args = parser.parse_args()
    if (args.pause or args.resume or args.cancel) and args.job is None:
        parser.error("--pause/--resume/--cancel need --job")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
