#!/usr/bin/env python3
"""
Workflow: Submit Job
====================
Validates a job against the user's tier and queues it for the worker.

USAGE:
    # Top 30% of North Carolina ZIPs
    uv run python -m workflows.submit_job --email owner@example.com --business-type chiropractor --states NC

    # Pro user, nationwide, top 10%, run immediately in this process
    uv run python -m workflows.submit_job --email ops@example.com --tier PRO \\
        --business-type "hvac contractor" --nationwide --zip-percentage 10 --run
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio

from loguru import logger
from pydantic import ValidationError

from db.client import init_db, close_db
from lib.errors import ScrapenationError
from services.pipeline.models import NATIONWIDE
from services.pipeline.repo import PipelineRepo
from services.pipeline.service import Service


async def submit(args) -> int:
    await init_db()
    service = Service()
    try:
        user_id = args.user_id
        if user_id is None:
            user_id = await PipelineRepo().insert_user(args.email, args.tier)

        geography = [NATIONWIDE] if args.nationwide else args.states
        job_id = await service.start_job(
            {
                "business_type": args.business_type,
                "geography": geography,
                "zip_percentage": args.zip_percentage,
                "min_domain_confidence": args.min_confidence,
            },
            user_id,
        )
        logger.success(f"Queued job {job_id} for user {user_id}")

        if args.run:
            job = await service.execute_job(job_id)
            logger.info(f"Job {job_id}: {job.status} ({job.businesses_found} businesses, ${job.estimated_cost})")
        return job_id
    finally:
        await service.close()
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Submit a business enrichment job")
    who = parser.add_mutually_exclusive_group(required=True)
    who.add_argument("--user-id", type=int, help="Existing user id")
    who.add_argument("--email", help="User email (created if missing)")
    parser.add_argument("--tier", choices=["FREE", "PRO"], default="FREE", help="Tier for a new user")

    parser.add_argument("--business-type", required=True, help="Search keyword, e.g. 'dentist'")
    where = parser.add_mutually_exclusive_group(required=True)
    where.add_argument("--states", nargs="+", help="2-letter state codes")
    where.add_argument("--nationwide", action="store_true")
    parser.add_argument("--zip-percentage", type=int, default=30, help="Top N%% of ZIPs by population (default: 30)")
    parser.add_argument("--min-confidence", type=int, default=70, help="Min domain confidence to scrape (default: 70)")
    parser.add_argument("--run", action="store_true", help="Execute the job here instead of waiting for the worker")

    args = parser.parse_args()

    try:
        asyncio.run(submit(args))
    except ValidationError as e:
        for error in e.errors():
            logger.error(f"{'.'.join(str(p) for p in error['loc'])}: {error['msg']}")
        sys.exit(2)
    except ScrapenationError as e:
        logger.error(f"[{e.code}] {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
