#!/usr/bin/env python3
"""
Workflow: Export Businesses
===========================
Exports a user's enriched businesses to CSV or Excel, optionally uploading to S3.

Rows sharing the same (email, phone) pair are written once.

Usage:
    # Everything the user has, as CSV in the current directory
    uv run python -m workflows.export --user-id 1

    # One job, only rows with an email, as Excel
    uv run python -m workflows.export --user-id 1 --job-id 42 --has-email --output exports/job42.xlsx

    # Texas dentists, uploaded to S3 (announced on Slack)
    uv run python -m workflows.export --user-id 1 --state TX --business-type dentist --output tx.xlsx --upload
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from db.client import init_db, close_db
from services.export.models import ExportFilters
from services.export.service import Service, default_filename


async def run(args) -> None:
    filters = ExportFilters(
        job_id=args.job_id,
        state=args.state,
        business_type=args.business_type,
        has_email=args.has_email,
        has_phone=args.has_phone,
    )
    output = args.output or default_filename(args.user_id, args.job_id, ext=f".{args.format}")

    await init_db()
    try:
        result = await Service(notify=not args.no_notify).export(
            args.user_id, output, filters=filters, upload=args.upload
        )
    finally:
        await close_db()

    logger.success(f"Wrote {result.row_count} rows to {result.path}")
    if result.s3_uri:
        logger.info(f"Uploaded to {result.s3_uri}")


def main():
    parser = argparse.ArgumentParser(description="Export enriched businesses")
    parser.add_argument("--user-id", type=int, required=True)
    parser.add_argument("--job-id", type=int, help="Only businesses found by this job")
    parser.add_argument("--state", help="2-letter state code")
    parser.add_argument("--business-type", help="Substring match on business type")
    parser.add_argument("--has-email", action="store_true", help="Only rows with an email")
    parser.add_argument("--has-phone", action="store_true", help="Only rows with a phone")
    parser.add_argument("--output", "-o", help="Output path (.csv or .xlsx)")
    parser.add_argument("--format", choices=["csv", "xlsx"], default="csv", help="Format when --output is omitted")
    parser.add_argument("--upload", action="store_true", help="Upload to S3")
    parser.add_argument("--no-notify", action="store_true", help="Skip the Slack message on upload")

    args = parser.parse_args()

    try:
        asyncio.run(run(args))
    except ValueError as e:
        logger.error(str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
