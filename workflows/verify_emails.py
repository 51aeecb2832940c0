#!/usr/bin/env python3
"""
Workflow: Verify Emails
=======================
Checks syntax, disposable domains and MX records for a list of emails.
Emails on the same domain share one DNS lookup.

USAGE:
    uv run python -m workflows.verify_emails info@example.com sales@example.com
    uv run python -m workflows.verify_emails --file emails.txt --concurrency 20
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio

from loguru import logger

from services.verification.email_verifier import EmailItem, EmailVerifier, verification_stats


async def run(args) -> None:
    emails = list(args.emails)
    if args.file:
        with open(args.file) as f:
            emails.extend(line.strip() for line in f if line.strip())
    if not emails:
        logger.warning("No emails given")
        return

    verifier = EmailVerifier()
    results = await verifier.verify_emails(
        [EmailItem(id=i, email=email) for i, email in enumerate(emails)],
        concurrency=args.concurrency,
    )

    print(f"\n{'EMAIL':<40} {'STATUS':<8} MX")
    print("-" * 80)
    for i in sorted(results):
        result = results[i]
        mx = ", ".join(result.details.mx_records[:2]) or result.details.error or "-"
        print(f"{result.email:<40} {result.status.value:<8} {mx}")

    stats = verification_stats(results)
    print(f"\nVerification rate: {stats.verification_rate:.1f}% ({stats.valid}/{stats.total})")


def main():
    parser = argparse.ArgumentParser(description="Verify email deliverability (no SMTP)")
    parser.add_argument("emails", nargs="*")
    parser.add_argument("--file", "-f", help="File with one email per line")
    parser.add_argument("--concurrency", "-c", type=int, default=10, help="Domains looked up at once (default: 10)")
    parser.add_argument("--debug", "-d", action="store_true")

    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.debug else "INFO")

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
