#!/usr/bin/env python3
"""
Workflow: Scrape Domains
========================
Runs the contact extractor against one or more domains and prints what it found.
Does not touch the database.

USAGE:
    uv run python -m workflows.scrape_domain example.com
    uv run python -m workflows.scrape_domain a.com b.com c.com --concurrency 10
    uv run python -m workflows.scrape_domain --file domains.txt --no-browser
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio

from loguru import logger

from services.scraping.domain_scraper import DomainScraper


def read_domains(args) -> list:
    domains = list(args.domains)
    if args.file:
        with open(args.file) as f:
            domains.extend(line.strip() for line in f if line.strip() and not line.startswith("#"))
    return domains


async def run(args) -> None:
    domains = read_domains(args)
    if not domains:
        logger.warning("No domains given")
        return

    scraper = DomainScraper()
    results = await scraper.scrape_domains(
        domains,
        concurrency=args.concurrency,
        use_browser_fallback=False if args.no_browser else None,
    )

    print(f"\n{'DOMAIN':<40} {'EMAIL':<35} {'PHONE':<16} ERROR")
    print("-" * 100)
    for domain, result in results.items():
        print(f"{domain:<40} {result.email or '-':<35} {result.phone or '-':<16} {result.error or ''}")


def main():
    parser = argparse.ArgumentParser(description="Scrape contact info from domains")
    parser.add_argument("domains", nargs="*", help="Domains or URLs")
    parser.add_argument("--file", "-f", help="File with one domain per line")
    parser.add_argument("--concurrency", "-c", type=int, help="Domains scraped at once (default: 5)")
    parser.add_argument("--no-browser", action="store_true", help="Disable the headless browser fallback")
    parser.add_argument("--debug", "-d", action="store_true")

    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.debug else "INFO")

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
