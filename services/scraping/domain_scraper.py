"""Domain scraper: static fetch first, headless browser second.

For each domain, candidate paths (home, /contact, /about, ...) are fetched
in order until an email turns up. A persistent failure on the home page
(DNS, refused/reset connection, TLS, timeout, 401/403/404/5xx) marks the
domain failed for the rest of the batch and skips every other path and the
browser fallback.

All per-batch state (failed-domain set, HTTP client, shared browser) lives
on ScrapeBatch, so two jobs scraping at once never share failure memory.

Usage:
    scraper = DomainScraper()
    results = await scraper.scrape_domains(["example.com", "acme.org"])

    async with scraper.batch() as batch:
        async for result in batch.scrape_all(domains):
            ...
"""

from collections import Counter
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

import httpx
from loguru import logger
from pydantic import BaseModel

from lib.batch import iter_batch
from lib.errors import log_error
from lib.retry import with_retry
from services.scraping.browser_fallback import BrowserFallback
from services.scraping.constants import (
    CONTACT_PATHS,
    DIRECTORY_DOMAINS,
    USER_AGENT,
    ScrapeErrorCode,
)
from services.scraping.extractor import (
    ContactExtractor,
    build_url,
    is_directory_site,
    strip_domain,
)
from services.scraping.models import ScrapeConfig, ScrapeResult

DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "name resolution",
    "enotfound",
)


def classify_fetch_error(error: BaseException) -> Tuple[str, bool]:
    """Map a static fetch failure to (error code, persistent)."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return ScrapeErrorCode.ACCESS_DENIED, True
        if status == 404:
            return ScrapeErrorCode.PAGE_NOT_FOUND, True
        if status >= 500:
            return ScrapeErrorCode.SERVER_ERROR, True
        return ScrapeErrorCode.UNKNOWN_ERROR, False

    if isinstance(error, httpx.TimeoutException):
        return ScrapeErrorCode.TIMEOUT, True

    if isinstance(error, httpx.ConnectError):
        message = str(error).lower()
        if any(marker in message for marker in DNS_FAILURE_MARKERS):
            return ScrapeErrorCode.DOMAIN_NOT_FOUND, True
        # Refused connections and TLS handshake failures
        return ScrapeErrorCode.UNKNOWN_ERROR, True

    if isinstance(error, httpx.ReadError) and "reset" in str(error).lower():
        return ScrapeErrorCode.UNKNOWN_ERROR, True

    return ScrapeErrorCode.UNKNOWN_ERROR, False


def _is_transient_fetch_error(error: BaseException) -> bool:
    return isinstance(error, (httpx.RemoteProtocolError, httpx.PoolTimeout)) or (
        isinstance(error, httpx.ReadError) and "reset" not in str(error).lower()
    )


class ScrapeBatch:
    """Per-batch scraping context."""

    def __init__(
        self,
        config: Optional[ScrapeConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        browser: Optional[BrowserFallback] = None,
    ):
        self.config = config or ScrapeConfig()
        self.failed_domains: Set[str] = set()
        self._client = client
        self._owns_client = client is None
        self.browser = browser or BrowserFallback(self.config)

    async def __aenter__(self) -> "ScrapeBatch":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        await self.browser.close()

    async def _fetch(self, url: str) -> str:
        async def get() -> str:
            response = await self._client.get(url)
            response.raise_for_status()
            content_type = response.headers.get("content-type", "text/html")
            if "html" not in content_type and "text" not in content_type:
                return ""
            return response.text

        return await with_retry(
            get,
            max_attempts=self.config.fetch_attempts,
            initial_delay=0.5,
            should_retry=_is_transient_fetch_error,
        )

    async def scrape_domain(self, domain: str) -> ScrapeResult:
        """Scrape one domain. Never raises for per-domain failures."""
        domain = strip_domain(domain).lower()

        if is_directory_site(domain, DIRECTORY_DOMAINS):
            return ScrapeResult(domain=domain, error=ScrapeErrorCode.DIRECTORY_SITE_SKIPPED)
        if domain in self.failed_domains:
            return ScrapeResult(domain=domain, error=ScrapeErrorCode.DOMAIN_PREVIOUSLY_FAILED)

        phone: Optional[str] = None
        home_error: Optional[str] = None
        loaded_any = False

        for i, path in enumerate(CONTACT_PATHS):
            url = build_url(domain, path)
            try:
                html = await self._fetch(url)
            except Exception as e:
                code, persistent = classify_fetch_error(e)
                if i == 0:
                    home_error = code
                    if persistent:
                        logger.debug(f"{domain}: home page failed ({code}), marking domain failed")
                        self.failed_domains.add(domain)
                        return ScrapeResult(domain=domain, error=code)
                continue

            loaded_any = True
            info = ContactExtractor.extract(html)
            if info.email:
                return ScrapeResult(domain=domain, email=info.email, phone=info.phone or phone)
            phone = phone or info.phone

        if self.config.use_browser_fallback:
            rendered = await self._scrape_with_browser(domain)
            if rendered is not None:
                if rendered.email:
                    return ScrapeResult(
                        domain=domain, email=rendered.email, phone=phone or rendered.phone
                    )
                phone = phone or rendered.phone

        if phone:
            return ScrapeResult(domain=domain, phone=phone)
        if loaded_any:
            return ScrapeResult(domain=domain, error=ScrapeErrorCode.NO_CONTACT_INFO_FOUND)
        return ScrapeResult(domain=domain, error=home_error or ScrapeErrorCode.UNKNOWN_ERROR)

    async def _scrape_with_browser(self, domain: str) -> Optional[ScrapeResult]:
        try:
            return await self.browser.scrape(domain, self.failed_domains)
        except Exception as e:
            log_error(e, domain=domain, stage="browser_fallback")
            return None

    async def scrape_all(self, domains: Sequence[str]) -> AsyncIterator[ScrapeResult]:
        """Yield results in completion order, bounded by config.concurrency."""
        outcomes = iter_batch(domains, self.scrape_domain, concurrency=self.config.concurrency)
        async with aclosing(outcomes):
            async for item in outcomes:
                if item.ok:
                    yield item.value
                else:
                    log_error(item.error, domain=item.item)
                    yield ScrapeResult(domain=item.item, error=ScrapeErrorCode.UNKNOWN_ERROR)


class ScrapeStats(BaseModel):
    total: int = 0
    with_email: int = 0
    with_phone: int = 0
    with_both: int = 0
    errors: Dict[str, int] = {}


def scraping_stats(results: Sequence[ScrapeResult]) -> ScrapeStats:
    return ScrapeStats(
        total=len(results),
        with_email=sum(1 for r in results if r.email),
        with_phone=sum(1 for r in results if r.phone),
        with_both=sum(1 for r in results if r.email and r.phone),
        errors=dict(Counter(r.error for r in results if r.error)),
    )


class DomainScraper:
    """Entry point for one-off and batch domain scraping."""

    def __init__(self, config: Optional[ScrapeConfig] = None):
        self.config = config or ScrapeConfig()

    def batch(self, **overrides) -> ScrapeBatch:
        config = self.config.model_copy(update=overrides) if overrides else self.config
        return ScrapeBatch(config=config)

    async def scrape_domain(
        self,
        domain: str,
        timeout: Optional[float] = None,
        use_browser_fallback: Optional[bool] = None,
    ) -> ScrapeResult:
        overrides = {}
        if timeout is not None:
            overrides["timeout"] = timeout
        if use_browser_fallback is not None:
            overrides["use_browser_fallback"] = use_browser_fallback
        async with self.batch(**overrides) as batch:
            return await batch.scrape_domain(domain)

    async def scrape_domains(
        self,
        domains: List[str],
        concurrency: Optional[int] = None,
        use_browser_fallback: Optional[bool] = None,
    ) -> Dict[str, ScrapeResult]:
        """Scrape many domains in one batch. Returns domain -> result."""
        overrides = {}
        if concurrency is not None:
            overrides["concurrency"] = concurrency
        if use_browser_fallback is not None:
            overrides["use_browser_fallback"] = use_browser_fallback

        unique = list(dict.fromkeys(strip_domain(d).lower() for d in domains if d))
        results: Dict[str, ScrapeResult] = {}
        async with self.batch(**overrides) as batch:
            async for result in batch.scrape_all(unique):
                results[result.domain] = result

        stats = scraping_stats(list(results.values()))
        logger.info(
            f"Scraped {stats.total} domains: {stats.with_email} emails, "
            f"{stats.with_phone} phones, errors={stats.errors}"
        )
        return results
