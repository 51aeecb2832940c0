"""Headless browser fallback for JavaScript-rendered contact pages.

One Chromium process per scrape batch, launched lazily on first use and
shared by every domain in the batch. Each domain gets its own context and
page, closed after use. Every process of a batch carries a unique marker
switch on its command line so teardown can kill strays.

Usage:
    fallback = BrowserFallback(ScrapeConfig())
    try:
        result = await fallback.scrape("example.com", failed_domains)
    finally:
        await fallback.close()
"""

import asyncio
import uuid
from typing import Optional, Set, Tuple

from loguru import logger
from playwright.async_api import async_playwright, Browser, Playwright
from playwright.async_api import TimeoutError as PWTimeoutError
from playwright_stealth import Stealth

from lib.errors import ScrapingError
from services.scraping.constants import CONTACT_PATHS, USER_AGENT, ScrapeErrorCode
from services.scraping.extractor import ContactExtractor, build_url
from services.scraping.models import ScrapeConfig, ScrapeResult

LAUNCH_ARGS = [
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-background-networking",
    "--disable-extensions",
    "--mute-audio",
    "--no-first-run",
]

DNS_MARKERS = ("ERR_NAME_NOT_RESOLVED", "ENOTFOUND")
CONNECTION_MARKERS = (
    "ERR_CONNECTION_REFUSED",
    "ERR_CONNECTION_RESET",
    "ERR_SSL_",
    "ERR_CERT_",
    "EPROTO",
    "ssl/tls alert",
)


def classify_navigation_error(error: BaseException) -> Tuple[str, bool]:
    """Map a navigation failure to (error code, persistent)."""
    message = str(error)
    if isinstance(error, PWTimeoutError) or "timeout" in message.lower():
        return ScrapeErrorCode.TIMEOUT, True
    if any(marker in message for marker in DNS_MARKERS):
        return ScrapeErrorCode.DOMAIN_NOT_FOUND, True
    if any(marker in message for marker in CONNECTION_MARKERS):
        return ScrapeErrorCode.UNKNOWN_ERROR, True
    return ScrapeErrorCode.UNKNOWN_ERROR, False


class BrowserFallback:
    """Shared Chromium for one scrape batch."""

    def __init__(self, config: Optional[ScrapeConfig] = None, launch_attempts: int = 3):
        self.config = config or ScrapeConfig()
        self.launch_attempts = launch_attempts
        self.marker = f"--scrapenation-batch={uuid.uuid4().hex}"
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self._launched = False
        self._stealth = Stealth()

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    async def _ensure_browser(self) -> Browser:
        """Launch on first use. Lock keeps concurrent domains from racing."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            last_error: Optional[Exception] = None
            for attempt in range(1, self.launch_attempts + 1):
                if attempt > 1:
                    await asyncio.sleep(attempt)
                try:
                    if self._playwright is None:
                        self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=self.config.headless,
                        args=LAUNCH_ARGS + [self.marker],
                    )
                    self._launched = True
                    logger.info(f"Browser launched for scrape batch ({self.marker.split('=')[1][:8]})")
                    return self._browser
                except Exception as e:
                    last_error = e
                    logger.warning(f"Browser launch failed (attempt {attempt}/{self.launch_attempts}): {e}")

            raise ScrapingError(
                "Failed to launch browser",
                context={"error": str(last_error)},
            )

    async def scrape(self, domain: str, failed_domains: Set[str]) -> ScrapeResult:
        """Render candidate paths until something is found.

        A persistent failure on the home page marks the domain failed for
        the rest of the batch and stops this domain only.
        """
        if domain in failed_domains:
            return ScrapeResult(domain=domain, error=ScrapeErrorCode.DOMAIN_PREVIOUSLY_FAILED)

        browser = await self._ensure_browser()
        context = await browser.new_context(user_agent=USER_AGENT, locale="en-US")
        try:
            page = await context.new_page()
            await self._stealth.apply_stealth_async(page)
            for i, path in enumerate(CONTACT_PATHS):
                url = build_url(domain, path)
                try:
                    await page.goto(
                        url,
                        wait_until="networkidle",
                        timeout=self.config.browser_timeout_ms,
                    )
                    await page.wait_for_timeout(self.config.browser_settle_ms)
                    html = await page.content()
                except Exception as e:
                    code, persistent = classify_navigation_error(e)
                    if i == 0 and persistent:
                        logger.debug(f"Browser: {domain} failed on home page ({code}), skipping domain")
                        failed_domains.add(domain)
                        return ScrapeResult(domain=domain, error=code)
                    logger.debug(f"Browser: {url} failed: {str(e)[:100]}")
                    continue

                info = ContactExtractor.extract(html)
                if info.email or info.phone:
                    logger.debug(f"Browser: found contact info for {domain} on {path or 'home page'}")
                    return ScrapeResult(domain=domain, email=info.email, phone=info.phone)

            return ScrapeResult(domain=domain, error=ScrapeErrorCode.NO_CONTACT_INFO_FOUND)
        finally:
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Browser: context close failed for {domain}: {e}")

    async def close(self, timeout: float = 5.0) -> None:
        """Close the browser and Playwright, then kill anything left behind."""
        if self._browser is not None:
            try:
                await asyncio.wait_for(self._browser.close(), timeout=timeout)
            except Exception as e:
                logger.warning(f"Browser close failed: {e}")
            self._browser = None
        if self._playwright is not None:
            try:
                await asyncio.wait_for(self._playwright.stop(), timeout=timeout)
            except Exception as e:
                logger.warning(f"Playwright stop failed: {e}")
            self._playwright = None
        if self._launched:
            await self._kill_strays()
            self._launched = False

    async def _kill_strays(self) -> None:
        """pkill any process still carrying this batch's marker."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "pkill", "-f", self.marker,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
        except OSError as e:
            logger.debug(f"pkill unavailable: {e}")
