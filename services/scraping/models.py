from typing import Optional

from pydantic import BaseModel, ConfigDict


class ScrapeConfig(BaseModel):
    """Configuration for a scrape batch."""
    model_config = ConfigDict(frozen=True)

    timeout: float = 5.0                  # seconds per static fetch
    browser_timeout_ms: int = 10000       # per browser navigation
    browser_settle_ms: int = 1000         # wait after networkidle for lazy content
    use_browser_fallback: bool = True
    concurrency: int = 5
    fetch_attempts: int = 2
    headless: bool = True


class ScrapeResult(BaseModel):
    """Outcome of scraping one domain. error is one of ScrapeErrorCode or None."""
    domain: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.email or self.phone)
