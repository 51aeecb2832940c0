"""Error hierarchy shared by the pipeline, adapters and engines."""

from typing import Any, Dict, Optional

from loguru import logger


class ScrapenationError(Exception):
    """Base error carrying a machine-readable code and context."""

    code = "SCRAPENATION_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}


class PlacesAPIError(ScrapenationError):
    code = "PLACES_API_ERROR"


class SerpAPIError(ScrapenationError):
    code = "SERP_API_ERROR"


class LLMError(ScrapenationError):
    code = "LLM_ERROR"


class ScrapingError(ScrapenationError):
    code = "SCRAPING_ERROR"


class TierLimitError(ScrapenationError):
    code = "TIER_LIMIT_EXCEEDED"


class JobNotFoundError(ScrapenationError):
    code = "JOB_NOT_FOUND"


class QuotaExceededError(ScrapenationError):
    """External API budget exhausted. Halts the discovery stage early."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, service: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Quota exceeded for {service}", context=context)
        self.service = service


def get_error_message(error: BaseException) -> str:
    """Best-effort human readable message for any exception."""
    if isinstance(error, ScrapenationError):
        return error.message
    message = str(error)
    return message if message else type(error).__name__


def log_error(error: BaseException, **context: Any) -> None:
    """Log an error with its code and context in one line."""
    code = getattr(error, "code", type(error).__name__)
    merged = dict(getattr(error, "context", None) or {})
    merged.update(context)
    extra = f" | {merged}" if merged else ""
    logger.error(f"[{code}] {get_error_message(error)}{extra}")
