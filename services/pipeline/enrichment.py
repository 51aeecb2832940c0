"""SERP + LLM enrichment adapter.

For one business: search Google through DataForSEO, then ask an OpenAI chat
model to pick the official domain, email and phone out of the organic
results, each with a 0-100 confidence.

Internal helper: performs HTTP calls only, never touches the database.
"""

import json
import os
import re
from typing import Any, List, Optional

import httpx
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict

from db.models.business import BusinessToEnrich
from lib.errors import LLMError, QuotaExceededError, SerpAPIError, log_error
from lib.retry import should_retry_error, with_retry
from services.scraping.extractor import ContactExtractor

load_dotenv()

DATAFORSEO_LOGIN = os.getenv("DATAFORSEO_LOGIN", "")
DATAFORSEO_PASSWORD = os.getenv("DATAFORSEO_PASSWORD", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.3"))
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "2000"))

DATAFORSEO_URL = "https://api.dataforseo.com/v3/serp/google/organic/live/advanced"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

USA_LOCATION_CODE = 2840
SERP_DEPTH = 10
DATAFORSEO_OK = 20000

SYSTEM_PROMPT = (
    "You are a helpful assistant that extracts structured business contact information "
    "from search results. Always respond with valid JSON."
)

EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SerpResult(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class EnrichmentResult(BaseModel):
    domain: Optional[str] = None
    domain_confidence: Optional[float] = None
    email: Optional[str] = None
    email_confidence: Optional[float] = None
    phone: Optional[str] = None
    phone_confidence: Optional[float] = None


class EnrichmentOutcome(BaseModel):
    """Result of enriching one business. error set means nothing should be saved."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    business_id: int
    result: Optional[EnrichmentResult] = None
    serp_calls: int = 0
    llm_calls: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Sanitizers
# ---------------------------------------------------------------------------

def sanitize_domain(domain: Any) -> Optional[str]:
    if not domain or not isinstance(domain, str):
        return None
    cleaned = re.sub(r"^https?://", "", domain.strip(), flags=re.IGNORECASE)
    cleaned = re.sub(r"^www\.", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.rstrip("/").lower().strip()
    if not cleaned or cleaned == "null":
        return None
    return cleaned


def sanitize_email(email: Any) -> Optional[str]:
    if not email or not isinstance(email, str):
        return None
    cleaned = email.strip().lower()
    return cleaned if EMAIL_SHAPE.match(cleaned) else None


def sanitize_phone(phone: Any) -> Optional[str]:
    """US numbers only, normalized to (XXX) XXX-XXXX."""
    if not phone or not isinstance(phone, str):
        return None
    if not ContactExtractor.is_valid_phone(phone):
        return None
    return ContactExtractor.normalize_phone(phone)


def sanitize_confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return max(0.0, min(100.0, number))


def parse_llm_response(content: str) -> EnrichmentResult:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise LLMError("LLM returned invalid JSON", context={"error": str(e)})
    if not isinstance(data, dict):
        raise LLMError("LLM response is not a JSON object")

    return EnrichmentResult(
        domain=sanitize_domain(data.get("domain")),
        domain_confidence=sanitize_confidence(data.get("domainConfidence")),
        email=sanitize_email(data.get("email")),
        email_confidence=sanitize_confidence(data.get("emailConfidence")),
        phone=sanitize_phone(data.get("phone")),
        phone_confidence=sanitize_confidence(data.get("phoneConfidence")),
    )


def build_prompt(name: str, city: Optional[str], state: Optional[str], results: List[SerpResult]) -> str:
    location = ", ".join(p for p in (city, state) if p)
    where = f" in {location}" if location else ""
    listing = "\n".join(
        f"\nResult {i}:\nTitle: {r.title}\nSnippet: {r.snippet}\nURL: {r.url}\n"
        for i, r in enumerate(results, 1)
    )
    return f"""You are an expert at extracting business contact information from search results.

Business: {name}{where}

Search Results:
{listing}

Task: Extract the following information with confidence scores (0-100):
1. Domain (website URL) - most likely official website for this business
2. Email address - if found in search results
3. Phone number - if found in search results

For each field, provide a confidence score based on:
- How certain you are this is the correct business (not a similar business)
- How authoritative the source is
- How relevant the information is to this specific location

Respond in JSON format:
{{
  "domain": "example.com or null",
  "domainConfidence": 0-100 or null,
  "email": "contact@example.com or null",
  "emailConfidence": 0-100 or null,
  "phone": "+1-555-0100 or null",
  "phoneConfidence": 0-100 or null
}}

Important:
- Set null for any field you cannot find or are very unsure about
- Domain should be just the domain name (e.g., "example.com", not "https://example.com")
- Be conservative with confidence scores - only use high scores (>80) when very certain
- Phone numbers should be in standard format with country code if available
- CRITICAL: If the search results are for a business in a DIFFERENT city or state than specified ({location}), return null for all fields and 0 confidence
- Only extract information if you are confident the results match the specified location"""


def is_insufficient_quota(error: BaseException) -> bool:
    """OpenAI 429 for an exhausted billing quota rather than a rate limit."""
    return (
        isinstance(error, httpx.HTTPStatusError)
        and error.response.status_code == 429
        and "insufficient_quota" in error.response.text
    )


def build_query(business: BusinessToEnrich) -> str:
    return " ".join(p for p in (business.name, business.city or "", business.state or "") if p).strip()


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class SerpClient:
    """DataForSEO Google organic live search."""

    def __init__(
        self,
        login: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.login = login if login is not None else DATAFORSEO_LOGIN
        self.password = password if password is not None else DATAFORSEO_PASSWORD
        self._client = client
        if not (self.login and self.password):
            logger.warning("DataForSEO credentials not configured")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, depth: int = SERP_DEPTH) -> List[SerpResult]:
        payload = [{
            "keyword": query,
            "location_code": USA_LOCATION_CODE,
            "language_code": "en",
            "depth": depth,
            "device": "desktop",
            "os": "windows",
        }]

        async def call() -> dict:
            resp = await self._http().post(
                DATAFORSEO_URL,
                json=payload,
                auth=(self.login, self.password),
            )
            resp.raise_for_status()
            return resp.json()

        try:
            data = await with_retry(call, max_attempts=3)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise SerpAPIError("DataForSEO authentication failed - check API credentials")
            if status == 402:
                raise SerpAPIError("DataForSEO account has insufficient funds")
            raise SerpAPIError(f"DataForSEO request failed: {e}", context={"status": status})

        tasks = data.get("tasks") or []
        task = tasks[0] if tasks else None
        if not task or task.get("status_code") != DATAFORSEO_OK:
            message = (task or {}).get("status_message") or "Unknown error"
            raise SerpAPIError(f"DataForSEO API error: {message}", context={"query": query})

        results = task.get("result") or []
        if not results:
            return []
        return [
            SerpResult(
                title=item.get("title") or "",
                url=item.get("url") or "",
                snippet=item.get("description") or "",
            )
            for item in results[0].get("items") or []
            if item.get("type") == "organic"
        ]


class LLMClient:
    """OpenAI chat completions in JSON mode."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else OPENAI_API_KEY
        self.model = model or OPENAI_MODEL
        self._client = client
        if not self.api_key:
            logger.warning("OPENAI_API_KEY not configured")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete_json(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": OPENAI_TEMPERATURE,
            "max_tokens": OPENAI_MAX_TOKENS,
        }

        async def call() -> dict:
            resp = await self._http().post(
                OPENAI_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
            return resp.json()

        try:
            data = await with_retry(
                call,
                max_attempts=3,
                should_retry=lambda e: not is_insufficient_quota(e) and should_retry_error(e),
            )
        except httpx.HTTPError as e:
            if is_insufficient_quota(e):
                raise QuotaExceededError("OpenAI API", {"http_status": 429}) from e
            raise LLMError(f"OpenAI request failed: {e}")

        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise LLMError("No content in LLM response")
        return content


class Enricher:
    """SERP search followed by LLM extraction, one business at a time."""

    def __init__(self, serp: Optional[SerpClient] = None, llm: Optional[LLMClient] = None):
        self.serp = serp or SerpClient()
        self.llm = llm or LLMClient()

    async def close(self) -> None:
        await self.serp.close()
        await self.llm.close()

    async def enrich(self, business: BusinessToEnrich) -> EnrichmentOutcome:
        """Never raises. Call counts are reported even when a later step fails."""
        outcome = EnrichmentOutcome(business_id=business.id)
        try:
            outcome.serp_calls += 1
            results = await self.serp.search(build_query(business))
            if not results:
                outcome.result = EnrichmentResult()
                return outcome

            outcome.llm_calls += 1
            content = await self.llm.complete_json(
                build_prompt(business.name, business.city, business.state, results)
            )
            outcome.result = parse_llm_response(content)
        except Exception as e:
            log_error(e, business_id=business.id, business_name=business.name)
            outcome.error = e
        return outcome
