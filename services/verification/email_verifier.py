"""Email verification: syntax, disposable domains and DNS MX lookups.

MX results are cached per domain for an hour, including "no mail records"
answers (NXDOMAIN / NoAnswer). Transient DNS failures are not cached so a
real outage is retried later; emails hit by one come back as "unknown".

Batch verification groups emails by domain first and resolves each unique
domain once, so N emails over K domains cost K lookups.

Usage:
    verifier = EmailVerifier()
    result = await verifier.verify_email("info@acme.com")

    results = await verifier.verify_emails([EmailItem(id=1, email="a@gmail.com")])

    async for event in verifier.iter_verify_emails(items):
        logger.info(f"{event.progress.items_completed}/{event.progress.items_total}")
"""

import re
import time
from collections import OrderedDict
from contextlib import aclosing
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import dns.asyncresolver
import dns.exception
import dns.resolver
from loguru import logger
from pydantic import BaseModel

from lib.batch import iter_batch
from lib.retry import with_retry

CACHE_TTL_SECONDS = 3600
DEFAULT_CONCURRENCY = 10
DEFAULT_BATCH_SIZE = 100

SYNTAX_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DISPOSABLE_DOMAINS = frozenset([
    "tempmail.com", "guerrillamail.com", "mailinator.com", "10minutemail.com",
    "throwaway.email", "getnada.com", "temp-mail.org", "yopmail.com",
    "maildrop.cc", "trashmail.com", "fakeinbox.com", "sharklasers.com",
    "dispostable.com", "temp-mail.io", "mohmal.com", "emailondeck.com",
    "spamgourmet.com", "mintemail.com", "mytemp.email", "gmx.com",
])

# Answers that mean "this domain takes no mail" and are safe to cache.
NEGATIVE_DNS_ERRORS = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer)
TRANSIENT_DNS_ERRORS = (dns.exception.Timeout, dns.resolver.NoNameservers)


class VerificationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    RISKY = "risky"
    UNKNOWN = "unknown"


class VerificationDetails(BaseModel):
    syntax: bool = False
    has_mx_records: bool = False
    mx_records: List[str] = []
    is_disposable: bool = False
    is_catch_all: Optional[bool] = None
    smtp_check: str = "unknown"
    verification_date: datetime
    error: Optional[str] = None


class VerificationResult(BaseModel):
    email: str
    verified: bool
    status: VerificationStatus
    details: VerificationDetails


class EmailItem(BaseModel):
    """An email to verify, keyed by the caller's id (e.g. business id)."""
    id: Union[int, str]
    email: str


class VerificationProgress(BaseModel):
    domains_completed: int
    domains_total: int
    items_completed: int
    items_total: int


class VerificationEvent(BaseModel):
    """Results for one completed domain group (or the syntax-invalid group)."""
    domain: Optional[str] = None
    results: Dict[Union[int, str], VerificationResult]
    progress: VerificationProgress


class VerificationStats(BaseModel):
    total: int
    valid: int
    invalid: int
    risky: int
    unknown: int
    verification_rate: float


class MxLookup(BaseModel):
    records: List[str] = []
    error: Optional[str] = None     # set only for uncached transient failures


class MxCache:
    """Domain -> MX hosts with a time-to-live. Process lifetime."""

    def __init__(self, ttl: float = CACHE_TTL_SECONDS):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[List[str], float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, domain: str) -> Optional[List[str]]:
        entry = self._entries.get(domain)
        if entry is not None and time.monotonic() - entry[1] < self.ttl:
            self.hits += 1
            return entry[0]
        self.misses += 1
        return None

    def set(self, domain: str, records: List[str]) -> None:
        self._entries[domain] = (records, time.monotonic())

    def clear(self) -> int:
        size = len(self._entries)
        self._entries.clear()
        return size

    def clear_expired(self) -> int:
        now = time.monotonic()
        expired = [d for d, (_, ts) in self._entries.items() if now - ts >= self.ttl]
        for domain in expired:
            del self._entries[domain]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}


def validate_syntax(email: str) -> bool:
    if not email or not SYNTAX_PATTERN.match(email):
        return False
    local, domain = email.split("@")
    labels = domain.split(".")
    return bool(local) and len(labels) >= 2 and len(labels[-1]) >= 2


def is_disposable(domain: str) -> bool:
    return domain.lower() in DISPOSABLE_DOMAINS


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower()


def verification_stats(results: Dict[Union[int, str], VerificationResult]) -> VerificationStats:
    statuses = [r.status for r in results.values()]
    total = len(statuses)
    valid = statuses.count(VerificationStatus.VALID)
    return VerificationStats(
        total=total,
        valid=valid,
        invalid=statuses.count(VerificationStatus.INVALID),
        risky=statuses.count(VerificationStatus.RISKY),
        unknown=statuses.count(VerificationStatus.UNKNOWN),
        verification_rate=(valid / total * 100) if total else 0.0,
    )


class EmailVerifier:
    """Verifies emails with a shared, TTL'd MX cache."""

    def __init__(
        self,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        cache: Optional[MxCache] = None,
    ):
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.timeout = 5
            resolver.lifetime = 10
        self.resolver = resolver
        self.cache = cache or MxCache()
        self.lookup_count = 0

    async def lookup_mx(self, domain: str) -> MxLookup:
        """MX hosts for a domain, sorted by preference. Cache first."""
        cached = self.cache.get(domain)
        if cached is not None:
            return MxLookup(records=cached)

        self.lookup_count += 1
        try:
            answer = await with_retry(
                lambda: self.resolver.resolve(domain, "MX"),
                max_attempts=2,
                initial_delay=0.5,
                should_retry=lambda e: isinstance(e, TRANSIENT_DNS_ERRORS),
            )
        except NEGATIVE_DNS_ERRORS:
            self.cache.set(domain, [])
            return MxLookup(records=[])
        except Exception as e:
            logger.warning(f"DNS error for {domain} (not cached): {type(e).__name__}: {e}")
            return MxLookup(records=[], error=f"DNS lookup failed: {type(e).__name__}")

        rdatas = sorted(answer, key=lambda r: r.preference)
        records = [str(r.exchange).lower().rstrip(".") for r in rdatas]
        self.cache.set(domain, records)
        return MxLookup(records=records)

    def _result(self, email: str, status: VerificationStatus, **details) -> VerificationResult:
        return VerificationResult(
            email=email,
            verified=status == VerificationStatus.VALID,
            status=status,
            details=VerificationDetails(
                verification_date=datetime.now(timezone.utc),
                **details,
            ),
        )

    def _check_offline(self, email: str) -> Optional[VerificationResult]:
        """Syntax and disposable checks. None means a DNS lookup is needed."""
        if not validate_syntax(email):
            return self._result(email, VerificationStatus.INVALID, error="Invalid email syntax")
        if is_disposable(email_domain(email)):
            return self._result(
                email, VerificationStatus.RISKY,
                syntax=True, is_disposable=True, error="Disposable email address",
            )
        return None

    def _apply_mx(self, email: str, lookup: MxLookup) -> VerificationResult:
        if lookup.error:
            return self._result(email, VerificationStatus.UNKNOWN, syntax=True, error=lookup.error)
        if not lookup.records:
            return self._result(
                email, VerificationStatus.INVALID,
                syntax=True, error="No MX records found for domain",
            )
        return self._result(
            email, VerificationStatus.VALID,
            syntax=True, has_mx_records=True, mx_records=lookup.records,
        )

    async def verify_email(self, email: str) -> VerificationResult:
        email = (email or "").strip()
        offline = self._check_offline(email)
        if offline is not None:
            return offline
        return self._apply_mx(email, await self.lookup_mx(email_domain(email)))

    async def iter_verify_emails(
        self,
        items: Sequence[EmailItem],
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> AsyncIterator[VerificationEvent]:
        """Yield one event per completed domain group.

        Syntax failures come first, in a single event, at zero network cost.
        """
        groups: "OrderedDict[str, List[EmailItem]]" = OrderedDict()
        invalid: Dict[Union[int, str], VerificationResult] = {}
        for item in items:
            email = (item.email or "").strip()
            if not validate_syntax(email):
                invalid[item.id] = self._result(email, VerificationStatus.INVALID, error="Invalid email syntax")
                continue
            groups.setdefault(email_domain(email), []).append(item)

        items_total = len(items)
        domains_total = len(groups)
        items_done = len(invalid)
        domains_done = 0
        logger.info(
            f"Verifying {items_total} emails across {domains_total} domains "
            f"({items_total - len(invalid) - domains_total} lookups avoided)"
        )

        if invalid:
            yield VerificationEvent(
                results=invalid,
                progress=VerificationProgress(
                    domains_completed=0, domains_total=domains_total,
                    items_completed=items_done, items_total=items_total,
                ),
            )

        async def verify_group(domain: str) -> Dict[Union[int, str], VerificationResult]:
            members = groups[domain]
            lookup: Optional[MxLookup] = None
            if not is_disposable(domain):
                lookup = await self.lookup_mx(domain)
            out = {}
            for item in members:
                email = item.email.strip()
                offline = self._check_offline(email)
                out[item.id] = offline if offline is not None else self._apply_mx(email, lookup)
            return out

        domains = list(groups.keys())
        for start in range(0, len(domains), batch_size):
            chunk = domains[start:start + batch_size]
            outcomes = iter_batch(chunk, verify_group, concurrency=concurrency)
            async with aclosing(outcomes):
                async for outcome in outcomes:
                    domain = outcome.item
                    if outcome.ok:
                        results = outcome.value
                    else:
                        logger.error(f"Verification failed for domain {domain}: {outcome.error}")
                        results = {
                            item.id: self._result(
                                item.email, VerificationStatus.UNKNOWN,
                                syntax=True, error=str(outcome.error),
                            )
                            for item in groups[domain]
                        }
                    domains_done += 1
                    items_done += len(groups[domain])
                    yield VerificationEvent(
                        domain=domain,
                        results=results,
                        progress=VerificationProgress(
                            domains_completed=domains_done, domains_total=domains_total,
                            items_completed=items_done, items_total=items_total,
                        ),
                    )

    async def verify_emails(
        self,
        items: Sequence[EmailItem],
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> Dict[Union[int, str], VerificationResult]:
        results: Dict[Union[int, str], VerificationResult] = {}
        async for event in self.iter_verify_emails(items, concurrency, batch_size):
            results.update(event.results)

        stats = verification_stats(results)
        logger.info(
            f"Verified {stats.total} emails: {stats.valid} valid, {stats.invalid} invalid, "
            f"{stats.risky} risky, {stats.unknown} unknown | cache={self.cache.stats()}"
        )
        return results

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        removed = self.cache.clear()
        logger.info(f"MX cache cleared ({removed} entries removed)")

    def clear_expired(self) -> int:
        return self.cache.clear_expired()
