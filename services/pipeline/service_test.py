"""Tests for the pipeline orchestrator.

Unit tests run against an in-memory repo that mirrors the SQL semantics
(ON CONFLICT DO NOTHING, first email wins, monotonic counters) and fake
adapters. The verifier is real, with a mocked DNS resolver.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from unittest.mock import AsyncMock, MagicMock

from db.models.business import BusinessToEnrich, BusinessToScrape, EmailToVerify, NewBusiness
from db.models.job import Job
from db.models.user import User
from lib.errors import (
    JobNotFoundError,
    PlacesAPIError,
    QuotaExceededError,
    ScrapenationError,
    TierLimitError,
)
from services.pipeline.constants import STEP_ORDER, JobStatus, PipelineStep
from services.pipeline.enrichment import EnrichmentOutcome, EnrichmentResult
from services.pipeline.models import PipelineConfig
from services.pipeline.places import PlacesSearchResult
from services.pipeline.service import Service
from services.pipeline.zipcodes import ZipCodeIndex
from services.scraping.constants import ScrapeErrorCode
from services.scraping.models import ScrapeResult
from services.verification.email_verifier import EmailVerifier


ZIP_CSV = """zip_code,population,area_sqmi,city,state,lat,lon,radius_mi
27610,90000,37.8,Raleigh,NC,35.74,-78.54,3.4
28269,80000,30.1,Charlotte,NC,35.34,-80.79,3.1
28277,70000,24.6,Charlotte,NC,35.05,-80.81,2.8
27587,60000,86.5,Wake Forest,NC,35.98,-78.53,5.2
28173,50000,105.2,Waxhaw,NC,34.92,-80.72,5.7
27858,40000,74.3,Greenville,NC,35.57,-77.32,4.8
29401,30000,4.1,Charleston,SC,32.78,-79.93,1.1
29201,20000,8.0,Columbia,SC,34.00,-81.03,1.6
"""

TOP_HALF_NC = ["27610", "28269", "28277"]

BLANK_BUSINESS = {
    "serp_domain": None,
    "serp_domain_confidence": None,
    "serp_email": None,
    "serp_email_confidence": None,
    "serp_phone": None,
    "serp_phone_confidence": None,
    "serp_enriched_at": None,
    "domain_email": None,
    "domain_phone": None,
    "scrape_error": None,
    "scraped_at": None,
    "domain_email_verified": None,
    "domain_email_verify_status": None,
    "serp_email_verified": None,
    "serp_email_verify_status": None,
}


# =============================================================================
# Fakes
# =============================================================================

class FakeRepo:
    """In-memory PipelineRepo."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.users = {}
        self.jobs = {}
        self.businesses = {}
        self.by_place = {}
        self.job_links = {}       # (job_id, business_id) -> was_reused
        self.user_links = set()   # (user_id, business_id)
        self.touches = 0

    def add_user(self, tier="PRO", jobs_created=0):
        user_id = next(self._ids)
        self.users[user_id] = {"id": user_id, "email": f"u{user_id}@test.com", "tier": tier, "jobs_created": jobs_created}
        return user_id

    def _linked(self, job_id):
        return [self.businesses[bid] for (jid, bid) in self.job_links if jid == job_id]

    # Users
    async def get_user(self, user_id):
        row = self.users.get(user_id)
        return User(**row) if row else None

    async def increment_jobs_created(self, user_id):
        self.users[user_id]["jobs_created"] += 1

    # Jobs
    async def create_job(self, user_id, submission):
        job_id = next(self._ids)
        self.jobs[job_id] = Job(
            id=job_id,
            user_id=user_id,
            business_type=submission.business_type,
            geography=submission.geography,
            zip_percentage=submission.zip_percentage,
            min_domain_confidence=submission.min_domain_confidence,
        ).model_dump()
        return job_id

    async def get_job(self, job_id):
        row = self.jobs.get(job_id)
        return Job(**row) if row else None

    async def get_job_status(self, job_id):
        row = self.jobs.get(job_id)
        return row["status"] if row else None

    async def update_job_status(self, job_id, status):
        self.jobs[job_id]["status"] = status

    async def touch_job(self, job_id):
        self.touches += 1
        self.jobs[job_id]["last_progress_at"] = datetime.now(timezone.utc)

    async def claim_pending_jobs(self, limit):
        pending = sorted(jid for jid, row in self.jobs.items() if row["status"] == "PENDING")[:limit]
        for jid in pending:
            self.jobs[jid]["status"] = "RUNNING"
        return pending

    async def reset_stalled_jobs(self, stall_seconds):
        cutoff = datetime.now(timezone.utc).timestamp() - stall_seconds
        stalled = [
            jid for jid, row in self.jobs.items()
            if row["status"] == "RUNNING"
            and row["last_progress_at"] is not None
            and row["last_progress_at"].timestamp() < cutoff
        ]
        for jid in stalled:
            self.jobs[jid]["status"] = "PENDING"
        return stalled

    async def transition_job_status(self, job_id, status, from_statuses):
        row = self.jobs.get(job_id)
        if row is None or row["status"] not in from_statuses:
            return False
        row["status"] = status
        return True

    async def resume_job(self, job_id):
        row = self.jobs[job_id]
        if row["status"] not in ("FAILED", "PAUSED"):
            return False
        row["status"] = "PENDING"
        row["error_log"] = None
        return True

    async def advance_job_step(self, job_id, step):
        row = self.jobs[job_id]
        if STEP_ORDER.index(PipelineStep(step)) > STEP_ORDER.index(PipelineStep(row["current_step"])):
            row["current_step"] = step

    async def save_selected_zips(self, job_id, zip_codes):
        row = self.jobs[job_id]
        row["selected_zips"] = list(zip_codes)
        row["total_zips"] = max(row["total_zips"], len(zip_codes))

    async def add_api_calls(self, job_id, places=0, serp=0, llm=0):
        row = self.jobs[job_id]
        row["places_api_calls"] += places
        row["serp_api_calls"] += serp
        row["llm_api_calls"] += llm

    async def add_job_errors(self, job_id, count=1):
        self.jobs[job_id]["errors_encountered"] += max(count, 0)

    async def append_job_note(self, job_id, note):
        row = self.jobs[job_id]
        row["error_log"] = "\n".join(p for p in (row["error_log"], note) if p)

    async def refresh_job_counters(self, job_id):
        row = self.jobs[job_id]
        linked = self._linked(job_id)
        row["businesses_found"] = max(row["businesses_found"], len(linked))
        row["businesses_enriched"] = max(
            row["businesses_enriched"], sum(1 for b in linked if b["serp_enriched_at"]))
        row["businesses_scraped"] = max(
            row["businesses_scraped"], sum(1 for b in linked if b["scraped_at"]))
        row["emails_verified"] = max(row["emails_verified"], sum(
            1 for b in linked if b["domain_email_verify_status"] or b["serp_email_verify_status"]))

    async def complete_job(self, job_id, estimated_cost, verification_time_ms=None):
        row = self.jobs[job_id]
        row.update(status="COMPLETED", current_step="completed", estimated_cost=estimated_cost)
        if verification_time_ms is not None:
            row["verification_time_ms"] = verification_time_ms

    async def fail_job(self, job_id, error):
        self.jobs[job_id].update(status="FAILED", error_log=error)

    # Discovery
    async def save_discovered(self, job_id, user_id, businesses, processed_zips, places_api_calls):
        unique = {b.place_id: b for b in businesses}
        new = set()
        for place_id, business in unique.items():
            if place_id not in self.by_place:
                business_id = next(self._ids)
                self.businesses[business_id] = {**BLANK_BUSINESS, **business.model_dump(), "id": business_id}
                self.by_place[place_id] = business_id
                new.add(place_id)
        for place_id in unique:
            business_id = self.by_place[place_id]
            self.job_links.setdefault((job_id, business_id), place_id not in new)
            if user_id is not None:
                self.user_links.add((user_id, business_id))

        row = self.jobs[job_id]
        row["processed_zips"] = sorted(set(row["processed_zips"]) | set(processed_zips))
        row["zips_processed"] = max(row["zips_processed"], len(row["processed_zips"]))
        row["places_api_calls"] += places_api_calls
        await self.refresh_job_counters(job_id)
        return len(new)

    # Enrichment
    async def get_businesses_to_enrich(self, job_id):
        return [
            BusinessToEnrich(id=b["id"], name=b["name"], city=b["city"], state=b["state"])
            for b in sorted(self._linked(job_id), key=lambda b: b["id"])
            if b["serp_enriched_at"] is None
        ]

    async def save_enrichment(self, business_id, result):
        b = self.businesses[business_id]
        if b["serp_enriched_at"] is not None:
            return
        b.update(
            serp_domain=result.domain,
            serp_domain_confidence=result.domain_confidence,
            serp_email=result.email,
            serp_email_confidence=result.email_confidence,
            serp_phone=result.phone,
            serp_phone_confidence=result.phone_confidence,
            serp_enriched_at=datetime.now(timezone.utc),
        )

    # Scraping
    async def get_businesses_to_scrape(self, job_id, min_confidence):
        return [
            BusinessToScrape(id=b["id"], serp_domain=b["serp_domain"])
            for b in sorted(self._linked(job_id), key=lambda b: b["id"])
            if b["serp_domain"]
            and (b["serp_domain_confidence"] or 0) >= min_confidence
            and b["scraped_at"] is None
            and b["domain_email"] is None
        ]

    async def save_scrape_results(self, results):
        for business_id, result in results:
            b = self.businesses[business_id]
            if b["domain_email"] is not None:
                continue
            b.update(
                domain_email=result.email,
                domain_phone=b["domain_phone"] or result.phone,
                scrape_error=result.error,
                scraped_at=datetime.now(timezone.utc),
            )

    # Verification
    async def get_emails_to_verify(self, job_id):
        return [
            EmailToVerify(**{k: b[k] for k in (
                "id", "domain_email", "serp_email", "domain_email_verify_status", "serp_email_verify_status")})
            for b in sorted(self._linked(job_id), key=lambda b: b["id"])
            if (b["domain_email"] and b["domain_email_verify_status"] is None)
            or (b["serp_email"] and b["serp_email_verify_status"] is None)
        ]

    async def save_verifications(self, domain_results, serp_results):
        for business_id, r in domain_results:
            self.businesses[business_id].update(
                domain_email_verified=r.verified, domain_email_verify_status=r.status.value)
        for business_id, r in serp_results:
            self.businesses[business_id].update(
                serp_email_verified=r.verified, serp_email_verify_status=r.status.value)


class FakePlaces:
    """Two places per ZIP plus one place every ZIP returns."""

    def __init__(self, quota_zips=(), failing_zips=()):
        self.calls = []
        self.quota_zips = set(quota_zips)
        self.failing_zips = set(failing_zips)

    async def search_nearby(self, latitude, longitude, radius_meters, keyword,
                            fallback_city=None, fallback_state=None, fallback_postal_code=None):
        zip_code = fallback_postal_code
        self.calls.append(zip_code)
        if zip_code in self.quota_zips:
            # Second page fails after the first was billed
            raise QuotaExceededError("Google Places API", {"api_calls": 1})
        if zip_code in self.failing_zips:
            raise PlacesAPIError("Places API returned status: UNKNOWN_ERROR", context={"api_calls": 1})

        def place(place_id, name):
            return NewBusiness(place_id=place_id, name=name, city=fallback_city,
                               state=fallback_state, postal_code=zip_code, business_type=keyword)

        places = [place(f"{zip_code}-{i}", f"Clinic {zip_code}-{i}") for i in range(2)]
        places.append(place("shared", "Shared Clinic"))
        return PlacesSearchResult(places=places, api_calls=1)


def slug(name):
    return name.lower().replace(" ", "-")


class FakeEnricher:
    """'-0' names get a good domain and a SERP email, '-1' a dead domain,
    the shared business a low-confidence domain."""

    def __init__(self):
        self.calls = []
        self.pause = None   # (service, job_id) to pause on first call

    async def enrich(self, business):
        self.calls.append(business.name)
        if self.pause is not None:
            service, job_id = self.pause
            self.pause = None
            await service.pause_job(job_id)

        name = slug(business.name)
        if business.name == "Shared Clinic":
            result = EnrichmentResult(domain="shared.com", domain_confidence=50)
        elif name.endswith("-1"):
            result = EnrichmentResult(domain=f"dead-{name}.com", domain_confidence=90)
        else:
            result = EnrichmentResult(
                domain=f"{name}.com", domain_confidence=90,
                email=f"office@{name}.com", email_confidence=80,
            )
        return EnrichmentOutcome(business_id=business.id, result=result, serp_calls=1, llm_calls=1)


class FakeScrapeBatch:
    def __init__(self, scraper):
        self.scraper = scraper

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.scraper.closed += 1

    async def scrape_domain(self, domain):
        self.scraper.calls.append(domain)
        if domain.startswith("dead-"):
            return ScrapeResult(domain=domain, error=ScrapeErrorCode.DOMAIN_NOT_FOUND)
        return ScrapeResult(domain=domain, email=f"info@{domain}", phone="(212) 555-0100")


class FakeScraper:
    def __init__(self):
        self.calls = []
        self.closed = 0

    def batch(self, **overrides):
        return FakeScrapeBatch(self)


def make_verifier():
    record = MagicMock()
    record.preference = 10
    record.exchange = "mx.example.com."
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=[record])
    return EmailVerifier(resolver=resolver)


def crash_on(repo, method, call_number):
    """Make repo.method raise on its Nth call. Returns a restore function."""
    original = getattr(repo, method)
    calls = {"n": 0}

    async def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == call_number:
            raise RuntimeError("simulated crash")
        return await original(*args, **kwargs)

    setattr(repo, method, wrapper)
    return lambda: setattr(repo, method, original)


def snapshot(repo):
    fields = ("serp_domain", "serp_email", "domain_email", "domain_phone", "scrape_error",
              "domain_email_verify_status", "serp_email_verify_status")
    return {b["place_id"]: {f: b[f] for f in fields} for b in repo.businesses.values()}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def zip_csv(tmp_path):
    path = tmp_path / "zip_codes.csv"
    path.write_text(ZIP_CSV)
    return path


@pytest.fixture
def build(zip_csv):
    def _build(repo, places=None, enricher=None, scraper=None, **config):
        settings = {"places_batch_size": 2, "scrape_batch_size": 2, **config}
        return Service(
            repo=repo,
            zip_index=ZipCodeIndex(zip_csv),
            places=places or FakePlaces(),
            enricher=enricher or FakeEnricher(),
            scraper=scraper or FakeScraper(),
            verifier=make_verifier(),
            config=PipelineConfig(**settings),
        )
    return _build


async def submit(service, repo, tier="PRO", **overrides):
    user_id = repo.add_user(tier=tier)
    submission = {"business_type": "chiropractor", "geography": ["nc"], "zip_percentage": 50, **overrides}
    return await service.start_job(submission, user_id)


# =============================================================================
# START JOB
# =============================================================================

@pytest.mark.no_db
class TestStartJob:
    """Tests for start_job."""

    @pytest.mark.asyncio
    async def test_creates_pending_job(self, build):
        """Should create a PENDING job and count it against the user."""
        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo, tier="FREE")

        job = await service.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.current_step == PipelineStep.PENDING
        assert job.geography == ["NC"]
        assert job.min_domain_confidence == 70
        assert repo.users[job.user_id]["jobs_created"] == 1

    @pytest.mark.asyncio
    async def test_free_tier_single_job(self, build):
        """Should reject a second job on the free tier."""
        repo = FakeRepo()
        service = build(repo)
        user_id = repo.add_user(tier="FREE", jobs_created=1)

        with pytest.raises(TierLimitError):
            await service.start_job({"business_type": "dentist", "geography": ["NC"]}, user_id)
        assert repo.jobs == {}

    @pytest.mark.asyncio
    async def test_free_tier_geography_limits(self, build):
        """Should reject multiple states and nationwide on the free tier."""
        repo = FakeRepo()
        service = build(repo)
        user_id = repo.add_user(tier="FREE")

        with pytest.raises(TierLimitError):
            await service.start_job({"business_type": "dentist", "geography": ["NC", "SC"]}, user_id)
        with pytest.raises(TierLimitError):
            await service.start_job({"business_type": "dentist", "geography": ["nationwide"]}, user_id)

    @pytest.mark.asyncio
    async def test_invalid_submission(self, build):
        """Should reject malformed geography before touching the store."""
        repo = FakeRepo()
        service = build(repo)
        user_id = repo.add_user()

        with pytest.raises(ValidationError):
            await service.start_job({"business_type": "dentist", "geography": ["North Carolina"]}, user_id)

    @pytest.mark.asyncio
    async def test_unknown_user(self, build):
        """Should raise for a missing user."""
        service = build(FakeRepo())
        with pytest.raises(ScrapenationError) as exc:
            await service.start_job({"business_type": "dentist", "geography": ["NC"]}, 999)
        assert exc.value.code == "USER_NOT_FOUND"


# =============================================================================
# EXECUTE JOB
# =============================================================================

@pytest.mark.no_db
class TestExecuteJob:
    """Tests for an uninterrupted execute_job run."""

    @pytest.mark.asyncio
    async def test_full_run(self, build):
        """Should run every stage and record counters and cost."""
        repo = FakeRepo()
        scraper = FakeScraper()
        service = build(repo, scraper=scraper)
        job_id = await submit(service, repo)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.current_step == PipelineStep.COMPLETED
        assert job.selected_zips == TOP_HALF_NC
        assert job.processed_zips == sorted(TOP_HALF_NC)
        assert job.total_zips == job.zips_processed == 3
        # 2 per ZIP plus the shared one
        assert job.businesses_found == 7
        assert job.businesses_enriched == 7
        # shared.com is below the confidence threshold
        assert job.businesses_scraped == 6
        assert job.emails_verified == 3
        assert (job.places_api_calls, job.serp_api_calls, job.llm_api_calls) == (3, 7, 7)
        assert float(job.estimated_cost) == pytest.approx(0.117)
        assert job.errors_encountered == 0
        assert "shared.com" not in scraper.calls
        assert scraper.closed == 1

        b = repo.businesses[repo.by_place["27610-0"]]
        assert b["domain_email"] == "info@clinic-27610-0.com"
        assert b["domain_email_verify_status"] == "valid"
        assert b["serp_email_verify_status"] == "valid"
        dead = repo.businesses[repo.by_place["27610-1"]]
        assert dead["scrape_error"] == ScrapeErrorCode.DOMAIN_NOT_FOUND
        assert dead["domain_email"] is None

    @pytest.mark.asyncio
    async def test_links_and_grants(self, build):
        """Should link every business once and grant the owner access."""
        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo)
        await service.execute_job(job_id)

        user_id = repo.jobs[job_id]["user_id"]
        assert len(repo.job_links) == 7
        assert not any(repo.job_links.values())
        assert len([u for u, _ in repo.user_links if u == user_id]) == 7

    @pytest.mark.asyncio
    async def test_completed_job_is_noop(self, build):
        """Should do nothing when the job already completed."""
        repo = FakeRepo()
        places = FakePlaces()
        service = build(repo, places=places)
        job_id = await submit(service, repo)
        await service.execute_job(job_id)
        calls = len(places.calls)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert len(places.calls) == calls

    @pytest.mark.asyncio
    async def test_missing_job(self, build):
        """Should raise JobNotFoundError."""
        service = build(FakeRepo())
        with pytest.raises(JobNotFoundError):
            await service.execute_job(404)

    @pytest.mark.asyncio
    async def test_free_tier_zip_cap(self, build):
        """Should cap the selection at the tier's ZIP limit."""
        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo, tier="FREE", zip_percentage=100)

        job = await service.execute_job(job_id)

        assert job.total_zips == 5
        assert len(job.selected_zips) == 5

    @pytest.mark.asyncio
    async def test_uncovered_state_fails_job(self, build):
        """Should fail the job when the geography has no ZIP codes in the dataset."""
        repo = FakeRepo()
        places = FakePlaces()
        service = build(repo, places=places)
        job_id = await submit(service, repo, geography=["wa"])

        with pytest.raises(ScrapenationError) as exc:
            await service.execute_job(job_id)

        assert exc.value.code == "NO_ZIP_CODES"
        assert exc.value.context["available_states"] == ["NC", "SC"]
        row = repo.jobs[job_id]
        assert row["status"] == "FAILED"
        assert "WA" in row["error_log"]
        assert row["current_step"] == "pending"
        assert places.calls == []


class HeartbeatRepo(FakeRepo):
    """Records how many heartbeats landed before each sub-batch was saved."""

    def __init__(self):
        super().__init__()
        self.touches_at_discovery_save = []
        self.touches_at_scrape_save = []
        self._scrape_start = 0

    async def save_discovered(self, *args, **kwargs):
        self.touches_at_discovery_save.append(self.touches)
        return await super().save_discovered(*args, **kwargs)

    async def get_businesses_to_scrape(self, job_id, min_confidence):
        self._scrape_start = self.touches
        return await super().get_businesses_to_scrape(job_id, min_confidence)

    async def save_scrape_results(self, results):
        self.touches_at_scrape_save.append(self.touches - self._scrape_start)
        await super().save_scrape_results(results)


@pytest.mark.no_db
class TestHeartbeat:
    """Tests for progress heartbeats inside long sub-batches."""

    @pytest.mark.asyncio
    async def test_touches_per_tile_and_domain(self, build):
        """Should record progress for every tile and domain before the sub-batch is saved."""
        repo = HeartbeatRepo()
        service = build(repo, places_batch_size=2, scrape_batch_size=25, scrape_concurrency=1)
        job_id = await submit(service, repo)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        # 3 tiles in sub-batches of 2
        assert repo.touches_at_discovery_save == [2, 3]
        # 6 domains in one sub-batch
        assert repo.touches_at_scrape_save == [6]
        assert repo.jobs[job_id]["last_progress_at"] is not None

    @pytest.mark.asyncio
    async def test_slow_batch_not_reset_as_stalled(self, build):
        """Should keep a job with per-item progress out of the stall reset."""
        repo = HeartbeatRepo()
        service = build(repo, scrape_batch_size=25)
        job_id = await submit(service, repo)
        await service.claim_pending_jobs(1)
        repo.jobs[job_id]["last_progress_at"] = datetime.now(timezone.utc) - timedelta(minutes=5)

        await service.execute_job(job_id)
        repo.jobs[job_id]["status"] = "RUNNING"

        assert await service.reset_stalled_jobs(120) == []


# =============================================================================
# RESUME
# =============================================================================

@pytest.mark.no_db
class TestResume:
    """Crash at each checkpoint, resume, and compare with an uninterrupted run."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,call_number,checkpoint", [
        ("save_selected_zips", 1, "pending"),
        ("save_discovered", 2, "zips"),
        ("save_enrichment", 3, "places"),
        ("save_scrape_results", 2, "enrichment"),
        ("save_verifications", 1, "scraping"),
        ("complete_job", 1, "scraping"),
    ])
    async def test_crash_then_resume_matches_clean_run(self, build, method, call_number, checkpoint):
        """Should converge on the same businesses and status after a crash."""
        clean_repo = FakeRepo()
        clean = build(clean_repo)
        clean_job = await clean.execute_job(await submit(clean, clean_repo))

        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo)
        restore = crash_on(repo, method, call_number)

        with pytest.raises(RuntimeError, match="simulated crash"):
            await service.execute_job(job_id)

        failed = await service.get_job(job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_log == "simulated crash"
        assert failed.current_step == checkpoint

        restore()
        assert await service.resume_job(job_id) is True
        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert snapshot(repo) == snapshot(clean_repo)
        assert job.businesses_found == clean_job.businesses_found
        assert job.businesses_scraped == clean_job.businesses_scraped
        assert job.processed_zips == clean_job.processed_zips

    @pytest.mark.asyncio
    async def test_stall_reset_reruns_without_double_work(self, build):
        """Should not re-enrich or re-scrape rows already filled."""
        repo = FakeRepo()
        enricher = FakeEnricher()
        scraper = FakeScraper()
        service = build(repo, enricher=enricher, scraper=scraper)
        job_id = await submit(service, repo)
        restore = crash_on(repo, "save_verifications", 1)
        with pytest.raises(RuntimeError):
            await service.execute_job(job_id)
        restore()
        enriched, scraped = len(enricher.calls), len(scraper.calls)

        # watchdog puts the job back to PENDING
        repo.jobs[job_id]["status"] = "PENDING"
        await service.execute_job(job_id)

        assert len(enricher.calls) == enriched
        assert len(scraper.calls) == scraped

    @pytest.mark.asyncio
    async def test_resume_only_failed_or_paused(self, build):
        """Should refuse to resume a completed job."""
        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo)
        await service.execute_job(job_id)

        assert await service.resume_job(job_id) is False


# =============================================================================
# DEDUP
# =============================================================================

@pytest.mark.no_db
class TestDedup:
    """Tests for cross-job business reuse."""

    @pytest.mark.asyncio
    async def test_second_job_reuses_businesses(self, build):
        """Should insert each place once and mark the second job's links reused."""
        repo = FakeRepo()
        service = build(repo)
        first = await submit(service, repo)
        await service.execute_job(first)
        second = await submit(service, repo)

        job = await service.execute_job(second)

        assert len(repo.businesses) == 7
        assert job.businesses_found == 7
        first_links = [r for (j, _), r in repo.job_links.items() if j == first]
        second_links = [r for (j, _), r in repo.job_links.items() if j == second]
        assert first_links and not any(first_links)
        assert len(second_links) == 7 and all(second_links)


# =============================================================================
# PARTIAL FAILURES
# =============================================================================

@pytest.mark.no_db
class TestPartialFailures:
    """Tests for item-level failures and early stops."""

    @pytest.mark.asyncio
    async def test_quota_stops_discovery(self, build):
        """Should stop discovery on quota, note it, and finish the job."""
        repo = FakeRepo()
        places = FakePlaces(quota_zips={"28269"})
        service = build(repo, places=places, places_batch_size=1, places_concurrency=1)
        job_id = await submit(service, repo)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.processed_zips == ["27610"]
        assert "28277" not in places.calls
        assert "Quota exceeded for Google Places API" in job.error_log
        assert job.businesses_found == 3
        # 1 for 27610 plus the page billed before the quota error
        assert job.places_api_calls == 2

    @pytest.mark.asyncio
    async def test_failed_tile_is_item_level(self, build):
        """Should count a failing tile and keep going."""
        repo = FakeRepo()
        service = build(repo, places=FakePlaces(failing_zips={"28269"}))
        job_id = await submit(service, repo)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.errors_encountered == 1
        assert job.processed_zips == ["27610", "28277"]
        assert job.places_api_calls == 3

    @pytest.mark.asyncio
    async def test_failed_enrichment_left_for_retry(self, build):
        """Should count enrichment failures and leave the row unenriched."""
        repo = FakeRepo()
        enricher = FakeEnricher()
        original = enricher.enrich

        async def flaky(business):
            if business.name == "Shared Clinic":
                return EnrichmentOutcome(business_id=business.id, serp_calls=1, error=RuntimeError("llm down"))
            return await original(business)

        enricher.enrich = flaky
        service = build(repo, enricher=enricher)
        job_id = await submit(service, repo)

        job = await service.execute_job(job_id)

        assert job.errors_encountered == 1
        assert job.businesses_enriched == 6
        assert repo.businesses[repo.by_place["shared"]]["serp_enriched_at"] is None
        assert job.serp_api_calls == 7
        assert job.llm_api_calls == 6


# =============================================================================
# PAUSE / CANCEL
# =============================================================================

@pytest.mark.no_db
class TestPauseCancel:
    """Tests for stage-boundary pause and cancel."""

    @pytest.mark.asyncio
    async def test_pause_observed_at_stage_boundary(self, build):
        """Should finish the running stage, stop, then resume to completion."""
        repo = FakeRepo()
        enricher = FakeEnricher()
        scraper = FakeScraper()
        service = build(repo, enricher=enricher, scraper=scraper)
        job_id = await submit(service, repo)
        enricher.pause = (service, job_id)

        job = await service.execute_job(job_id)

        assert job.status == JobStatus.PAUSED
        assert job.current_step == PipelineStep.ENRICHMENT
        assert job.businesses_enriched == 7
        assert scraper.calls == []

        assert await service.resume_job(job_id) is True
        job = await service.execute_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.businesses_scraped == 6

    @pytest.mark.asyncio
    async def test_cancelled_job_never_runs(self, build):
        """Should not run any stage of a cancelled job."""
        repo = FakeRepo()
        places = FakePlaces()
        service = build(repo, places=places)
        job_id = await submit(service, repo)

        assert await service.cancel_job(job_id) is True
        job = await service.execute_job(job_id)

        assert job.status == JobStatus.CANCELLED
        assert places.calls == []
        assert await service.cancel_job(job_id) is False

    @pytest.mark.asyncio
    async def test_pause_only_active_jobs(self, build):
        """Should not pause a completed job."""
        repo = FakeRepo()
        service = build(repo)
        job_id = await submit(service, repo)
        await service.execute_job(job_id)

        assert await service.pause_job(job_id) is False


# =============================================================================
# WORKER QUEUE
# =============================================================================

@pytest.mark.no_db
class TestWorkerQueue:
    """Tests for claiming and stall recovery."""

    @pytest.mark.asyncio
    async def test_claim_oldest_first(self, build):
        """Should claim up to the limit, oldest first, and mark them RUNNING."""
        repo = FakeRepo()
        service = build(repo)
        first = await submit(service, repo)
        second = await submit(service, repo)
        await submit(service, repo)

        assert await service.claim_pending_jobs(2) == [first, second]
        assert repo.jobs[first]["status"] == "RUNNING"
        assert await service.claim_pending_jobs(0) == []

    @pytest.mark.asyncio
    async def test_reset_stalled(self, build):
        """Should put RUNNING jobs without recent progress back to PENDING."""
        repo = FakeRepo()
        service = build(repo)
        stalled = await submit(service, repo)
        fresh = await submit(service, repo)
        await service.claim_pending_jobs(2)
        repo.jobs[stalled]["last_progress_at"] = datetime.now(timezone.utc) - timedelta(minutes=5)
        repo.jobs[fresh]["last_progress_at"] = datetime.now(timezone.utc)

        assert await service.reset_stalled_jobs(120) == [stalled]
        assert repo.jobs[stalled]["status"] == "PENDING"
        assert repo.jobs[fresh]["status"] == "RUNNING"
