"""Pipeline orchestrator.

Drives a job through pending -> zips -> places -> enrichment -> scraping ->
completed. current_step records the last stage whose work is durable; each
call to execute_job skips those stages and re-derives the remaining work from
rows that are still unfilled, so calling it again after a crash or a stall
reset converges on the same result.
"""

import time
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from db.models.business import BusinessToScrape
from db.models.job import Job
from lib.batch import chunked, iter_batch
from lib.errors import (
    JobNotFoundError,
    QuotaExceededError,
    ScrapenationError,
    get_error_message,
    log_error,
)
from services.pipeline.constants import (
    STOP_STATUSES,
    JobStatus,
    PipelineStep,
    estimate_cost,
    has_passed,
)
from services.pipeline.enrichment import Enricher
from services.pipeline.models import NATIONWIDE, JobSubmission, PipelineConfig
from services.pipeline.places import PlacesClient, PlacesSearchResult
from services.pipeline.repo import PipelineRepo
from services.pipeline.tier_limits import check_can_create_job, check_job_config, max_zips_for
from services.pipeline.zipcodes import ZipCode, ZipCodeIndex
from services.scraping.constants import ScrapeErrorCode
from services.scraping.domain_scraper import DomainScraper
from services.scraping.models import ScrapeResult
from services.verification.email_verifier import EmailItem, EmailVerifier, VerificationResult

# Counter refresh cadence during enrichment
REFRESH_EVERY = 10


class IService(ABC):
    """Pipeline Service - submit, run and control enrichment jobs."""

    @abstractmethod
    async def start_job(self, submission: Union[JobSubmission, Dict[str, Any]], user_id: int) -> int:
        """Validate a submission against the user's tier and create a PENDING job.

        Raises pydantic.ValidationError or TierLimitError.
        """
        pass

    @abstractmethod
    async def execute_job(self, job_id: int) -> Job:
        """Run the remaining stages of a job. Safe to call repeatedly."""
        pass

    @abstractmethod
    async def pause_job(self, job_id: int) -> bool:
        """Pause a PENDING or RUNNING job. Observed at the next stage boundary."""
        pass

    @abstractmethod
    async def cancel_job(self, job_id: int) -> bool:
        """Cancel a job that has not completed."""
        pass

    @abstractmethod
    async def resume_job(self, job_id: int) -> bool:
        """Put a FAILED or PAUSED job back in the queue."""
        pass

    @abstractmethod
    async def get_job(self, job_id: int) -> Optional[Job]:
        pass

    @abstractmethod
    async def claim_pending_jobs(self, limit: int) -> List[int]:
        """Mark up to `limit` PENDING jobs RUNNING for this worker, oldest first."""
        pass

    @abstractmethod
    async def reset_stalled_jobs(self, stall_seconds: float) -> List[int]:
        """Send RUNNING jobs without recent progress back to PENDING."""
        pass


class Service(IService):
    def __init__(
        self,
        repo: Optional[PipelineRepo] = None,
        zip_index: Optional[ZipCodeIndex] = None,
        places: Optional[PlacesClient] = None,
        enricher: Optional[Enricher] = None,
        scraper: Optional[DomainScraper] = None,
        verifier: Optional[EmailVerifier] = None,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self._repo = repo or PipelineRepo()
        self._zip_index = zip_index or ZipCodeIndex()
        self._places = places or PlacesClient()
        self._enricher = enricher or Enricher()
        self._scraper = scraper or DomainScraper()
        self._verifier = verifier or EmailVerifier()
        self.config = config or PipelineConfig()

    # =========================================================================
    # Job control
    # =========================================================================

    async def start_job(self, submission: Union[JobSubmission, Dict[str, Any]], user_id: int) -> int:
        if not isinstance(submission, JobSubmission):
            submission = JobSubmission.model_validate(submission)

        user = await self._repo.get_user(user_id)
        if user is None:
            raise ScrapenationError("User not found", code="USER_NOT_FOUND", context={"user_id": user_id})

        check_can_create_job(user)
        check_job_config(user, submission)

        job_id = await self._repo.create_job(user_id, submission)
        await self._repo.increment_jobs_created(user_id)
        logger.info(
            f"Created job {job_id}: '{submission.business_type}' in {', '.join(submission.geography)} "
            f"(top {submission.zip_percentage}% ZIPs, min confidence {submission.min_domain_confidence})"
        )
        return job_id

    async def pause_job(self, job_id: int) -> bool:
        changed = await self._repo.transition_job_status(
            job_id, JobStatus.PAUSED.value, [JobStatus.PENDING.value, JobStatus.RUNNING.value]
        )
        logger.info(f"Job {job_id}: pause {'requested' if changed else 'ignored'}")
        return changed

    async def cancel_job(self, job_id: int) -> bool:
        changed = await self._repo.transition_job_status(
            job_id,
            JobStatus.CANCELLED.value,
            [JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value, JobStatus.FAILED.value],
        )
        logger.info(f"Job {job_id}: cancel {'requested' if changed else 'ignored'}")
        return changed

    async def resume_job(self, job_id: int) -> bool:
        changed = await self._repo.resume_job(job_id)
        if changed:
            logger.info(f"Job {job_id}: back to PENDING")
        return changed

    async def get_job(self, job_id: int) -> Optional[Job]:
        return await self._repo.get_job(job_id)

    async def claim_pending_jobs(self, limit: int) -> List[int]:
        if limit <= 0:
            return []
        return await self._repo.claim_pending_jobs(limit)

    async def reset_stalled_jobs(self, stall_seconds: float) -> List[int]:
        job_ids = await self._repo.reset_stalled_jobs(stall_seconds)
        if job_ids:
            logger.warning(f"Reset {len(job_ids)} stalled job(s) to PENDING for resume: {job_ids}")
        return job_ids

    async def close(self) -> None:
        await self._places.close()
        await self._enricher.close()

    # =========================================================================
    # Execution
    # =========================================================================

    def _stages(self) -> List[Tuple[PipelineStep, Callable[[Job], Awaitable[None]]]]:
        return [
            (PipelineStep.ZIPS, self._select_zips),
            (PipelineStep.PLACES, self._discover),
            (PipelineStep.ENRICHMENT, self._enrich),
            (PipelineStep.SCRAPING, self._scrape),
            (PipelineStep.COMPLETED, self._finalize),
        ]

    async def _load_job(self, job_id: int) -> Job:
        job = await self._repo.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        return job

    async def _should_stop(self, job_id: int) -> bool:
        status = await self._repo.get_job_status(job_id)
        return status in STOP_STATUSES

    async def execute_job(self, job_id: int) -> Job:
        job = await self._load_job(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.PAUSED):
            logger.info(f"Job {job_id}: status {job.status}, nothing to do")
            return job
        if job.status != JobStatus.RUNNING:
            await self._repo.update_job_status(job_id, JobStatus.RUNNING.value)

        current = PipelineStep(job.current_step)
        logger.info(f"Job {job_id}: starting from checkpoint '{current.value}'")

        try:
            for step, stage in self._stages():
                if has_passed(current, step):
                    continue
                if await self._should_stop(job_id):
                    logger.info(f"Job {job_id}: stopped before '{step.value}'")
                    return await self._load_job(job_id)

                logger.info(f"Job {job_id}: stage '{step.value}'")
                await stage(await self._load_job(job_id))
                await self._repo.advance_job_step(job_id, step.value)
                current = step
        except Exception as e:
            log_error(e, job_id=job_id, step=current.value)
            await self._repo.fail_job(job_id, get_error_message(e))
            raise

        job = await self._load_job(job_id)
        logger.info(
            f"Job {job_id}: completed | found={job.businesses_found} enriched={job.businesses_enriched} "
            f"scraped={job.businesses_scraped} errors={job.errors_encountered} cost=${job.estimated_cost}"
        )
        return job

    # -------------------------------------------------------------------------
    # Stage 1: ZIP selection
    # -------------------------------------------------------------------------

    async def _select_zips(self, job: Job) -> None:
        max_zips = None
        if job.user_id is not None:
            user = await self._repo.get_user(job.user_id)
            if user is not None:
                max_zips = max_zips_for(user.tier)

        nationwide = [g.lower() for g in job.geography] == [NATIONWIDE]
        zips = self._zip_index.select(
            states=None if nationwide else job.geography,
            top_percent=job.zip_percentage,
            nationwide=nationwide,
            max_zips=max_zips,
        )
        if not zips:
            available = self._zip_index.available_states()
            raise ScrapenationError(
                f"No ZIP codes for {', '.join(job.geography)} (dataset covers: {', '.join(available)})",
                code="NO_ZIP_CODES",
                context={"geography": job.geography, "available_states": available},
            )
        await self._repo.save_selected_zips(job.id, [z.zip_code for z in zips])
        logger.info(f"Job {job.id}: selected {len(zips)} ZIP codes")

    # -------------------------------------------------------------------------
    # Stage 2: Places discovery
    # -------------------------------------------------------------------------

    async def _search_tile(self, tile: ZipCode, business_type: str) -> PlacesSearchResult:
        return await self._places.search_nearby(
            latitude=tile.latitude,
            longitude=tile.longitude,
            radius_meters=tile.search_radius_meters,
            keyword=business_type,
            fallback_city=tile.city or None,
            fallback_state=tile.state or None,
            fallback_postal_code=tile.zip_code,
        )

    async def _discover(self, job: Job) -> None:
        done = set(job.processed_zips)
        tiles = [t for t in self._zip_index.get_many(job.selected_zips) if t.zip_code not in done]
        logger.info(f"Job {job.id}: {len(tiles)} ZIP tiles to search ({len(done)} already done)")

        for chunk in chunked(tiles, self.config.places_batch_size):
            found = []
            searched: List[str] = []
            api_calls = 0
            errors = 0
            quota: Optional[QuotaExceededError] = None

            outcomes = iter_batch(
                chunk,
                lambda tile: self._search_tile(tile, job.business_type),
                concurrency=self.config.places_concurrency,
            )
            async with aclosing(outcomes):
                async for outcome in outcomes:
                    tile = outcome.item
                    if outcome.ok:
                        found.extend(outcome.value.places)
                        api_calls += outcome.value.api_calls
                        searched.append(tile.zip_code)
                    elif isinstance(outcome.error, QuotaExceededError):
                        quota = outcome.error
                        api_calls += quota.context.get("api_calls", 0)
                    else:
                        errors += 1
                        if isinstance(outcome.error, ScrapenationError):
                            api_calls += outcome.error.context.get("api_calls", 0)
                        log_error(outcome.error, job_id=job.id, zip_code=tile.zip_code)
                    await self._repo.touch_job(job.id)

            new_count = await self._repo.save_discovered(job.id, job.user_id, found, searched, api_calls)
            await self._repo.add_job_errors(job.id, errors)
            logger.info(
                f"Job {job.id}: searched {len(searched)}/{len(chunk)} tiles, "
                f"{len(found)} places ({new_count} new)"
            )

            if quota is not None:
                note = f"Discovery stopped early: {quota.message}"
                logger.warning(f"Job {job.id}: {note}")
                await self._repo.append_job_note(job.id, note)
                break

    # -------------------------------------------------------------------------
    # Stage 3: SERP + LLM enrichment
    # -------------------------------------------------------------------------

    async def _enrich(self, job: Job) -> None:
        businesses = await self._repo.get_businesses_to_enrich(job.id)
        logger.info(f"Job {job.id}: {len(businesses)} businesses to enrich")

        completed = 0
        outcomes = iter_batch(
            businesses, self._enricher.enrich, concurrency=self.config.enrichment_concurrency
        )
        async with aclosing(outcomes):
            async for outcome in outcomes:
                completed += 1
                if not outcome.ok:
                    log_error(outcome.error, job_id=job.id, business_id=outcome.item.id)
                    await self._repo.add_job_errors(job.id, 1)
                    continue

                enriched = outcome.value
                await self._repo.add_api_calls(job.id, serp=enriched.serp_calls, llm=enriched.llm_calls)
                if enriched.ok:
                    await self._repo.save_enrichment(enriched.business_id, enriched.result)
                else:
                    await self._repo.add_job_errors(job.id, 1)

                if completed % REFRESH_EVERY == 0:
                    await self._repo.refresh_job_counters(job.id)

        await self._repo.refresh_job_counters(job.id)

    # -------------------------------------------------------------------------
    # Stage 4: Domain scraping
    # -------------------------------------------------------------------------

    async def _scrape(self, job: Job) -> None:
        rows = await self._repo.get_businesses_to_scrape(job.id, job.min_domain_confidence)
        logger.info(
            f"Job {job.id}: {len(rows)} domains to scrape (confidence >= {job.min_domain_confidence})"
        )
        if not rows:
            return

        async with self._scraper.batch(concurrency=self.config.scrape_concurrency) as batch:
            for chunk in chunked(rows, self.config.scrape_batch_size):
                results: List[Tuple[int, ScrapeResult]] = []

                async def scrape(row: BusinessToScrape) -> ScrapeResult:
                    return await batch.scrape_domain(row.serp_domain)

                outcomes = iter_batch(chunk, scrape, concurrency=self.config.scrape_concurrency)
                async with aclosing(outcomes):
                    async for outcome in outcomes:
                        row = outcome.item
                        if outcome.ok:
                            results.append((row.id, outcome.value))
                        else:
                            log_error(outcome.error, job_id=job.id, domain=row.serp_domain)
                            results.append((row.id, ScrapeResult(
                                domain=row.serp_domain, error=ScrapeErrorCode.UNKNOWN_ERROR,
                            )))
                        # Results are saved per sub-batch; keep the stall check quiet meanwhile
                        await self._repo.touch_job(job.id)

                await self._repo.save_scrape_results(results)
                await self._repo.refresh_job_counters(job.id)
                emails = sum(1 for _, r in results if r.email)
                logger.info(f"Job {job.id}: scraped {len(results)} domains, {emails} emails")

    # -------------------------------------------------------------------------
    # Finalize: verification + cost
    # -------------------------------------------------------------------------

    async def _verify_emails(self, job: Job) -> Optional[int]:
        """Verify emails that have no verification status yet. Returns elapsed ms."""
        rows = await self._repo.get_emails_to_verify(job.id)
        items: List[EmailItem] = []
        for row in rows:
            if row.domain_email and row.domain_email_verify_status is None:
                items.append(EmailItem(id=f"domain:{row.id}", email=row.domain_email))
            if row.serp_email and row.serp_email_verify_status is None:
                items.append(EmailItem(id=f"serp:{row.id}", email=row.serp_email))
        if not items:
            return None

        started = time.monotonic()
        events = self._verifier.iter_verify_emails(items, concurrency=self.config.verify_concurrency)
        async with aclosing(events):
            async for event in events:
                domain_results: List[Tuple[int, VerificationResult]] = []
                serp_results: List[Tuple[int, VerificationResult]] = []
                for key, result in event.results.items():
                    source, business_id = str(key).split(":", 1)
                    target = domain_results if source == "domain" else serp_results
                    target.append((int(business_id), result))
                await self._repo.save_verifications(domain_results, serp_results)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Job {job.id}: verified {len(items)} emails in {elapsed_ms}ms")
        return elapsed_ms

    async def _finalize(self, job: Job) -> None:
        verification_ms = None
        if self.config.verify_emails:
            verification_ms = await self._verify_emails(job)

        await self._repo.refresh_job_counters(job.id)
        job = await self._load_job(job.id)
        cost = estimate_cost(job.places_api_calls, job.serp_api_calls, job.llm_api_calls)
        await self._repo.complete_job(job.id, cost, verification_ms)
