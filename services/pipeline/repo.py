"""Pipeline Repository - database operations for jobs and their businesses."""

from typing import List, Optional, Sequence, Tuple

from db.client import queries, get_conn, get_transaction
from db.models.business import (
    BusinessToEnrich,
    BusinessToScrape,
    EmailToVerify,
    NewBusiness,
)
from db.models.job import Job
from db.models.user import User
from db.queries.batch import (
    BATCH_SAVE_DOMAIN_EMAIL_VERIFICATION,
    BATCH_SAVE_SCRAPE_RESULTS,
    BATCH_SAVE_SERP_EMAIL_VERIFICATION,
    GRANT_USER_BUSINESSES,
    INSERT_BUSINESSES,
    LINK_JOB_BUSINESSES,
)
from services.pipeline.enrichment import EnrichmentResult
from services.pipeline.models import JobSubmission
from services.scraping.models import ScrapeResult
from services.verification.email_verifier import VerificationResult


class PipelineRepo:
    """Database operations for the pipeline orchestrator and worker."""

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: int) -> Optional[User]:
        async with get_conn() as conn:
            result = await queries.get_user(conn, user_id=user_id)
            return User.model_validate(dict(result)) if result else None

    async def insert_user(self, email: str, tier: str = "FREE") -> int:
        async with get_conn() as conn:
            return await queries.insert_user(conn, email=email, tier=tier)

    async def delete_user(self, user_id: int) -> None:
        async with get_conn() as conn:
            await queries.delete_user(conn, user_id=user_id)

    async def increment_jobs_created(self, user_id: int) -> None:
        async with get_conn() as conn:
            await queries.increment_jobs_created(conn, user_id=user_id)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create_job(self, user_id: int, submission: JobSubmission) -> int:
        async with get_conn() as conn:
            return await queries.insert_job(
                conn,
                user_id=user_id,
                business_type=submission.business_type,
                geography=submission.geography,
                zip_percentage=submission.zip_percentage,
                min_domain_confidence=submission.min_domain_confidence,
            )

    async def get_job(self, job_id: int) -> Optional[Job]:
        async with get_conn() as conn:
            result = await queries.get_job(conn, job_id=job_id)
            return Job.model_validate(dict(result)) if result else None

    async def get_job_status(self, job_id: int) -> Optional[str]:
        async with get_conn() as conn:
            return await queries.get_job_status(conn, job_id=job_id)

    async def list_jobs(self, limit: int = 20, status: Optional[str] = None) -> List[Job]:
        async with get_conn() as conn:
            results = await queries.list_jobs(conn, status=status, limit=limit)
            return [Job.model_validate(dict(row)) for row in results]

    async def delete_job(self, job_id: int) -> None:
        async with get_conn() as conn:
            await queries.delete_job(conn, job_id=job_id)

    async def claim_pending_jobs(self, limit: int) -> List[int]:
        """Atomically mark up to `limit` PENDING jobs RUNNING, oldest first."""
        async with get_conn() as conn:
            results = await queries.claim_pending_jobs(conn, limit=limit)
            return [row["id"] for row in results]

    async def reset_stalled_jobs(self, stall_seconds: float) -> List[int]:
        """RUNNING jobs with no progress for `stall_seconds` go back to PENDING."""
        async with get_conn() as conn:
            results = await queries.reset_stalled_jobs(conn, stall_seconds=float(stall_seconds))
            return [row["id"] for row in results]

    async def update_job_status(self, job_id: int, status: str) -> None:
        async with get_conn() as conn:
            await queries.update_job_status(conn, job_id=job_id, status=status)

    async def transition_job_status(self, job_id: int, status: str, from_statuses: Sequence[str]) -> bool:
        """Set status only if the job is currently in one of `from_statuses`."""
        async with get_conn() as conn:
            result = await queries.transition_job_status(
                conn, job_id=job_id, status=status, from_statuses=list(from_statuses)
            )
            return result is not None

    async def resume_job(self, job_id: int) -> bool:
        async with get_conn() as conn:
            return await queries.resume_job(conn, job_id=job_id) is not None

    async def advance_job_step(self, job_id: int, step: str) -> None:
        async with get_conn() as conn:
            await queries.advance_job_step(conn, job_id=job_id, step=step)

    async def save_selected_zips(self, job_id: int, zip_codes: List[str]) -> None:
        async with get_conn() as conn:
            await queries.save_selected_zips(conn, job_id=job_id, zips=zip_codes)

    async def add_api_calls(self, job_id: int, places: int = 0, serp: int = 0, llm: int = 0) -> None:
        if not (places or serp or llm):
            return
        async with get_conn() as conn:
            await queries.add_api_calls(conn, job_id=job_id, places=places, serp=serp, llm=llm)

    async def add_job_errors(self, job_id: int, count: int = 1) -> None:
        if count <= 0:
            return
        async with get_conn() as conn:
            await queries.add_job_errors(conn, job_id=job_id, count=count)

    async def touch_job(self, job_id: int) -> None:
        async with get_conn() as conn:
            await queries.touch_job(conn, job_id=job_id)

    async def append_job_note(self, job_id: int, note: str) -> None:
        async with get_conn() as conn:
            await queries.append_job_note(conn, job_id=job_id, note=note)

    async def refresh_job_counters(self, job_id: int) -> None:
        async with get_conn() as conn:
            await queries.refresh_job_counters(conn, job_id=job_id)

    async def complete_job(self, job_id: int, estimated_cost: float, verification_time_ms: Optional[int] = None) -> None:
        async with get_conn() as conn:
            await queries.complete_job(
                conn,
                job_id=job_id,
                estimated_cost=estimated_cost,
                verification_time_ms=verification_time_ms,
            )

    async def fail_job(self, job_id: int, error: str) -> None:
        async with get_conn() as conn:
            await queries.fail_job(conn, job_id=job_id, error=error)

    # =========================================================================
    # Discovery
    # =========================================================================

    async def save_discovered(
        self,
        job_id: int,
        user_id: Optional[int],
        businesses: List[NewBusiness],
        processed_zips: List[str],
        places_api_calls: int,
    ) -> int:
        """Persist one discovery sub-batch atomically.

        Inserts new businesses, links all of them to the job (was_reused for rows
        that already existed), grants the owner access, checkpoints the tiles and
        bumps the API counter. Returns the number of newly inserted businesses.
        """
        unique = list({b.place_id: b for b in businesses}.values())
        place_ids = [b.place_id for b in unique]

        async with get_transaction() as conn:
            new_place_ids: List[str] = []
            if unique:
                rows = await conn.fetch(
                    INSERT_BUSINESSES,
                    place_ids,
                    [b.name for b in unique],
                    [b.formatted_address for b in unique],
                    [b.latitude for b in unique],
                    [b.longitude for b in unique],
                    [b.rating for b in unique],
                    [b.user_ratings_total for b in unique],
                    [b.price_level for b in unique],
                    [",".join(b.types) for b in unique],
                    [b.business_type for b in unique],
                    [b.city for b in unique],
                    [b.state for b in unique],
                    [b.postal_code for b in unique],
                )
                new_place_ids = [row["place_id"] for row in rows]
                await conn.execute(LINK_JOB_BUSINESSES, job_id, place_ids, new_place_ids)
                if user_id is not None:
                    await conn.execute(GRANT_USER_BUSINESSES, user_id, job_id, place_ids)

            if processed_zips:
                await queries.mark_zips_processed(conn, job_id=job_id, zips=processed_zips)
            if places_api_calls:
                await queries.add_api_calls(conn, job_id=job_id, places=places_api_calls, serp=0, llm=0)
            await queries.refresh_job_counters(conn, job_id=job_id)

        return len(new_place_ids)

    async def get_job_business_links(self, job_id: int) -> List[Tuple[str, bool]]:
        """(place_id, was_reused) for every business linked to the job."""
        async with get_conn() as conn:
            results = await queries.get_job_business_links(conn, job_id=job_id)
            return [(row["place_id"], row["was_reused"]) for row in results]

    async def delete_business_by_place_id(self, place_id: str) -> None:
        async with get_conn() as conn:
            await queries.delete_business_by_place_id(conn, place_id=place_id)

    # =========================================================================
    # Enrichment
    # =========================================================================

    async def get_businesses_to_enrich(self, job_id: int) -> List[BusinessToEnrich]:
        async with get_conn() as conn:
            results = await queries.get_businesses_to_enrich(conn, job_id=job_id)
            return [BusinessToEnrich.model_validate(dict(row)) for row in results]

    async def save_enrichment(self, business_id: int, result: EnrichmentResult) -> None:
        """Record the enrichment attempt; rows already enriched are left alone."""
        async with get_conn() as conn:
            await queries.save_enrichment(
                conn,
                business_id=business_id,
                domain=result.domain,
                domain_confidence=result.domain_confidence,
                email=result.email,
                email_confidence=result.email_confidence,
                phone=result.phone,
                phone_confidence=result.phone_confidence,
            )

    # =========================================================================
    # Scraping
    # =========================================================================

    async def get_businesses_to_scrape(self, job_id: int, min_confidence: float) -> List[BusinessToScrape]:
        async with get_conn() as conn:
            results = await queries.get_businesses_to_scrape(
                conn, job_id=job_id, min_confidence=float(min_confidence)
            )
            return [BusinessToScrape.model_validate(dict(row)) for row in results]

    async def save_scrape_results(self, results: List[Tuple[int, ScrapeResult]]) -> None:
        """Persist a scrape sub-batch. A stored domain_email is never overwritten."""
        if not results:
            return
        rows = [(business_id, r.email, r.phone, r.error) for business_id, r in results]
        async with get_transaction() as conn:
            await conn.executemany(BATCH_SAVE_SCRAPE_RESULTS, rows)

    # =========================================================================
    # Verification
    # =========================================================================

    async def get_emails_to_verify(self, job_id: int) -> List[EmailToVerify]:
        async with get_conn() as conn:
            results = await queries.get_emails_to_verify(conn, job_id=job_id)
            return [EmailToVerify.model_validate(dict(row)) for row in results]

    async def save_verifications(
        self,
        domain_results: List[Tuple[int, VerificationResult]],
        serp_results: List[Tuple[int, VerificationResult]],
    ) -> None:
        def rows(results):
            return [
                (business_id, r.verified, r.status.value, r.details.model_dump_json())
                for business_id, r in results
            ]

        if not domain_results and not serp_results:
            return
        async with get_transaction() as conn:
            if domain_results:
                await conn.executemany(BATCH_SAVE_DOMAIN_EMAIL_VERIFICATION, rows(domain_results))
            if serp_results:
                await conn.executemany(BATCH_SAVE_SERP_EMAIL_VERIFICATION, rows(serp_results))
