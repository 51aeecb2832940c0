from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class Job(BaseModel):
    """Pipeline job row. Counters only ever move forward."""

    id: int
    user_id: Optional[int] = None

    # Submission
    business_type: str
    geography: List[str]
    zip_percentage: int = 30
    min_domain_confidence: int = 70

    # State machine
    status: str = "PENDING"
    current_step: str = "pending"

    # Checkpoints
    selected_zips: List[str] = []
    processed_zips: List[str] = []

    # Progress
    total_zips: int = 0
    zips_processed: int = 0
    businesses_found: int = 0
    businesses_enriched: int = 0
    businesses_scraped: int = 0
    emails_verified: int = 0
    errors_encountered: int = 0

    # API usage
    places_api_calls: int = 0
    serp_api_calls: int = 0
    llm_api_calls: int = 0
    estimated_cost: Decimal = Decimal("0")
    verification_time_ms: Optional[int] = None

    error_log: Optional[str] = None
    last_progress_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
