from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class Business(BaseModel):
    """Business discovered through the places API, keyed by place_id."""

    id: int
    place_id: str
    name: str
    formatted_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    price_level: Optional[int] = None
    types: List[str] = []
    business_type: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    # SERP + LLM enrichment
    serp_domain: Optional[str] = None
    serp_domain_confidence: Optional[float] = None
    serp_email: Optional[str] = None
    serp_email_confidence: Optional[float] = None
    serp_phone: Optional[str] = None
    serp_phone_confidence: Optional[float] = None
    serp_enriched_at: Optional[datetime] = None

    # Domain scrape
    domain_email: Optional[str] = None
    domain_phone: Optional[str] = None
    scrape_error: Optional[str] = None
    scraped_at: Optional[datetime] = None

    # Verification
    domain_email_verified: Optional[bool] = None
    domain_email_verify_status: Optional[str] = None
    serp_email_verified: Optional[bool] = None
    serp_email_verify_status: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class NewBusiness(BaseModel):
    """A places result ready to insert (no id yet)."""

    place_id: str
    name: str
    formatted_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    price_level: Optional[int] = None
    types: List[str] = []
    business_type: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


class BusinessToEnrich(BaseModel):
    id: int
    name: str
    city: Optional[str] = None
    state: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BusinessToScrape(BaseModel):
    id: int
    serp_domain: str

    model_config = ConfigDict(from_attributes=True)


class EmailToVerify(BaseModel):
    id: int
    domain_email: Optional[str] = None
    serp_email: Optional[str] = None
    domain_email_verify_status: Optional[str] = None
    serp_email_verify_status: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ExportRow(BaseModel):
    """Flattened business for CSV export, email/phone already coalesced."""

    name: str
    city: Optional[str] = None
    state: Optional[str] = None
    rating: Optional[float] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    formatted_address: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
