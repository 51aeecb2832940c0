from typing import Optional

from pydantic import BaseModel, field_validator


class ExportFilters(BaseModel):
    """Optional narrowing of a user's export."""

    job_id: Optional[int] = None
    state: Optional[str] = None
    business_type: Optional[str] = None
    has_email: bool = False
    has_phone: bool = False

    @field_validator("state")
    @classmethod
    def upper_state(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value else None

    @field_validator("business_type")
    @classmethod
    def strip_business_type(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() or None if value else None


class ExportResult(BaseModel):
    path: str
    row_count: int
    duplicates_removed: int = 0
    s3_uri: Optional[str] = None
