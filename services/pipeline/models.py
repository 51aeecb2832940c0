"""Pipeline models: job submission and stage tunables."""

from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

NATIONWIDE = "nationwide"


class JobSubmission(BaseModel):
    """A request to run the pipeline for one business type over a geography."""

    business_type: str = Field(min_length=1, max_length=100)
    geography: List[str] = Field(min_length=1)
    zip_percentage: int = Field(default=30, ge=1, le=100)
    min_domain_confidence: int = Field(default=70, ge=0, le=100)

    @field_validator("business_type")
    @classmethod
    def strip_business_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Business type is required")
        return value

    @field_validator("geography")
    @classmethod
    def normalize_geography(cls, value: List[str]) -> List[str]:
        if len(value) == 1 and value[0].strip().lower() == NATIONWIDE:
            return [NATIONWIDE]
        states = [s.strip().upper() for s in value]
        if not all(len(s) == 2 and s.isalpha() for s in states):
            raise ValueError('Geography must be either ["nationwide"] or a list of 2-letter state codes')
        return list(dict.fromkeys(states))

    @property
    def is_nationwide(self) -> bool:
        return self.geography == [NATIONWIDE]


class PipelineConfig(BaseModel):
    """Concurrency and sub-batch sizes per stage."""
    model_config = ConfigDict(frozen=True)

    places_concurrency: int = 5
    places_batch_size: int = 10
    enrichment_concurrency: int = 5
    scrape_batch_size: int = 25
    scrape_concurrency: int = 5
    verify_emails: bool = True
    verify_concurrency: int = 10
