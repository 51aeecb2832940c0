"""Job status and pipeline step state machine."""

from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Statuses a running stage checks for at its boundary.
STOP_STATUSES = (JobStatus.PAUSED, JobStatus.CANCELLED)


class PipelineStep(str, Enum):
    """Checkpointed stages, in execution order."""

    PENDING = "pending"
    ZIPS = "zips"
    PLACES = "places"
    ENRICHMENT = "enrichment"
    SCRAPING = "scraping"
    COMPLETED = "completed"


STEP_ORDER = [
    PipelineStep.PENDING,
    PipelineStep.ZIPS,
    PipelineStep.PLACES,
    PipelineStep.ENRICHMENT,
    PipelineStep.SCRAPING,
    PipelineStep.COMPLETED,
]


def next_step(step: PipelineStep) -> Optional[PipelineStep]:
    """Step after `step`, or None once completed."""
    index = STEP_ORDER.index(PipelineStep(step))
    if index + 1 >= len(STEP_ORDER):
        return None
    return STEP_ORDER[index + 1]


def has_passed(current: PipelineStep, step: PipelineStep) -> bool:
    """True when `step`'s checkpoint is already recorded (current is at or past it)."""
    return STEP_ORDER.index(PipelineStep(current)) >= STEP_ORDER.index(PipelineStep(step))


# Cost per API call in USD
class ApiCost:
    PLACES = 0.032
    SERP = 0.002
    LLM = 0.001


def estimate_cost(places_calls: int, serp_calls: int, llm_calls: int) -> float:
    return round(
        places_calls * ApiCost.PLACES + serp_calls * ApiCost.SERP + llm_calls * ApiCost.LLM,
        4,
    )
