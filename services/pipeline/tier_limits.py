"""Per-tier limits on job creation and job size."""

import math
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from db.models.user import User
from lib.errors import TierLimitError
from services.pipeline.models import JobSubmission


class TierLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_jobs: float
    max_zips_per_job: float
    max_states_per_job: float
    allow_nationwide: bool


TIER_LIMITS: Dict[str, TierLimits] = {
    "FREE": TierLimits(max_jobs=1, max_zips_per_job=5, max_states_per_job=1, allow_nationwide=False),
    "PRO": TierLimits(max_jobs=math.inf, max_zips_per_job=math.inf, max_states_per_job=math.inf, allow_nationwide=True),
}


def get_limits(tier: str) -> TierLimits:
    return TIER_LIMITS.get((tier or "FREE").upper(), TIER_LIMITS["FREE"])


def check_can_create_job(user: User) -> None:
    """Raise TierLimitError when the user has used up their job allowance."""
    limits = get_limits(user.tier)
    if user.jobs_created >= limits.max_jobs:
        raise TierLimitError(
            f"You have reached the maximum number of jobs for your tier ({int(limits.max_jobs)}). "
            "Upgrade to Pro for unlimited jobs.",
            context={"user_id": user.id, "tier": user.tier},
        )


def check_job_config(user: User, submission: JobSubmission) -> None:
    """Raise TierLimitError when the submission exceeds the tier's job size."""
    limits = get_limits(user.tier)

    if submission.is_nationwide:
        if not limits.allow_nationwide:
            raise TierLimitError(
                "Nationwide searches are not available on the free tier. Please select a single state.",
                context={"user_id": user.id},
            )
        return

    if len(submission.geography) > limits.max_states_per_job:
        raise TierLimitError(
            f"Free tier is limited to {int(limits.max_states_per_job)} state per job. "
            f"You selected {len(submission.geography)} states.",
            context={"user_id": user.id},
        )


def max_zips_for(tier: str) -> Optional[int]:
    """ZIP cap applied at selection time, None when unlimited."""
    cap = get_limits(tier).max_zips_per_job
    return None if math.isinf(cap) else int(cap)
