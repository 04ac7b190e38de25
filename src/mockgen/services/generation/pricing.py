"""Credit pricing and dispatch priority for generation jobs."""

import math

from mockgen.models.generation_job import JobType
from mockgen.models.mockup import MockupQuality

BASE_CREDITS = {
    JobType.GENERATION: 10,
    JobType.VARIATION: 5,
    JobType.UPSCALE: 3,
}

QUALITY_MULTIPLIERS = {
    MockupQuality.DRAFT: 0.5,
    MockupQuality.STANDARD: 1.0,
    MockupQuality.PREMIUM: 1.5,
    MockupQuality.ULTRA: 2.0,
}

# Lower value is dispatched first
BASE_PRIORITY = {
    JobType.GENERATION: 100,
    JobType.VARIATION: 120,
    JobType.UPSCALE: 140,
}

TIER_PRIORITY_BOOST = {
    "starter": 0,
    "growth": 20,
    "pro": 40,
}


def calculate_credits(job_type: JobType, quality: MockupQuality, variations: int = 1) -> int:
    """Credits charged for a job.

    Args:
        job_type: Kind of work
        quality: Output quality tier
        variations: Number of images produced by the job

    Returns:
        Credit cost, rounded up to a whole credit

    Raises:
        ValueError: If variations is less than 1
    """
    if variations < 1:
        raise ValueError("variations must be at least 1")
    return math.ceil(BASE_CREDITS[job_type] * QUALITY_MULTIPLIERS[quality] * variations)


def calculate_job_priority(job_type: JobType, subscription_tier: str | None = None) -> int:
    """Dispatch priority for a job; paid tiers move ahead in the queue.

    Unknown tiers get no boost.
    """
    boost = TIER_PRIORITY_BOOST.get((subscription_tier or "starter").lower(), 0)
    return BASE_PRIORITY[job_type] - boost
