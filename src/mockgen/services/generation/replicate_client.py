"""Replicate client for mockup generation with error classification."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from mockgen.models.generation_job import GenerationJob, JobType
from mockgen.models.mockup import Mockup, MockupQuality
from mockgen.services.exceptions import (
    ContentPolicyError,
    GenerationRejectedError,
    GenerationUnavailableError,
    ServiceError,
)

logger = structlog.get_logger(__name__)

MAX_PROMPT_LENGTH = 1000

# Per-quality model inputs (ultra renders at premium resolution with more steps)
QUALITY_SETTINGS: dict[MockupQuality, dict[str, Any]] = {
    MockupQuality.DRAFT: {"width": 512, "height": 512, "num_inference_steps": 20, "guidance_scale": 7},
    MockupQuality.STANDARD: {
        "width": 1024,
        "height": 1024,
        "num_inference_steps": 30,
        "guidance_scale": 7.5,
    },
    MockupQuality.PREMIUM: {
        "width": 1536,
        "height": 1536,
        "num_inference_steps": 50,
        "guidance_scale": 8,
    },
    MockupQuality.ULTRA: {
        "width": 1536,
        "height": 1536,
        "num_inference_steps": 60,
        "guidance_scale": 8,
    },
}


@dataclass(frozen=True)
class GenerationOutput:
    """Result of a successful generation call."""

    image_url: str
    prediction_id: Optional[str] = None
    generation_time_ms: int = 0


# The scheduler only depends on this call shape
GenerateFn = Callable[[GenerationJob, Mockup], Awaitable[GenerationOutput]]


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified service error instance

    Classification rules:
        - Timeout errors → GenerationUnavailableError
        - 429 (rate limit) → GenerationUnavailableError
        - 5xx (service unavailable) → GenerationUnavailableError
        - 401/403 (authentication) → GenerationRejectedError
        - Content policy violations → ContentPolicyError
        - Connection errors → GenerationUnavailableError
        - Anything else → GenerationRejectedError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or "timed out" in error_message_lower:
        return GenerationUnavailableError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return GenerationUnavailableError(f"Rate limit exceeded: {error_message}")

    if (
        "500" in error_message
        or "502" in error_message
        or "503" in error_message
        or "504" in error_message
        or "service unavailable" in error_message_lower
    ):
        return GenerationUnavailableError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return GenerationRejectedError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return GenerationUnavailableError(f"Connection error: {error_message}")

    return GenerationRejectedError(f"Permanent error: {error_message}")


def build_model_input(job: GenerationJob, mockup: Mockup) -> dict[str, Any]:
    """Replicate input payload for a job.

    Raises:
        GenerationRejectedError: If the prompt is empty or too long
    """
    prompt = mockup.prompt
    if not prompt or not prompt.strip():
        raise GenerationRejectedError("Prompt cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise GenerationRejectedError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    model_input: dict[str, Any] = {
        "prompt": prompt,
        **QUALITY_SETTINGS[MockupQuality(mockup.quality)],
        "scheduler": "K_EULER_ANCESTRAL",
        "refine": "expert_ensemble_refiner",
        "high_noise_frac": 0.8,
        "apply_watermark": False,
    }

    negative_prompt = job.params.get("negative_prompt")
    if negative_prompt:
        model_input["negative_prompt"] = negative_prompt

    if mockup.source_image_url:
        model_input["image"] = mockup.source_image_url
        # Upscales stay close to the source image
        model_input["prompt_strength"] = 0.3 if job.job_type == JobType.UPSCALE else 0.8

    seed = job.params.get("seed")
    if seed is not None:
        model_input["seed"] = seed

    return model_input


def _extract_image_url(output: Any) -> str:
    if isinstance(output, list) and len(output) > 0:
        return str(output[0])
    if isinstance(output, str) and output:
        return output
    raise GenerationRejectedError(f"Unexpected output format from Replicate: {type(output)}")


class ReplicateGenerator:
    """Runs a job's prediction on Replicate and waits for the result.

    The Replicate SDK is synchronous, so each prediction runs in a worker thread.
    """

    def __init__(self, api_token: str, model_version: str):
        self.api_token = api_token
        self.model_version = model_version

    async def __call__(self, job: GenerationJob, mockup: Mockup) -> GenerationOutput:
        """Generate the image for ``mockup``.

        Raises:
            GenerationUnavailableError: Temporary failure, should retry
            ContentPolicyError: Prompt or image refused by the model's safety filter
            GenerationRejectedError: Permanent failure, should not retry
        """
        if not self.api_token:
            raise GenerationRejectedError("REPLICATE_API_TOKEN not configured")

        model_input = build_model_input(job, mockup)
        # "owner/model:version" or a bare version id
        version = self.model_version.split(":", 1)[-1]
        start_time = time.monotonic()

        def _run_prediction() -> Any:
            client = replicate.Client(api_token=self.api_token)
            prediction = client.predictions.create(version=version, input=model_input)
            prediction.wait()
            return prediction

        try:
            prediction = await asyncio.to_thread(_run_prediction)
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        if prediction.status != "succeeded":
            reason = prediction.error or f"prediction {prediction.status}"
            logger.warning(
                "replicate.prediction.unsuccessful",
                job_id=str(job.id),
                prediction_id=prediction.id,
                status=prediction.status,
                error=str(reason),
            )
            raise classify_error(RuntimeError(str(reason)))

        image_url = _extract_image_url(prediction.output)
        return GenerationOutput(
            image_url=image_url,
            prediction_id=prediction.id,
            generation_time_ms=int((time.monotonic() - start_time) * 1000),
        )
