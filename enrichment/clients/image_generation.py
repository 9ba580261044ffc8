"""
Image generation over the Gemini image model, plus the batch fan-out used by
the images endpoint.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import ExternalServiceError
from enrichment.jobs.job_types import BatchImagePrompt, BatchImageResponse, ImageResult
from enrichment.jobs.utils import gather_settled

logger = logging.getLogger(__name__)

SERVICE_NAME = "image_generation"

ASPECT_RATIOS = {
    "square": "1:1",
    "portrait": "3:4",
    "landscape": "4:3",
}


class ImageGenerationClient:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[genai.Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    def _genai(self) -> genai.Client:
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise ExternalServiceError(SERVICE_NAME, "Gemini API key is not configured")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    async def generate(self, prompt: str, orientation: str = "square") -> Dict[str, Any]:
        """Generate one image. Returns {mime_type, image_base64, model}."""
        try:
            response = await self._genai().aio.models.generate_images(
                model=self.settings.image_model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    aspect_ratio=ASPECT_RATIOS.get(orientation, "1:1"),
                ),
            )
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(SERVICE_NAME, str(e)) from e

        images = response.generated_images or []
        if not images or not images[0].image or not images[0].image.image_bytes:
            raise ExternalServiceError(SERVICE_NAME, "No image returned")

        image = images[0].image
        return {
            "mime_type": image.mime_type or "image/png",
            "image_base64": base64.b64encode(image.image_bytes).decode("ascii"),
            "model": self.settings.image_model,
        }


async def generate_batch(
    client: ImageGenerationClient,
    prompts: List[BatchImagePrompt],
    orientation: str = "square",
    concurrency: int = 3
) -> BatchImageResponse:
    """
    Generate every prompt, `concurrency` at a time. Each prompt succeeds or
    fails on its own; failures are reported per label.
    """
    async def _one(item: BatchImagePrompt) -> Dict[str, Any]:
        image = await client.generate(item.prompt, orientation)
        return {**image, "prompt": item.prompt, "position": item.position}

    settled = await gather_settled(prompts, _one, concurrency=concurrency)

    results: List[ImageResult] = []
    for outcome in settled:
        if outcome.ok:
            results.append(ImageResult(label=outcome.item.label, image=outcome.value))
        else:
            logger.error(f"Batch image failed [{outcome.item.label}]: {outcome.error}")
            results.append(ImageResult(label=outcome.item.label, error=str(outcome.error) or "Generation failed"))

    succeeded = sum(1 for r in results if r.image is not None)
    return BatchImageResponse(results=results, succeeded=succeeded, failed=len(results) - succeeded)
