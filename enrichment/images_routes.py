"""
Image Generation API Routes

Batch generation runs a few prompts at a time; each prompt succeeds or fails
on its own.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends

from enrichment.auth import get_current_user
from enrichment.clients.image_generation import ASPECT_RATIOS, ImageGenerationClient, generate_batch
from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import JobValidationError
from enrichment.jobs.job_types import BatchImageRequest, BatchImageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/images", tags=["images"])


def get_image_client() -> ImageGenerationClient:
    return ImageGenerationClient()


@router.post("/batch", response_model=BatchImageResponse)
async def generate_images(
    request: BatchImageRequest,
    user: Dict = Depends(get_current_user),
    client: ImageGenerationClient = Depends(get_image_client),
    settings: Settings = Depends(get_settings)
):
    if not request.prompts:
        raise JobValidationError("prompts must not be empty")
    if request.orientation not in ASPECT_RATIOS:
        raise JobValidationError(f"orientation must be one of {', '.join(sorted(ASPECT_RATIOS))}")

    prompts = sorted(request.prompts, key=lambda p: p.position if p.position is not None else 0)
    response = await generate_batch(
        client, prompts, request.orientation, concurrency=settings.image_batch_concurrency
    )
    logger.info(f"Image batch: {response.succeeded} succeeded, {response.failed} failed")
    return response
