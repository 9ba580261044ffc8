"""
Q&A Extraction API Routes

Worker endpoints (shared API key):
- GET  /queue  claim the next item
- POST /queue  report an item's outcome

User endpoints:
- Create, list, read and cancel extraction jobs
- Queue status for the extension popup
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from enrichment.auth import get_current_user, verify_worker
from enrichment.jobs.job_types import (
    ClaimResponse,
    CreateExtractionJobRequest,
    QueueStatusResponse,
    ReportResponse,
    WorkerReportRequest,
)
from enrichment.jobs.worker_queue import WorkerQueue, get_worker_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/qna-extraction", tags=["qna-extraction"])


# =============================================================================
# WORKER PROTOCOL
# =============================================================================

@router.get("/queue", response_model=ClaimResponse)
async def claim_item(queue: WorkerQueue = Depends(verify_worker)):
    """Hand the worker its next item; `item` is null when there is no work."""
    return ClaimResponse(item=queue.claim_next())


@router.post("/queue", response_model=ReportResponse)
async def report_item(
    report: WorkerReportRequest,
    queue: WorkerQueue = Depends(verify_worker)
):
    return queue.report_outcome(report)


@router.get("/queue/status", response_model=QueueStatusResponse)
async def queue_status(queue: WorkerQueue = Depends(verify_worker)):
    return queue.queue_status()


# =============================================================================
# JOB MANAGEMENT
# =============================================================================

@router.post("/jobs")
async def create_extraction_job(
    request: CreateExtractionJobRequest,
    user: Dict = Depends(get_current_user),
    queue: WorkerQueue = Depends(get_worker_queue)
):
    """Create a job from manual ASINs or a completed market intelligence record."""
    return queue.create_job(request, user_id=user["id"])


@router.get("/jobs")
async def list_extraction_jobs(
    limit: int = Query(default=50, le=200),
    user: Dict = Depends(get_current_user),
    queue: WorkerQueue = Depends(get_worker_queue)
) -> List[Dict[str, Any]]:
    return queue.list_jobs(limit=limit)


@router.get("/jobs/{job_id}")
async def get_extraction_job(
    job_id: str,
    user: Dict = Depends(get_current_user),
    queue: WorkerQueue = Depends(get_worker_queue)
):
    return queue.get_job_detail(job_id)


@router.delete("/jobs/{job_id}")
async def cancel_extraction_job(
    job_id: str,
    user: Dict = Depends(get_current_user),
    queue: WorkerQueue = Depends(get_worker_queue)
):
    """
    Cancel a job. Pending items are skipped; items a worker already holds
    may still report, but the job stays cancelled.
    """
    return queue.cancel_job(job_id)
