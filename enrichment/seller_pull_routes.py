"""
Seller Pull API Routes

Provides endpoints for:
- Starting a storefront pull for a country's seller (runs in background)
- Listing and reading pull jobs (stuck jobs are failed on read)
- Importing the selected products, then scraping them
- Importing the selected variations
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from enrichment.auth import get_current_user
from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import JobStateConflictError, JobValidationError
from enrichment.jobs.job_types import (
    COUNTRIES_TABLE,
    FAMILY_TABLES,
    CreateSellerPullRequest,
    JobFamily,
    JobKind,
    SellerActionResponse,
    SellerImportRequest,
    SellerImportVariationsRequest,
    SellerPullStatus as SP,
)
from enrichment.jobs.runner import run_job_background
from enrichment.jobs.state_machine import active_statuses, assert_transition, expire_if_stale, is_terminal
from enrichment.jobs.store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/seller-pull", tags=["seller-pull"])

FAMILY = JobFamily.SELLER_PULL


def get_store() -> JobStore:
    return JobStore(FAMILY_TABLES[FAMILY])


def _watch(store: JobStore, record: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    return expire_if_stale(
        store, FAMILY, record, timedelta(minutes=settings.seller_pull_stale_minutes)
    )


def _advance(store: JobStore, record: Dict[str, Any], target: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Status-guarded move into a runner state."""
    assert_transition(FAMILY, record.get("status"), target)
    updated = store.update(
        record["id"],
        {**fields, "status": target, "error_message": None},
        expected_status=[record["status"]]
    )
    if updated is None:
        latest = store.get(record["id"]) or {}
        raise JobStateConflictError(
            f"Job changed before it could move to '{target}'", current_status=latest.get("status")
        )
    return updated


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=SellerActionResponse)
async def create_seller_pull(
    request: CreateSellerPullRequest,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
):
    """
    Start a pull of the configured seller's storefront.

    Only one job per country may be active; if one exists it is returned
    instead of starting another.
    """
    if not request.country_id:
        raise JobValidationError("country_id is required")

    active = store.find(
        eq={"country_id": request.country_id},
        in_={"status": active_statuses(FAMILY)},
        order_by="created_at",
        desc=True
    )
    for job in active:
        job = _watch(store, job, settings)
        if not is_terminal(FAMILY, job.get("status")):
            logger.info(f"Returning active seller pull {job['id']} for country {request.country_id}")
            return SellerActionResponse(job_id=str(job["id"]), status=job["status"], existing=True)

    seller_id = settings.seller_ids.get(request.country_id)
    if not seller_id:
        raise JobValidationError("No seller configured for this country")

    country = JobStore(COUNTRIES_TABLE, supabase=store.supabase, touch_updated_at=False)\
        .require(request.country_id, label="Country")
    if not country.get("amazon_domain"):
        raise JobValidationError("Country has no marketplace domain")

    job = store.insert({
        "country_id": request.country_id,
        "seller_id": seller_id,
        "status": SP.PULLING.value,
        "created_by": user["id"],
    })

    run_job_background(JobKind.SELLER_PULL, job["id"])
    logger.info(f"Started seller pull {job['id']} for seller {seller_id}")
    return SellerActionResponse(job_id=str(job["id"]), status=job["status"])


@router.get("")
async def list_seller_pulls(
    country_id: Optional[str] = None,
    limit: int = Query(default=10, le=50),
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
) -> List[Dict[str, Any]]:
    """Newest pull jobs; stuck ones are failed on read."""
    jobs = store.find(
        eq={"country_id": country_id} if country_id else None,
        order_by="created_at",
        desc=True,
        limit=limit
    )
    return [_watch(store, job, settings) for job in jobs]


@router.get("/{job_id}")
async def get_seller_pull(
    job_id: str,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
):
    job = store.require(job_id)
    return _watch(store, job, settings)


@router.post("/{job_id}/import", response_model=SellerActionResponse)
async def import_products(
    job_id: str,
    request: SellerImportRequest,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store)
):
    """Import the selected products, then scrape them in the background."""
    job = store.require(job_id)
    selected = [a.strip().upper() for a in request.selected_asins if a and a.strip()]
    if not selected:
        raise JobValidationError("selected_asins must not be empty")

    updated = _advance(store, job, SP.IMPORTING.value, {
        "selected_asins": selected,
        "product_categories": request.product_categories,
    })

    run_job_background(JobKind.SELLER_IMPORT, job_id)
    return SellerActionResponse(job_id=str(job_id), status=updated["status"])


@router.post("/{job_id}/import-variations", response_model=SellerActionResponse)
async def import_variations(
    job_id: str,
    request: SellerImportVariationsRequest,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store)
):
    """Import the chosen variations in the background. An empty choice finishes the job."""
    job = store.require(job_id)
    updated = _advance(store, job, SP.IMPORTING_VARIATIONS.value, {
        "selected_variations": list(dict.fromkeys(request.selected_variations)),
    })

    run_job_background(JobKind.SELLER_IMPORT_VARIATIONS, job_id)
    return SellerActionResponse(job_id=str(job_id), status=updated["status"])
