"""
Market Intelligence API Routes

Provides endpoints for:
- Creating a research job from keywords and a marketplace
- Starting product collection (runs in background)
- Selecting products to analyze, or resuming a failed analysis
- Listing, reading and deleting research records
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
    AnalysisStep,
    CreateMarketIntelligenceRequest,
    JobFamily,
    JobKind,
    MarketIntelligenceStatus as MI,
    SelectAsinsRequest,
    SelectAsinsResponse,
)
from enrichment.jobs.runner import run_job_background
from enrichment.jobs.state_machine import (
    assert_transition,
    expire_if_stale,
    plan_market_intelligence_run,
)
from enrichment.jobs.store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/market-intelligence", tags=["market-intelligence"])

FAMILY = JobFamily.MARKET_INTELLIGENCE


def get_store() -> JobStore:
    return JobStore(FAMILY_TABLES[FAMILY])


def _clamp(value: Optional[int], low: int, high: int, default: int) -> int:
    if value is None:
        return default
    return max(low, min(high, value))


def _watch(store: JobStore, record: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    return expire_if_stale(
        store, FAMILY, record, timedelta(minutes=settings.market_intelligence_stale_minutes)
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("")
async def create_market_intelligence(
    request: CreateMarketIntelligenceRequest,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
):
    """
    Create a research job in `pending`.

    Competitor count and reviews-per-product are clamped to their allowed
    ranges; keywords are trimmed, lower-cased and de-duplicated.
    """
    raw = request.keywords or ([request.keyword] if request.keyword else [])
    keywords = list(dict.fromkeys(k.strip().lower() for k in raw if k and k.strip()))
    if not keywords:
        raise JobValidationError("keyword or keywords is required")
    if not request.country_id:
        raise JobValidationError("country_id is required")

    country = JobStore(COUNTRIES_TABLE, supabase=store.supabase, touch_updated_at=False)\
        .require(request.country_id, label="Country")

    record = store.insert({
        "keyword": keywords[0],
        "keywords": keywords,
        "country_id": request.country_id,
        "marketplace_domain": country.get("amazon_domain"),
        "max_competitors": _clamp(
            request.max_competitors,
            settings.competitors_min, settings.competitors_max, settings.competitors_default
        ),
        "reviews_per_product": _clamp(
            request.reviews_per_product,
            settings.reviews_per_product_min, settings.reviews_per_product_max,
            settings.reviews_per_product_default
        ),
        "status": MI.PENDING.value,
        "progress": {"step": MI.PENDING.value, "current": 0, "total": 0,
                     "message": None, "completed_phases": []},
        "scrape_calls_used": 0,
        "tokens_used": 0,
        "created_by": user["id"],
    })
    logger.info(f"Created market intelligence {record['id']} for {len(keywords)} keyword(s)")
    return record


@router.get("")
async def list_market_intelligence(
    search: Optional[str] = None,
    country_id: Optional[str] = None,
    limit: int = Query(default=20, le=100),
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
) -> List[Dict[str, Any]]:
    """Newest research records, optionally filtered by keyword and country."""
    records = store.find(
        eq={"country_id": country_id} if country_id else None,
        ilike={"keyword": f"%{search.strip()}%"} if search and search.strip() else None,
        order_by="created_at",
        desc=True,
        limit=limit
    )
    return [_watch(store, r, settings) for r in records]


@router.get("/{record_id}")
async def get_market_intelligence(
    record_id: str,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    settings: Settings = Depends(get_settings)
):
    """Get a research record. A stuck background run is failed on read."""
    record = store.require(record_id, label="Market Intelligence record")
    return _watch(store, record, settings)


@router.delete("/{record_id}")
async def delete_market_intelligence(
    record_id: str,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store)
):
    store.require(record_id, label="Market Intelligence record")
    store.delete(record_id)
    logger.info(f"Deleted market intelligence {record_id}")
    return {"success": True}


@router.post("/{record_id}/collect")
async def start_collection(
    record_id: str,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store)
):
    """
    Start keyword search and product lookups in the background.
    Returns immediately; poll the record for progress.
    """
    record = store.require(record_id, label="Market Intelligence record")
    assert_transition(FAMILY, record.get("status"), MI.COLLECTING.value)

    updated = store.update(
        record_id,
        {
            "status": MI.COLLECTING.value,
            "error_message": None,
            "progress": {"step": "keyword_search", "current": 0,
                         "total": len(record.get("keywords") or [record.get("keyword")]),
                         "message": "Starting product collection...", "completed_phases": []},
        },
        expected_status=[record["status"]]
    )
    if updated is None:
        latest = store.get(record_id) or {}
        raise JobStateConflictError("Record changed while starting collection", current_status=latest.get("status"))

    run_job_background(JobKind.MI_COLLECT, record_id)
    return {"status": updated["status"], "progress": updated["progress"]}


@router.post("/{record_id}/select", response_model=SelectAsinsResponse)
async def select_asins(
    record_id: str,
    request: Optional[SelectAsinsRequest] = None,
    user: Dict = Depends(get_current_user),
    store: JobStore = Depends(get_store)
):
    """
    Confirm the products to analyze, or resume a failed analysis.

    Legal only from `awaiting_selection` or `failed`. Without selected_asins
    the previously saved selection is reused. On resume, saved review data
    and completed phases are reused; otherwise collection restarts.
    """
    record = store.require(record_id, label="Market Intelligence record")
    plan = plan_market_intelligence_run(record, request.selected_asins if request else None)

    updates: Dict[str, Any] = {
        "status": MI.ANALYZING.value,
        "selected_asins": plan.selected_asins,
        "error_message": None,
        "progress": plan.progress(),
    }
    if not plan.skips_collection:
        updates.update(reviews_data=None, questions_data=None, phase_results=None,
                       analysis_result=None)
    elif plan.start_step == AnalysisStep.PHASE_1.value:
        updates.update(phase_results=None, analysis_result=None)

    updated = store.update(record_id, updates, expected_status=[record["status"]])
    if updated is None:
        latest = store.get(record_id) or {}
        raise JobStateConflictError(
            "Record changed while starting analysis", current_status=latest.get("status")
        )

    run_job_background(
        JobKind.MI_ANALYZE,
        record_id,
        {"start_step": plan.start_step, "completed_phases": plan.completed_phases}
    )
    logger.info(
        f"Market intelligence {record_id}: {len(plan.selected_asins)} ASINs, "
        f"{'resume' if plan.is_resume else 'start'} at {plan.start_step}"
    )

    return SelectAsinsResponse(
        status=MI.ANALYZING.value,
        selected_count=len(plan.selected_asins),
        is_resume=plan.is_resume,
        resume_step=plan.start_step,
    )
