"""
Extraction Worker Queue

Pull-based work distribution for the browser-extension extraction worker.
The worker polls for one item at a time and reports the outcome; there is
no push channel. Crashed workers are recovered by resetting stale claims
before every claim.
"""

import logging
import re
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import (
    JobStateConflictError,
    JobValidationError,
    WorkerAuthError,
)
from enrichment.jobs.job_types import (
    COUNTRIES_TABLE,
    EXTRACTION_ITEMS_TABLE,
    FAMILY_TABLES,
    TERMINAL_ITEM_STATUSES,
    ClaimedItem,
    CreateExtractionJobRequest,
    ExtractionJobStatus as EX,
    ItemStatus,
    JobFamily,
    MarketIntelligenceStatus as MI,
    QueueStatusResponse,
    ReportResponse,
    WorkerReportRequest,
)
from enrichment.jobs.state_machine import (
    ACTIVE_EXTRACTION_STATUSES,
    can_transition,
    extraction_terminal_status,
    is_terminal,
)
from enrichment.jobs.store import JobStore
from enrichment.jobs.utils import iso_minutes_ago, utc_now

logger = logging.getLogger(__name__)

ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
DEFAULT_MARKETPLACE = "amazon.com"
REPORTABLE_STATUSES = {ItemStatus.COMPLETED.value, ItemStatus.FAILED.value, ItemStatus.SKIPPED.value}
# A late report for a reclaimed item is still accepted
OPEN_ITEM_STATUSES = [ItemStatus.PENDING.value, ItemStatus.PROCESSING.value]
MI_SOURCE_STATUSES = {MI.COMPLETED.value, MI.COMPLETED_PARTIAL.value}


class WorkerQueue:
    """
    Extraction jobs and their items.

    Job counters (`completed_items`, `failed_items`) are only written through
    the version-guarded update, so concurrent reports never lose an increment.
    """

    def __init__(self, settings: Optional[Settings] = None, supabase=None):
        self.settings = settings or get_settings()
        self.jobs = JobStore(FAMILY_TABLES[JobFamily.EXTRACTION], supabase=supabase)
        self.items = JobStore(EXTRACTION_ITEMS_TABLE, supabase=supabase, touch_updated_at=False)
        self._supabase = supabase

    # =========================================================================
    # Worker authentication
    # =========================================================================

    def authenticate(self, token: Optional[str]) -> None:
        """Compare the worker's bearer credential to the configured key."""
        expected = self.settings.extraction_worker_api_key
        if not expected:
            logger.warning("[Queue] Worker API key is not configured; rejecting worker call")
            raise WorkerAuthError("Invalid or missing API key")
        if not token or not secrets.compare_digest(token.strip().encode(), expected.encode()):
            raise WorkerAuthError("Invalid or missing API key")

    # =========================================================================
    # Claim
    # =========================================================================

    def sweep_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Return items stuck in processing past the stale window to pending."""
        threshold = iso_minutes_ago(self.settings.stale_claim_minutes, now)
        reset = self.items.update_where(
            {"status": ItemStatus.PENDING.value, "started_at": None},
            eq={"status": ItemStatus.PROCESSING.value},
            lt={"started_at": threshold}
        )
        if reset:
            logger.warning(f"[Queue] Reset {len(reset)} stale claim(s) to pending")
        return len(reset)

    def claim_next(self, now: Optional[datetime] = None) -> Optional[ClaimedItem]:
        """
        Hand out the next pending item, or None when there is no work.

        Order: the oldest active jobs (up to claim_job_window), oldest job
        first, then item position within the job.
        """
        self.sweep_stale_claims(now)

        active_jobs = self.jobs.find(
            in_={"status": ACTIVE_EXTRACTION_STATUSES},
            order_by="created_at",
            limit=self.settings.claim_job_window,
            columns="id, status, marketplace_domain, created_at"
        )

        for job in active_jobs:
            candidates = self.items.find(
                eq={"job_id": job["id"], "status": ItemStatus.PENDING.value},
                order_by="position",
                limit=self.settings.claim_candidate_limit,
                columns="id, job_id, asin, position"
            )
            for candidate in candidates:
                claimed = self.items.update(
                    candidate["id"],
                    {"status": ItemStatus.PROCESSING.value, "started_at": (now or utc_now()).isoformat()},
                    expected_status=[ItemStatus.PENDING.value]
                )
                if claimed is None:
                    # Another poll got it first
                    continue

                if job["status"] == EX.QUEUED.value:
                    self.jobs.update(
                        job["id"],
                        {"status": EX.PROCESSING.value},
                        expected_status=[EX.QUEUED.value]
                    )

                logger.info(f"[Queue] Claimed item {candidate['id']} ({candidate['asin']}) of job {job['id']}")
                return ClaimedItem(
                    item_id=str(candidate["id"]),
                    job_id=str(job["id"]),
                    asin=candidate["asin"],
                    marketplace=job.get("marketplace_domain") or DEFAULT_MARKETPLACE,
                    max_questions=self.settings.worker_max_questions,
                )

        return None

    # =========================================================================
    # Report
    # =========================================================================

    def report_outcome(self, report: WorkerReportRequest) -> ReportResponse:
        """
        Record one item's outcome, then bump the job counters and finalize
        the job once every item has an outcome.
        """
        if not report.item_id or not report.status:
            raise JobValidationError("item_id and status are required")
        if report.status not in REPORTABLE_STATUSES:
            raise JobValidationError("status must be completed, failed, or skipped")

        item = self.items.require(report.item_id, label="Item")
        if item["status"] in TERMINAL_ITEM_STATUSES:
            return self._duplicate(item)

        updated = self.items.update(
            item["id"],
            {
                "status": report.status,
                "questions_found": report.questions_found or 0,
                "error_message": report.error_message,
                "completed_at": utc_now().isoformat(),
            },
            expected_status=OPEN_ITEM_STATUSES
        )
        if updated is None:
            latest = self.items.require(report.item_id, label="Item")
            if latest["status"] in TERMINAL_ITEM_STATUSES:
                return self._duplicate(latest)
            raise JobStateConflictError(
                f"Item is '{latest['status']}' and cannot accept a report",
                current_status=latest["status"]
            )

        succeeded = report.status == ItemStatus.COMPLETED.value

        def apply_outcome(job: Dict[str, Any]) -> Dict[str, Any]:
            completed = (job.get("completed_items") or 0) + (1 if succeeded else 0)
            failed = (job.get("failed_items") or 0) + (0 if succeeded else 1)
            updates: Dict[str, Any] = {"completed_items": completed, "failed_items": failed}

            status = job.get("status")
            if is_terminal(JobFamily.EXTRACTION, status):
                # Cancelled (or finished) jobs keep their status
                return updates
            if status == EX.QUEUED.value:
                status = updates["status"] = EX.PROCESSING.value

            final = extraction_terminal_status(
                completed, failed, job.get("total_items") or 0, self.settings.completion_threshold
            )
            if final and can_transition(JobFamily.EXTRACTION, status, final):
                updates["status"] = final
            return updates

        job = self.jobs.update_versioned(
            item["job_id"], apply_outcome, retries=self.settings.counter_update_retries
        )

        if job.get("status") in (EX.COMPLETED.value, EX.COMPLETED_PARTIAL.value):
            logger.info(
                f"[Queue] Job {job['id']} finished as {job['status']} "
                f"({job.get('completed_items')}/{job.get('total_items')} completed)"
            )

        return ReportResponse(
            success=True,
            job_status=job.get("status"),
            completed_items=job.get("completed_items"),
            failed_items=job.get("failed_items"),
            total_items=job.get("total_items"),
        )

    def _duplicate(self, item: Dict[str, Any]) -> ReportResponse:
        logger.info(f"[Queue] Duplicate report for item {item['id']} (already {item['status']})")
        job = self.jobs.get(item["job_id"]) or {}
        return ReportResponse(
            success=True,
            duplicate=True,
            job_status=job.get("status"),
            completed_items=job.get("completed_items"),
            failed_items=job.get("failed_items"),
            total_items=job.get("total_items"),
        )

    # =========================================================================
    # Job management
    # =========================================================================

    def create_job(self, request: CreateExtractionJobRequest, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Create a job with one pending item per distinct ASIN."""
        source = request.source or "manual"
        mi_id = None

        if source == "market_intelligence":
            if not request.market_intelligence_id:
                raise JobValidationError("market_intelligence_id is required")
            mi = JobStore(FAMILY_TABLES[JobFamily.MARKET_INTELLIGENCE], supabase=self._supabase)\
                .require(request.market_intelligence_id, label="Market Intelligence record")
            if mi.get("status") not in MI_SOURCE_STATUSES:
                raise JobStateConflictError("Market Intelligence record must be completed", current_status=mi.get("status"))
            asins = [a for a in (mi.get("selected_asins") or []) if a]
            if not asins:
                raise JobValidationError("Market Intelligence record has no selected ASINs")
            country_id = mi.get("country_id")
            marketplace = mi.get("marketplace_domain") or DEFAULT_MARKETPLACE
            mi_id = mi["id"]

        elif source == "manual":
            if not request.country_id:
                raise JobValidationError("country_id is required")
            if not request.asins:
                raise JobValidationError("asins array is required and must not be empty")
            asins = [a.strip().upper() for a in request.asins if a]
            asins = [a for a in asins if ASIN_PATTERN.match(a)]
            if not asins:
                raise JobValidationError("No valid ASINs provided")
            country = JobStore(COUNTRIES_TABLE, supabase=self._supabase, touch_updated_at=False)\
                .get(request.country_id)
            country_id = request.country_id
            marketplace = (country or {}).get("amazon_domain") or DEFAULT_MARKETPLACE

        else:
            raise JobValidationError(f"Unknown source '{source}'")

        asins = list(dict.fromkeys(asins))

        job = self.jobs.insert({
            "country_id": country_id,
            "marketplace_domain": marketplace,
            "source": source,
            "market_intelligence_id": mi_id,
            "status": EX.QUEUED.value,
            "total_items": len(asins),
            "completed_items": 0,
            "failed_items": 0,
            "version": 0,
            "created_by": user_id,
        })

        try:
            self.items.insert_many([
                {"job_id": job["id"], "asin": asin, "position": i, "status": ItemStatus.PENDING.value}
                for i, asin in enumerate(asins)
            ])
        except Exception as e:
            logger.error(f"[Queue] Failed to create items for job {job['id']}: {e}")
            self.jobs.delete(job["id"])
            raise

        logger.info(f"[Queue] Created extraction job {job['id']} with {len(asins)} items")
        return {"job_id": job["id"], "total_items": len(asins), "asins": asins}

    def list_jobs(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.jobs.find(order_by="created_at", desc=True, limit=limit)

    def get_job_detail(self, job_id: str) -> Dict[str, Any]:
        job = self.jobs.require(job_id)
        items = self.items.find(eq={"job_id": job_id}, order_by="position")
        return {"job": job, "items": items}

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """
        Stop handing out work for a job. Pending items become skipped;
        items already claimed are left to finish.
        """
        def cancel(job: Dict[str, Any]) -> Dict[str, Any]:
            if is_terminal(JobFamily.EXTRACTION, job.get("status")):
                raise JobStateConflictError("Job is already finished", current_status=job.get("status"))
            return {"status": EX.CANCELLED.value}

        # Version bump so an in-flight counter update cannot overwrite the cancel
        self.jobs.update_versioned(job_id, cancel, retries=self.settings.counter_update_retries)

        skipped = self.items.update_where(
            {"status": ItemStatus.SKIPPED.value, "completed_at": utc_now().isoformat()},
            eq={"job_id": job_id, "status": ItemStatus.PENDING.value}
        )
        logger.info(f"[Queue] Cancelled job {job_id}; skipped {len(skipped)} pending item(s)")
        return {"success": True, "skipped_items": len(skipped)}

    def queue_status(self) -> QueueStatusResponse:
        """Counts for the worker's status display."""
        active = self.jobs.find(
            in_={"status": ACTIVE_EXTRACTION_STATUSES}, columns="id", order_by=None
        )
        ids = [j["id"] for j in active]
        pending = processing = 0
        if ids:
            items = self.items.find(
                in_={"job_id": ids, "status": OPEN_ITEM_STATUSES}, columns="id, status", order_by=None
            )
            pending = sum(1 for i in items if i["status"] == ItemStatus.PENDING.value)
            processing = len(items) - pending
        return QueueStatusResponse(
            active_jobs=len(ids),
            pending_items=pending,
            processing_items=processing,
            checked_at=utc_now(),
        )


_queue: Optional[WorkerQueue] = None


def get_worker_queue() -> WorkerQueue:
    """Get the process-wide worker queue."""
    global _queue
    if _queue is None:
        _queue = WorkerQueue()
    return _queue
