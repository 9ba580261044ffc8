"""
Periodic staleness sweep.

Runs the same rules the read paths apply lazily, for jobs nobody is polling:
the market-intelligence and seller-pull watchdogs, and the extraction
stale-claim reset.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from enrichment.config import Settings, get_settings
from enrichment.jobs.job_types import FAMILY_TABLES, JobFamily
from enrichment.jobs.state_machine import BACKGROUND_STATUSES, expire_if_stale, is_terminal
from enrichment.jobs.store import JobStore
from enrichment.jobs.utils import iso_minutes_ago, utc_now
from enrichment.jobs.worker_queue import WorkerQueue

logger = logging.getLogger(__name__)


def _stale_minutes(settings: Settings) -> Dict[JobFamily, int]:
    return {
        JobFamily.MARKET_INTELLIGENCE: settings.market_intelligence_stale_minutes,
        JobFamily.SELLER_PULL: settings.seller_pull_stale_minutes,
    }


def expire_stale_jobs(
    family: JobFamily,
    minutes: int,
    supabase=None,
    now: Optional[datetime] = None
) -> int:
    """Fail every background-state job of `family` untouched for `minutes`."""
    now = now or utc_now()
    store = JobStore(FAMILY_TABLES[family], supabase=supabase)
    candidates = store.find(
        in_={"status": sorted(BACKGROUND_STATUSES[family])},
        lt={"updated_at": iso_minutes_ago(minutes, now)},
        order_by=None
    )
    expired = 0
    for record in candidates:
        result = expire_if_stale(store, family, record, timedelta(minutes=minutes), now)
        if result.get("status") != record.get("status") and is_terminal(family, result.get("status")):
            expired += 1
    return expired


def sweep_once(
    settings: Optional[Settings] = None,
    supabase=None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """One pass over every watchdog. Returns counts per rule."""
    settings = settings or get_settings()
    now = now or utc_now()
    counts: Dict[str, int] = {}

    for family, minutes in _stale_minutes(settings).items():
        counts[family.value] = expire_stale_jobs(family, minutes, supabase=supabase, now=now)

    counts["stale_claims"] = WorkerQueue(settings, supabase=supabase).sweep_stale_claims(now)

    if any(counts.values()):
        logger.warning(f"[Sweeper] {counts}")
    return counts
