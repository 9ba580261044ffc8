"""
Job State Machine

Per-family status graphs, the market-intelligence resume policy, the
extraction completion rule, and the lazy staleness watchdog.

Nothing in here talks to external providers. The only writes are the
watchdog's forced transition to `failed`, done through the record store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from enrichment.jobs.errors import JobStateConflictError, JobValidationError
from enrichment.jobs.job_types import (
    ANALYSIS_PHASES,
    AnalysisStep,
    ExtractionJobStatus as EX,
    JobFamily,
    MarketIntelligenceStatus as MI,
    SellerPullStatus as SP,
)
from enrichment.jobs.utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[JobFamily, Dict[str, FrozenSet[str]]] = {
    JobFamily.MARKET_INTELLIGENCE: {
        MI.PENDING.value: frozenset({MI.COLLECTING.value, MI.FAILED.value}),
        MI.COLLECTING.value: frozenset({MI.AWAITING_SELECTION.value, MI.FAILED.value}),
        MI.AWAITING_SELECTION.value: frozenset({MI.ANALYZING.value}),
        MI.ANALYZING.value: frozenset({
            MI.COMPLETED.value, MI.COMPLETED_PARTIAL.value, MI.FAILED.value
        }),
        # Resume edge
        MI.FAILED.value: frozenset({MI.ANALYZING.value}),
        MI.COMPLETED.value: frozenset(),
        MI.COMPLETED_PARTIAL.value: frozenset(),
    },
    JobFamily.SELLER_PULL: {
        SP.PULLING.value: frozenset({SP.PULLED.value, SP.FAILED.value}),
        SP.PULLED.value: frozenset({SP.IMPORTING.value}),
        SP.IMPORTING.value: frozenset({SP.SCRAPING.value, SP.FAILED.value}),
        SP.SCRAPING.value: frozenset({
            SP.DISCOVERING_VARIATIONS.value, SP.DONE.value, SP.FAILED.value
        }),
        SP.DISCOVERING_VARIATIONS.value: frozenset({
            SP.AWAITING_VARIATION_SELECTION.value, SP.DONE.value, SP.FAILED.value
        }),
        SP.AWAITING_VARIATION_SELECTION.value: frozenset({SP.IMPORTING_VARIATIONS.value}),
        SP.IMPORTING_VARIATIONS.value: frozenset({SP.DONE.value, SP.FAILED.value}),
        SP.DONE.value: frozenset(),
        SP.FAILED.value: frozenset(),
    },
    JobFamily.EXTRACTION: {
        EX.QUEUED.value: frozenset({EX.PROCESSING.value, EX.CANCELLED.value}),
        EX.PROCESSING.value: frozenset({
            EX.COMPLETED.value, EX.COMPLETED_PARTIAL.value, EX.CANCELLED.value
        }),
        EX.COMPLETED.value: frozenset(),
        EX.COMPLETED_PARTIAL.value: frozenset(),
        EX.CANCELLED.value: frozenset(),
    },
}

TERMINAL_STATUSES: Dict[JobFamily, FrozenSet[str]] = {
    JobFamily.MARKET_INTELLIGENCE: frozenset({
        MI.COMPLETED.value, MI.COMPLETED_PARTIAL.value, MI.FAILED.value
    }),
    JobFamily.SELLER_PULL: frozenset({SP.DONE.value, SP.FAILED.value}),
    JobFamily.EXTRACTION: frozenset({
        EX.COMPLETED.value, EX.COMPLETED_PARTIAL.value, EX.CANCELLED.value
    }),
}

# States in which a detached runner is expected to be making progress
BACKGROUND_STATUSES: Dict[JobFamily, FrozenSet[str]] = {
    JobFamily.MARKET_INTELLIGENCE: frozenset({MI.COLLECTING.value, MI.ANALYZING.value}),
    JobFamily.SELLER_PULL: frozenset({
        SP.PULLING.value, SP.IMPORTING.value, SP.SCRAPING.value,
        SP.DISCOVERING_VARIATIONS.value, SP.IMPORTING_VARIATIONS.value,
    }),
    JobFamily.EXTRACTION: frozenset(),
}

SELECTABLE_STATUSES = frozenset({MI.AWAITING_SELECTION.value, MI.FAILED.value})
ACTIVE_EXTRACTION_STATUSES = (EX.QUEUED.value, EX.PROCESSING.value)

TIMEOUT_MESSAGE = "Timed out: no progress for {minutes} minutes"


def can_transition(family: JobFamily, current: Optional[str], target: str) -> bool:
    return target in TRANSITIONS[family].get(current or "", frozenset())


def assert_transition(family: JobFamily, current: Optional[str], target: str) -> None:
    """Raise JobStateConflictError unless current -> target is a legal edge."""
    if not can_transition(family, current, target):
        raise JobStateConflictError(
            f"Cannot move {family.value} job from '{current}' to '{target}'",
            current_status=current
        )


def require_status(family: JobFamily, record: Dict[str, Any], allowed: Sequence[str], action: str) -> str:
    """Reject `action` unless the record's status is one of `allowed`."""
    status = record.get("status")
    if status not in allowed:
        expected = ", ".join(f'"{s}"' for s in allowed)
        raise JobStateConflictError(
            f"Cannot {action}: status is \"{status}\", expected {expected}",
            current_status=status
        )
    return status


def is_terminal(family: JobFamily, status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES[family]


def active_statuses(family: JobFamily) -> List[str]:
    """Every non-terminal status of the family."""
    return sorted(set(TRANSITIONS[family]) - TERMINAL_STATUSES[family])


# ============================================================================
# Market intelligence resume policy
# ============================================================================

@dataclass
class ResumePlan:
    """Where an analysis attempt starts and what it may skip."""
    start_step: str
    selected_asins: List[str]
    completed_phases: List[str] = field(default_factory=list)
    is_resume: bool = False

    @property
    def skips_collection(self) -> bool:
        return self.start_step in ANALYSIS_PHASES

    @property
    def next_phase_index(self) -> int:
        """Zero-based index into ANALYSIS_PHASES of the first phase to run."""
        return len(self.completed_phases)

    def progress(self) -> Dict[str, Any]:
        if self.skips_collection:
            current, total = len(self.completed_phases), len(ANALYSIS_PHASES)
            message = f"Resuming from {self.start_step.replace('_', ' ')}..."
        else:
            current, total = 0, len(self.selected_asins)
            message = "Resuming from the beginning..." if self.is_resume else "Products confirmed. Starting analysis..."
        return {
            "step": self.start_step,
            "current": current,
            "total": total,
            "message": message,
            "completed_phases": list(self.completed_phases),
        }


def plan_market_intelligence_run(
    record: Dict[str, Any],
    requested_asins: Optional[List[str]] = None
) -> ResumePlan:
    """
    Validate a select/resume action and compute where work starts.

    - Only legal from awaiting_selection (fresh selection) or failed (resume).
    - Requested identifiers win; otherwise the persisted selection is reused;
      with neither, the action is rejected.
    - On resume: review data plus completed phases -> next phase; review data
      only -> phase_1; otherwise restart at review collection.
    """
    status = require_status(
        JobFamily.MARKET_INTELLIGENCE, record, sorted(SELECTABLE_STATUSES), "select"
    )

    persisted = [a for a in (record.get("selected_asins") or []) if a]
    requested = [a.strip().upper() for a in (requested_asins or []) if a and a.strip()]
    selected = list(dict.fromkeys(requested or persisted))
    if not selected:
        raise JobValidationError(
            "selected_asins must be provided: none supplied and no previous selection saved"
        )

    if status == MI.AWAITING_SELECTION.value:
        return ResumePlan(start_step=AnalysisStep.REVIEW_FETCH.value, selected_asins=selected)

    # Persisted review/phase data only applies to the selection it was built from
    same_selection = not persisted or set(selected) == set(persisted)
    has_reviews = bool(record.get("reviews_data")) and same_selection
    progress = record.get("progress") or {}
    completed = [
        p for p in ANALYSIS_PHASES
        if p in (progress.get("completed_phases") or [])
    ]
    # Phases must be a contiguous prefix to be reusable
    completed = ANALYSIS_PHASES[:len(completed)] if completed == ANALYSIS_PHASES[:len(completed)] else []

    if has_reviews and completed:
        if len(completed) >= len(ANALYSIS_PHASES):
            # Every phase saved but the final write never landed
            completed = ANALYSIS_PHASES[:-1]
        start = ANALYSIS_PHASES[len(completed)]
        return ResumePlan(start_step=start, selected_asins=selected, completed_phases=completed, is_resume=True)

    if has_reviews:
        return ResumePlan(start_step=AnalysisStep.PHASE_1.value, selected_asins=selected, is_resume=True)

    return ResumePlan(start_step=AnalysisStep.REVIEW_FETCH.value, selected_asins=selected, is_resume=True)


# ============================================================================
# Extraction completion rule
# ============================================================================

def extraction_terminal_status(
    completed: int,
    failed: int,
    total: int,
    threshold: float = 0.70
) -> Optional[str]:
    """
    Terminal status once every item has an outcome, else None.
    `completed` when the completed fraction meets the threshold.
    """
    if completed + failed < total:
        return None
    success_rate = completed / total if total > 0 else 0
    return EX.COMPLETED.value if success_rate >= threshold else EX.COMPLETED_PARTIAL.value


# ============================================================================
# Lazy watchdog
# ============================================================================

def is_stale(
    family: JobFamily,
    record: Dict[str, Any],
    stale_after: timedelta,
    now: Optional[datetime] = None
) -> bool:
    """True when a background-state record has not been touched within stale_after."""
    if record.get("status") not in BACKGROUND_STATUSES[family]:
        return False
    updated_at = parse_timestamp(record.get("updated_at") or record.get("created_at"))
    if updated_at is None:
        return False
    return (now or utc_now()) - updated_at > stale_after


def expire_if_stale(
    store,
    family: JobFamily,
    record: Dict[str, Any],
    stale_after: timedelta,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Read-triggered watchdog. A stale record is forced to `failed` with a
    timeout message; the returned record reflects what the caller should see.
    """
    if not is_stale(family, record, stale_after, now):
        return record

    status = record["status"]
    minutes = int(stale_after.total_seconds() // 60)
    message = TIMEOUT_MESSAGE.format(minutes=minutes)
    updated = store.update(
        record["id"],
        {"status": "failed", "error_message": message},
        expected_status=[status]
    )
    if updated is None:
        # Someone else moved it first; show the current row
        return store.get(record["id"]) or record

    logger.warning(f"[Watchdog] {family.value} job {record['id']} stuck in '{status}', marked failed")
    return updated
