"""
Enrichment Background Jobs

Orchestrates the three long-running job families: market intelligence,
seller catalog pulls and the pull-based Q&A extraction queue.

Key components:
- job_types: Enums, table names and request/response schemas
- store: Record access over Supabase, with status- and version-guarded updates
- state_machine: Status graphs, resume policy, completion rule, watchdog
- runner: Supervised background execution with progress persistence
- handlers: Phase sequences for market intelligence and seller pulls
- worker_queue: Claim/report protocol for the extraction worker
- sweeper: Periodic pass over the staleness rules
"""

from enrichment.jobs.job_types import (
    JobFamily,
    JobKind,
    JobProgress,
    MarketIntelligenceStatus,
    SellerPullStatus,
    ExtractionJobStatus,
    ItemStatus,
)

from enrichment.jobs.errors import (
    EnrichmentError,
    JobValidationError,
    JobNotFoundError,
    JobStateConflictError,
    JobConcurrencyError,
    WorkerAuthError,
    ExternalServiceError,
)

from enrichment.jobs.runner import (
    JobRunner,
    JobContext,
    get_runner,
)

__all__ = [
    # Types
    "JobFamily",
    "JobKind",
    "JobProgress",
    "MarketIntelligenceStatus",
    "SellerPullStatus",
    "ExtractionJobStatus",
    "ItemStatus",
    # Errors
    "EnrichmentError",
    "JobValidationError",
    "JobNotFoundError",
    "JobStateConflictError",
    "JobConcurrencyError",
    "WorkerAuthError",
    "ExternalServiceError",
    # Runner
    "JobRunner",
    "JobContext",
    "get_runner",
]
