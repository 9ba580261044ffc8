"""
Job Types and Schemas

Defines enums, table names, and Pydantic models for the three job families.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class JobFamily(str, Enum):
    """Independently defined background workflows."""
    MARKET_INTELLIGENCE = "market_intelligence"
    SELLER_PULL = "seller_pull"
    EXTRACTION = "extraction"


FAMILY_TABLES: Dict[JobFamily, str] = {
    JobFamily.MARKET_INTELLIGENCE: "lb_market_intelligence",
    JobFamily.SELLER_PULL: "lb_seller_pull_jobs",
    JobFamily.EXTRACTION: "lb_extraction_jobs",
}

EXTRACTION_ITEMS_TABLE = "lb_extraction_job_items"
COUNTRIES_TABLE = "lb_countries"
PRODUCTS_TABLE = "lb_products"
ASIN_LOOKUPS_TABLE = "lb_asin_lookups"


class JobKind(str, Enum):
    """Units of detached work the runner knows how to execute."""
    MI_COLLECT = "mi_collect"
    MI_ANALYZE = "mi_analyze"
    SELLER_PULL = "seller_pull"
    SELLER_IMPORT = "seller_import"
    SELLER_IMPORT_VARIATIONS = "seller_import_variations"


KIND_FAMILIES: Dict[JobKind, JobFamily] = {
    JobKind.MI_COLLECT: JobFamily.MARKET_INTELLIGENCE,
    JobKind.MI_ANALYZE: JobFamily.MARKET_INTELLIGENCE,
    JobKind.SELLER_PULL: JobFamily.SELLER_PULL,
    JobKind.SELLER_IMPORT: JobFamily.SELLER_PULL,
    JobKind.SELLER_IMPORT_VARIATIONS: JobFamily.SELLER_PULL,
}


class MarketIntelligenceStatus(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    AWAITING_SELECTION = "awaiting_selection"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    COMPLETED_PARTIAL = "completed_partial"
    FAILED = "failed"


class SellerPullStatus(str, Enum):
    PULLING = "pulling"
    PULLED = "pulled"
    IMPORTING = "importing"
    SCRAPING = "scraping"
    DISCOVERING_VARIATIONS = "discovering_variations"
    AWAITING_VARIATION_SELECTION = "awaiting_variation_selection"
    IMPORTING_VARIATIONS = "importing_variations"
    DONE = "done"
    FAILED = "failed"


class ExtractionJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_PARTIAL = "completed_partial"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_ITEM_STATUSES = {ItemStatus.COMPLETED.value, ItemStatus.FAILED.value, ItemStatus.SKIPPED.value}


class AnalysisStep(str, Enum):
    """Ordered steps of a market-intelligence analysis attempt."""
    REVIEW_FETCH = "review_fetch"
    QNA_FETCH = "qna_fetch"
    PHASE_1 = "phase_1"
    PHASE_2 = "phase_2"
    PHASE_3 = "phase_3"
    PHASE_4 = "phase_4"


ANALYSIS_PHASES: List[str] = [
    AnalysisStep.PHASE_1.value,
    AnalysisStep.PHASE_2.value,
    AnalysisStep.PHASE_3.value,
    AnalysisStep.PHASE_4.value,
]


class JobProgress(BaseModel):
    """Progress snapshot persisted after every sub-step."""
    step: str = "pending"
    current: int = 0
    total: int = 0
    message: Optional[str] = None
    completed_phases: List[str] = Field(default_factory=list)


# ============================================================================
# Request schemas
# ============================================================================

class CreateMarketIntelligenceRequest(BaseModel):
    keyword: Optional[str] = None
    keywords: Optional[List[str]] = None
    country_id: str
    max_competitors: Optional[int] = None
    reviews_per_product: Optional[int] = None


class SelectAsinsRequest(BaseModel):
    """Selection or resume. An empty body reuses the persisted selection."""
    selected_asins: Optional[List[str]] = None


class CreateSellerPullRequest(BaseModel):
    country_id: str


class SellerImportRequest(BaseModel):
    selected_asins: List[str] = Field(default_factory=list)
    product_categories: Dict[str, str] = Field(default_factory=dict)


class SellerImportVariationsRequest(BaseModel):
    selected_variations: List[str] = Field(default_factory=list)


class CreateExtractionJobRequest(BaseModel):
    source: str = "manual"  # "manual" or "market_intelligence"
    country_id: Optional[str] = None
    asins: Optional[List[str]] = None
    market_intelligence_id: Optional[str] = None


class WorkerReportRequest(BaseModel):
    item_id: str
    status: str
    questions_found: int = 0
    error_message: Optional[str] = None


class BatchImagePrompt(BaseModel):
    prompt: str
    label: str
    position: Optional[int] = None


class BatchImageRequest(BaseModel):
    prompts: List[BatchImagePrompt]
    orientation: str = "square"


# ============================================================================
# Response schemas
# ============================================================================

class SelectAsinsResponse(BaseModel):
    status: str
    selected_count: int
    is_resume: bool
    resume_step: str


class SellerActionResponse(BaseModel):
    job_id: str
    status: str
    existing: bool = False


class ClaimedItem(BaseModel):
    item_id: str
    job_id: str
    asin: str
    marketplace: str
    max_questions: int


class ClaimResponse(BaseModel):
    item: Optional[ClaimedItem] = None


class ReportResponse(BaseModel):
    success: bool
    duplicate: bool = False
    job_status: Optional[str] = None
    completed_items: Optional[int] = None
    failed_items: Optional[int] = None
    total_items: Optional[int] = None


class QueueStatusResponse(BaseModel):
    active_jobs: int
    pending_items: int
    processing_items: int
    checked_at: datetime


class ImageResult(BaseModel):
    label: str
    image: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class BatchImageResponse(BaseModel):
    results: List[ImageResult]
    succeeded: int
    failed: int
