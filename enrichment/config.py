"""
Application Configuration

All tunables for the job orchestration layer live here. Defaults match the
values the service has always run with; override through ENRICHMENT_* env vars.
"""

from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    app_name: str = "Listing Enrichment API"
    app_version: str = "1.0.0"
    environment: str = "development"

    # Extraction queue
    completion_threshold: float = 0.70
    stale_claim_minutes: int = 30
    claim_job_window: int = 5
    claim_candidate_limit: int = 10
    worker_max_questions: int = 50
    extraction_worker_api_key: Optional[str] = None
    counter_update_retries: int = 5

    # Watchdogs
    seller_pull_stale_minutes: int = 30
    market_intelligence_stale_minutes: int = 30
    sweeper_interval_seconds: int = 60

    # Runner pacing
    scrape_delay_seconds: float = 1.0
    keyword_delay_seconds: float = 3.0
    image_batch_concurrency: int = 3
    seller_scrape_batch_size: int = 5
    import_batch_size: int = 100

    # Market intelligence bounds
    competitors_min: int = 5
    competitors_max: int = 20
    competitors_default: int = 10
    reviews_per_product_min: int = 10
    reviews_per_product_max: int = 500
    reviews_per_product_default: int = 200

    # Seller pull: country id -> seller id
    seller_ids: Dict[str, str] = {}

    # Scraping API
    scraper_base_url: str = "https://realtime.oxylabs.io/v1/queries"
    scraper_username: Optional[str] = None
    scraper_password: Optional[str] = None
    scraper_timeout_seconds: float = 65.0
    seller_max_pages: int = 20

    # LLM / image generation
    gemini_api_key: Optional[str] = None
    analysis_model: str = "gemini-2.5-pro"
    image_model: str = "imagen-4.0-generate-001"

    class Config:
        env_prefix = "ENRICHMENT_"
        case_sensitive = False


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
