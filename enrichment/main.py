import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enrichment import extraction_routes, images_routes, market_intelligence_routes, seller_pull_routes
from enrichment.config import get_settings
from enrichment.jobs.errors import EnrichmentError, JobStateConflictError
from enrichment.jobs.runner import get_runner
from enrichment.jobs.utils import create_error_response, now_iso
from enrichment.supabase_client import get_supabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="Background enrichment jobs: market intelligence, seller pulls and Q&A extraction",
    version=settings.app_version
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EnrichmentError)
async def enrichment_error_handler(request: Request, exc: EnrichmentError):
    """Synchronous job errors become a JSON rejection with the error's status code."""
    details = None
    if isinstance(exc, JobStateConflictError) and exc.current_status:
        details = {"current_status": exc.current_status}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.error_type, exc.message, details=details)
    )


@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    port = os.environ.get("PORT", "8000")
    logger.info(f"{settings.app_name} starting on port {port} ({settings.environment})")
    logger.info(f"Supabase connected: {get_supabase() is not None}")
    logger.info(f"Scraper: {'Configured' if settings.scraper_username else 'NOT CONFIGURED'}")
    logger.info(f"Gemini: {'Configured' if settings.gemini_api_key else 'NOT CONFIGURED'}")
    logger.info(f"Worker key: {'Configured' if settings.extraction_worker_api_key else 'NOT CONFIGURED'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel in-flight runners; the watchdog fails them once they go stale."""
    await get_runner().shutdown()


# Health check
@app.get("/health")
async def health_check():
    supabase = get_supabase()
    return {
        "status": "healthy",
        "timestamp": now_iso(),
        "services": {
            "database": "connected" if supabase else "not configured",
            "scraper": "configured" if settings.scraper_username else "not configured",
            "ai": "configured" if settings.gemini_api_key else "not configured"
        }
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health"
    }


# Register Routers
app.include_router(market_intelligence_routes.router)
app.include_router(seller_pull_routes.router)
app.include_router(extraction_routes.router)
app.include_router(images_routes.router)
