"""
Job Handlers

Implements the phase sequence for each runner-driven job kind. Each handler
receives a JobContext, persists progress after every sub-step and moves the
job through its family's status graph with ctx.transition().
"""

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from enrichment.clients.llm import build_analysis_input
from enrichment.clients.scraper import marketplace_domain
from enrichment.jobs.catalog import UNCATEGORIZED, classify_products
from enrichment.jobs.errors import ExternalServiceError, JobNotFoundError
from enrichment.jobs.job_types import (
    ANALYSIS_PHASES,
    ASIN_LOOKUPS_TABLE,
    COUNTRIES_TABLE,
    PRODUCTS_TABLE,
    AnalysisStep,
    JobKind,
    MarketIntelligenceStatus as MI,
    SellerPullStatus as SP,
)
from enrichment.jobs.runner import JobContext, JobRunner, get_runner
from enrichment.jobs.utils import chunk_list

logger = logging.getLogger(__name__)

PHASE_MESSAGES = {
    "phase_1": "Phase 1: Analyzing reviews...",
    "phase_2": "Phase 2: Analyzing Q&A data...",
    "phase_3": "Phase 3: Analyzing market & competition...",
    "phase_4": "Phase 4: Building customer intelligence & strategy...",
}

# Lookup fields copied from the provider's product payload into competitor entries
COMPETITOR_FIELDS = (
    "title", "brand", "price", "price_initial", "currency", "rating", "reviews_count",
    "bullet_points", "description", "product_overview", "product_details", "images",
    "is_prime_eligible", "amazon_choice", "deal_type", "coupon", "sales_volume",
    "sales_rank", "category", "parent_asin", "answered_questions_count",
)


def _get_country(ctx: JobContext) -> Dict[str, Any]:
    country = ctx.table(COUNTRIES_TABLE).get(ctx.record["country_id"])
    if not country or not country.get("amazon_domain"):
        raise JobNotFoundError("Country not found")
    return country


# ============================================================================
# Market Intelligence: collection
# ============================================================================

async def handle_market_intelligence_collect(ctx: JobContext) -> None:
    """
    Search every keyword, then look up the top organic products of each one.

    Stages:
    1. keyword_search - one search per keyword; a failed search is skipped
    2. asin_lookup - up to max_competitors new ASINs per keyword
    3. awaiting_selection - shortlist saved for the user to choose from
    """
    record = ctx.record
    keywords = record.get("keywords") or [record.get("keyword")]
    keywords = [k for k in keywords if k]
    country = _get_country(ctx)
    domain = marketplace_domain(country["amazon_domain"])
    max_competitors = record.get("max_competitors") or ctx.settings.competitors_default
    calls = record.get("scrape_calls_used") or 0

    competitors: Dict[str, Dict[str, Any]] = {}
    keyword_results: List[Dict[str, Any]] = []

    for ki, keyword in enumerate(keywords):
        ctx.update_progress(
            "keyword_search", ki, len(keywords),
            f'Searching keyword "{keyword}" ({ki + 1}/{len(keywords)})...'
        )

        calls += 1
        try:
            search = await ctx.scraper.search_keyword(keyword, domain)
        except ExternalServiceError as e:
            ctx.warn(f'Keyword search failed for "{keyword}": {e.message}')
            continue

        results = search.get("results") or {}
        organic = results.get("organic") or []
        keyword_results.append({
            "keyword": keyword,
            "organic_results": organic,
            "sponsored_results": results.get("paid") or [],
            "amazons_choices": results.get("amazons_choices") or [],
            "total_results_count": search.get("total_results_count") or 0,
        })

        asins = []
        for item in organic:
            asin = item.get("asin")
            if asin and asin not in competitors and asin not in asins:
                asins.append(asin)
        asins = asins[:max_competitors]

        if asins:
            await ctx.pace()

        for ai, asin in enumerate(asins):
            prefix = f"[{keyword}] " if len(keywords) > 1 else ""
            ctx.update_progress(
                "asin_lookup", ai + 1, len(asins),
                f"{prefix}Fetching product {asin} ({ai + 1}/{len(asins)})..."
            )
            calls += 1
            try:
                product = await ctx.scraper.lookup_asin(asin, domain)
                competitors[asin] = _competitor_entry(asin, product, country)
            except ExternalServiceError as e:
                ctx.warn(f"Failed to lookup {asin}: {e.message}")
                competitors[asin] = {"asin": asin, "error": e.message, "source": "error"}

            if ai < len(asins) - 1:
                await ctx.pace()

        if ki < len(keywords) - 1:
            await ctx.pace(ctx.settings.keyword_delay_seconds)

    if not competitors:
        ctx.save(scrape_calls_used=calls)
        ctx.fail("No products found for any keyword")
        return

    keyword_search_data = (
        keyword_results[0] if len(keywords) == 1 and keyword_results
        else {"keywords": keyword_results}
    )
    top_asins = list(competitors)
    ctx.transition(
        MI.AWAITING_SELECTION.value,
        top_asins=top_asins,
        competitors_data=list(competitors.values()),
        keyword_search_data=keyword_search_data,
        scrape_calls_used=calls,
        progress={
            "step": MI.AWAITING_SELECTION.value,
            "current": 0,
            "total": 0,
            "message": f"Found {len(top_asins)} products. Select which to analyze.",
            "completed_phases": [],
        },
    )
    ctx.log(f"Collection complete: {len(top_asins)} products, {calls} scrape calls")


def _competitor_entry(asin: str, product: Dict[str, Any], country: Dict[str, Any]) -> Dict[str, Any]:
    entry = {"asin": asin}
    for key in COMPETITOR_FIELDS:
        entry[key] = product.get(key)
    entry["variations"] = product.get("variation")
    entry["top_reviews"] = product.get("reviews")
    entry["marketplace_domain"] = country["amazon_domain"]
    entry["source"] = "fresh"
    return entry


# ============================================================================
# Market Intelligence: analysis
# ============================================================================

async def handle_market_intelligence_analyze(ctx: JobContext) -> None:
    """
    Collect reviews and Q&A for the selected products, then run the four
    analysis phases. Reviews and Q&A are persisted together before phase 1;
    each phase result is persisted as soon as it returns.

    ctx.params carries the resume plan: start_step and completed_phases.
    """
    record = ctx.record
    selected: List[str] = list(record.get("selected_asins") or [])
    start_step = ctx.params.get("start_step", AnalysisStep.REVIEW_FETCH.value)
    completed: List[str] = list(ctx.params.get("completed_phases") or [])

    if start_step not in ANALYSIS_PHASES:
        country = _get_country(ctx)
        reviews_data, questions_data, calls = await _collect_reviews_and_questions(ctx, selected, country)
        completed = []
        ctx.update_progress(
            AnalysisStep.PHASE_1.value, 0, len(ANALYSIS_PHASES), PHASE_MESSAGES["phase_1"],
            completed_phases=completed,
            reviews_data=reviews_data,
            questions_data=questions_data,
            scrape_calls_used=calls,
        )
    else:
        ctx.log(f"Resuming analysis at {start_step} (completed: {completed or 'none'})")

    data = build_analysis_input(ctx.record, selected)
    phase_results: Dict[str, Any] = {
        p: r for p, r in (ctx.record.get("phase_results") or {}).items() if p in completed
    }
    tokens = (ctx.record.get("tokens_used") or 0) if completed else 0
    model_used = ctx.record.get("model_used")

    for index in range(len(completed), len(ANALYSIS_PHASES)):
        phase = ANALYSIS_PHASES[index]
        ctx.update_progress(
            phase, index, len(ANALYSIS_PHASES), PHASE_MESSAGES[phase],
            completed_phases=completed,
        )

        output = await ctx.llm.run_phase(phase, data, phase_results)
        phase_results[phase] = output.result
        completed = completed + [phase]
        tokens += output.tokens_used
        model_used = model_used or output.model

        ctx.update_progress(
            phase, index + 1, len(ANALYSIS_PHASES), f"{PHASE_MESSAGES[phase][:-3]} done.",
            completed_phases=completed,
            phase_results=phase_results,
            tokens_used=tokens,
            model_used=model_used,
        )

    merged: Dict[str, Any] = {}
    for phase in ANALYSIS_PHASES:
        merged.update(phase_results.get(phase) or {})

    ctx.transition(
        MI.COMPLETED.value,
        analysis_result=merged,
        tokens_used=tokens,
        model_used=model_used,
        progress={
            "step": MI.COMPLETED.value,
            "current": len(ANALYSIS_PHASES),
            "total": len(ANALYSIS_PHASES),
            "message": "Analysis complete.",
            "completed_phases": completed,
        },
    )
    ctx.log(f"Analysis complete. {tokens} tokens used.")


async def _collect_reviews_and_questions(
    ctx: JobContext,
    selected: List[str],
    country: Dict[str, Any]
) -> Tuple[Dict[str, Any], Dict[str, Any], int]:
    """
    Fetch reviews, then Q&A, for each selected product. A failed review fetch
    falls back to the top reviews captured at collection time; a failed Q&A
    fetch leaves that product without questions.
    """
    domain = marketplace_domain(country["amazon_domain"])
    reviews_per_product = ctx.record.get("reviews_per_product") or ctx.settings.reviews_per_product_default
    review_pages = min(math.ceil(reviews_per_product / 10), 20)
    top_reviews = {
        c.get("asin"): c.get("top_reviews")
        for c in (ctx.record.get("competitors_data") or [])
    }
    calls = ctx.record.get("scrape_calls_used") or 0
    total = len(selected)

    reviews_data: Dict[str, Any] = {}
    for i, asin in enumerate(selected):
        ctx.update_progress(
            AnalysisStep.REVIEW_FETCH.value, i, total,
            f"Fetching reviews for {asin} ({i + 1}/{total})..."
        )
        calls += 1
        try:
            reviews_data[asin] = await ctx.scraper.fetch_reviews(asin, domain, pages=review_pages)
        except ExternalServiceError as e:
            fallback = top_reviews.get(asin)
            ctx.warn(f"Review fetch failed for {asin} ({e.message}); "
                     f"{'using top reviews' if fallback else 'no fallback'}")
            if fallback:
                reviews_data[asin] = fallback
        if i < total - 1:
            await ctx.pace()

    await ctx.pace()

    questions_data: Dict[str, Any] = {}
    for i, asin in enumerate(selected):
        ctx.update_progress(
            AnalysisStep.QNA_FETCH.value, i, total,
            f"Fetching Q&A for {asin} ({i + 1}/{total})..."
        )
        calls += 1
        try:
            questions = await ctx.scraper.fetch_questions(asin, domain)
            if questions:
                questions_data[asin] = questions
        except ExternalServiceError as e:
            ctx.warn(f"Q&A fetch failed for {asin}: {e.message}")
        if i < total - 1:
            await ctx.pace()

    return reviews_data, questions_data, calls


# ============================================================================
# Seller Pull
# ============================================================================

async def handle_seller_pull(ctx: JobContext) -> None:
    """Fetch the seller's storefront and classify it against the catalog."""
    country = _get_country(ctx)
    domain = marketplace_domain(country["amazon_domain"])

    pulled = await ctx.scraper.fetch_seller_products(ctx.record["seller_id"], domain)
    existing = ctx.table(PRODUCTS_TABLE).find(columns="asin, product_name, category", order_by=None)
    classified = classify_products(pulled["products"], existing)

    summary = dict(classified["summary"])
    summary["pages_scraped"] = pulled.get("pages_scraped", 0)
    summary["total_pages"] = pulled.get("total_pages", 0)

    ctx.transition(
        SP.PULLED.value,
        pull_result={
            "products": classified["products"],
            "summary": summary,
            "categories": classified["categories"],
            "country": {"id": country["id"], "name": country.get("name"), "code": country.get("code")},
        },
        selected_asins=classified["auto_selected_asins"],
        product_categories=classified["auto_categories"],
    )
    ctx.log(f"Pull complete: {len(classified['products'])} products")


async def handle_seller_import(ctx: JobContext) -> None:
    """
    Import the selected products, then look each one up and chain into
    variation discovery when parent ASINs turn up.
    """
    record = ctx.record
    country = _get_country(ctx)
    selected = [a.strip().upper() for a in (record.get("selected_asins") or []) if a and a.strip()]
    categories = record.get("product_categories") or {}
    products = [
        p for p in ((record.get("pull_result") or {}).get("products") or [])
        if (p.get("asin") or "").strip().upper() in selected
    ]

    import_result = _import_products(ctx, [
        {
            "asin": p["asin"].strip().upper(),
            "product_name": p.get("title") or p["asin"],
            "parent_asin": None,
            "category": categories.get(p["asin"]) or UNCATEGORIZED,
            "brand": p.get("manufacturer"),
        }
        for p in products
    ])

    ctx.transition(
        SP.SCRAPING.value,
        import_result=import_result,
        scrape_progress={"current": 0, "total": len(selected)},
    )

    parents = await _scrape_products(ctx, selected, country)

    if parents:
        ctx.log(f"Scrape complete, found {len(parents)} parent ASINs. Starting variation discovery...")
        ctx.transition(SP.DISCOVERING_VARIATIONS.value)
        await _discover_variations(ctx, parents, country)
    else:
        ctx.log("Scrape complete, no parent ASINs found")
        ctx.transition(SP.DONE.value)


async def handle_seller_import_variations(ctx: JobContext) -> None:
    """Import the chosen new variations and finish the job."""
    record = ctx.record
    chosen = set(record.get("selected_variations") or [])
    variations = [
        v for v in (record.get("variation_results") or [])
        if v.get("is_new") and v.get("asin") in chosen
    ]

    result = _import_products(ctx, [
        {
            "asin": v["asin"].strip().upper(),
            "product_name": v.get("title") or v["asin"],
            "parent_asin": v.get("parent_asin"),
            "category": UNCATEGORIZED,
            "brand": None,
        }
        for v in variations
    ])
    ctx.transition(SP.DONE.value, variation_import_result=result)


def _import_products(ctx: JobContext, records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Upsert product rows in batches; a failing batch is counted as skipped."""
    products = ctx.table(PRODUCTS_TABLE)
    imported = 0
    skipped = 0
    errors: List[str] = []

    for number, batch in enumerate(chunk_list(records, ctx.settings.import_batch_size), start=1):
        try:
            rows = products.upsert(batch, on_conflict="asin")
            imported += len(rows) or len(batch)
        except Exception as e:
            ctx.warn(f"Import batch {number} failed: {e}")
            errors.append(f"Batch {number}: {e}")
            skipped += len(batch)

    return {"imported": imported, "skipped": skipped, "errors": errors, "total": len(records)}


async def _scrape_products(ctx: JobContext, asins: List[str], country: Dict[str, Any]) -> List[str]:
    """
    Look up each product, caching the payload and recording parent ASINs.
    Results are persisted after every batch. Returns the distinct parents found.
    """
    domain = marketplace_domain(country["amazon_domain"])
    lookups = ctx.table(ASIN_LOOKUPS_TABLE)
    products = ctx.table(PRODUCTS_TABLE)
    batch_size = ctx.settings.seller_scrape_batch_size
    results: List[Dict[str, Any]] = []
    batches = chunk_list(asins, batch_size)

    for number, batch in enumerate(batches):
        for position, asin in enumerate(batch):
            try:
                data = await ctx.scraper.lookup_asin(asin, domain)
                lookups.upsert([_lookup_row(asin, data, country)], on_conflict="asin,country_id")
                parent_asin = data.get("parent_asin")
                if parent_asin:
                    products.update_where(
                        {"parent_asin": parent_asin, "brand": data.get("brand") or data.get("manufacturer")},
                        eq={"asin": asin}
                    )
                results.append({
                    "asin": asin,
                    "success": True,
                    "parent_asin": parent_asin,
                    "title": data.get("title"),
                })
            except Exception as e:
                message = e.message if isinstance(e, ExternalServiceError) else str(e)
                ctx.warn(f"Lookup failed for {asin}: {message}")
                results.append({"asin": asin, "success": False, "error": message})

            if position < len(batch) - 1:
                await ctx.pace()

        ctx.save(
            scrape_results=results,
            scrape_progress={"current": min((number + 1) * batch_size, len(asins)), "total": len(asins)},
        )
        if number < len(batches) - 1:
            await ctx.pace()

    parents: List[str] = []
    for r in results:
        if r["success"] and r.get("parent_asin") and r["parent_asin"] not in parents:
            parents.append(r["parent_asin"])
    return parents


def _lookup_row(asin: str, data: Dict[str, Any], country: Dict[str, Any]) -> Dict[str, Any]:
    row = {key: data.get(key) for key in COMPETITOR_FIELDS}
    row.update({
        "asin": asin,
        "country_id": country["id"],
        "marketplace_domain": country["amazon_domain"],
        "brand": data.get("brand") or data.get("manufacturer"),
        "variations": data.get("variation"),
        "top_reviews": data.get("reviews"),
        "raw_response": data,
    })
    return row


async def _discover_variations(ctx: JobContext, parents: List[str], country: Dict[str, Any]) -> None:
    """Find sibling variations of each parent; stop for selection if any are new."""
    domain = marketplace_domain(country["amazon_domain"])
    existing = {
        p["asin"] for p in ctx.table(PRODUCTS_TABLE).find(columns="asin", order_by=None)
    }
    cached = {
        row["asin"]: row.get("variations")
        for row in ctx.table(ASIN_LOOKUPS_TABLE).find(
            eq={"country_id": country["id"]},
            in_={"asin": parents},
            columns="asin, variations",
            order_by=None,
        )
    }

    found: List[Dict[str, Any]] = []
    for parent in parents:
        variations: Optional[List[Dict[str, Any]]] = cached.get(parent)
        if not isinstance(variations, list):
            try:
                data = await ctx.scraper.lookup_asin(parent, domain)
            except ExternalServiceError as e:
                ctx.warn(f"Variation lookup failed for {parent}: {e.message}")
                continue
            variations = data.get("variation") or []
            await ctx.pace()

        for v in variations:
            if not v.get("asin"):
                continue
            found.append({
                "asin": v["asin"],
                "title": v.get("title") or "",
                "parent_asin": parent,
                "is_new": v["asin"] not in existing,
                "dimensions": v.get("dimensions"),
            })

    new_variations = [v["asin"] for v in found if v["is_new"]]
    if new_variations:
        ctx.log(f"Found {len(new_variations)} new variations. Awaiting selection.")
        ctx.transition(
            SP.AWAITING_VARIATION_SELECTION.value,
            variation_results=found,
            selected_variations=new_variations,
        )
    else:
        ctx.log("No new variations found")
        ctx.transition(SP.DONE.value, variation_results=found)


# ============================================================================
# Register All Handlers
# ============================================================================

def register_all_handlers(runner: Optional[JobRunner] = None):
    """Register all job handlers with a runner (the global one by default)."""
    runner = runner or get_runner()
    runner.register_handler(JobKind.MI_COLLECT, handle_market_intelligence_collect)
    runner.register_handler(JobKind.MI_ANALYZE, handle_market_intelligence_analyze)
    runner.register_handler(JobKind.SELLER_PULL, handle_seller_pull)
    runner.register_handler(JobKind.SELLER_IMPORT, handle_seller_import)
    runner.register_handler(JobKind.SELLER_IMPORT_VARIATIONS, handle_seller_import_variations)

    logger.info("All job handlers registered")
