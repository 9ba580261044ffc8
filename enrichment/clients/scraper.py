"""
Scraping API client.

Wraps the realtime query endpoint of the scraping provider (product lookup,
keyword search, reviews, Q&A and seller storefront pages). Every call either
returns the parsed `content` object or raises ExternalServiceError.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "scraper"

# Storefront pages are requested a few at a time
SELLER_PAGE_BATCH = 3


def marketplace_domain(amazon_domain: str) -> str:
    """'amazon.co.uk' -> 'co.uk', the form the provider expects."""
    return amazon_domain.replace("amazon.", "", 1)


class ScraperClient:
    """Async client for the scraping provider."""

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = http_client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            auth = None
            if self.settings.scraper_username and self.settings.scraper_password:
                auth = httpx.BasicAuth(self.settings.scraper_username, self.settings.scraper_password)
            self._client = httpx.AsyncClient(
                auth=auth,
                timeout=self.settings.scraper_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _query(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """POST one query and return the raw `results` list."""
        try:
            response = await self._http().post(self.settings.scraper_base_url, json=payload)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"request failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError(
                SERVICE_NAME, f"API error ({response.status_code}): {response.text[:500]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(SERVICE_NAME, f"invalid JSON response: {response.text[:200]}") from e

        if not isinstance(data, dict):
            raise ExternalServiceError(SERVICE_NAME, f"unexpected response body: {type(data).__name__}")
        if data.get("message") and not data.get("results"):
            raise ExternalServiceError(SERVICE_NAME, str(data["message"]))

        results = data.get("results") or []
        if not isinstance(results, list):
            raise ExternalServiceError(SERVICE_NAME, "unexpected results payload")
        return results

    async def _content(self, payload: Dict[str, Any], empty_message: str) -> Dict[str, Any]:
        results = await self._query(payload)
        content = results[0].get("content") if results and isinstance(results[0], dict) else None
        if not content or not isinstance(content, dict):
            raise ExternalServiceError(SERVICE_NAME, empty_message)
        return content

    async def lookup_asin(self, asin: str, domain: str) -> Dict[str, Any]:
        return await self._content(
            {"source": "amazon_product", "domain": domain, "query": asin, "parse": True},
            "No results returned",
        )

    async def search_keyword(self, keyword: str, domain: str, pages: int = 1) -> Dict[str, Any]:
        return await self._content(
            {"source": "amazon_search", "domain": domain, "query": keyword, "pages": pages, "parse": True},
            "No search results returned",
        )

    async def fetch_reviews(
        self,
        asin: str,
        domain: str,
        pages: int = 1,
        sort_by: str = "recent"
    ) -> List[Dict[str, Any]]:
        content = await self._content(
            {
                "source": "amazon_reviews",
                "domain": domain,
                "query": asin,
                "start_page": 1,
                "pages": pages,
                "parse": True,
                "context": [{"key": "sort_by", "value": sort_by}],
            },
            "No reviews returned",
        )
        reviews = content.get("reviews")
        if not reviews:
            raise ExternalServiceError(SERVICE_NAME, f"No reviews for {asin}")
        return reviews

    async def fetch_questions(self, asin: str, domain: str, pages: int = 1) -> List[Dict[str, Any]]:
        content = await self._content(
            {"source": "amazon_questions", "domain": domain, "query": asin, "pages": pages, "parse": True},
            "No Q&A data returned",
        )
        return content.get("questions") or []

    async def fetch_seller_products(
        self,
        seller_id: str,
        domain: str,
        max_pages: Optional[int] = None,
        page_delay: float = 3.0
    ) -> Dict[str, Any]:
        """
        Page through a seller's storefront. A failure after some products were
        collected returns what was gathered so far.
        """
        max_pages = max_pages or self.settings.seller_max_pages
        products: List[Dict[str, Any]] = []
        seen = set()
        total_pages = 0
        pages_scraped = 0

        for start_page in range(1, max_pages + 1, SELLER_PAGE_BATCH):
            pages_to_fetch = min(SELLER_PAGE_BATCH, max_pages - start_page + 1)
            try:
                results = await self._query({
                    "source": "amazon_search",
                    "domain": domain,
                    "query": " ",
                    "start_page": start_page,
                    "pages": pages_to_fetch,
                    "parse": True,
                    "context": [{"key": "merchant_id", "value": seller_id}],
                })
            except ExternalServiceError as e:
                if products:
                    logger.warning(f"Seller {seller_id} pagination stopped early: {e}")
                    break
                raise

            found = False
            for result in results:
                content = result.get("content") if isinstance(result, dict) else None
                if not isinstance(content, dict):
                    continue
                pages_scraped += 1
                if not total_pages and content.get("last_visible_page"):
                    total_pages = content["last_visible_page"]

                for item in (content.get("results") or {}).get("organic") or []:
                    asin = item.get("asin")
                    if not asin or asin in seen:
                        continue
                    seen.add(asin)
                    found = True
                    products.append({
                        "asin": asin,
                        "title": item.get("title") or "",
                        "price": item.get("price"),
                        "rating": item.get("rating"),
                        "reviews_count": item.get("reviews_count"),
                        "is_prime": bool(item.get("is_prime")),
                        "url_image": item.get("url_image"),
                        "manufacturer": item.get("manufacturer"),
                        "sales_volume": item.get("sales_volume"),
                    })

            if not found or start_page + pages_to_fetch - 1 >= total_pages:
                break
            if start_page + SELLER_PAGE_BATCH <= max_pages:
                await asyncio.sleep(page_delay)

        return {"products": products, "total_pages": total_pages, "pages_scraped": pages_scraped}
