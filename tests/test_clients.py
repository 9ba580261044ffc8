"""
Outbound clients: the scraper's error contract over a mocked transport, and
the windowed image batch fan-out.
"""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest

from enrichment.clients.image_generation import generate_batch
from enrichment.clients.scraper import ScraperClient
from enrichment.jobs.errors import ExternalServiceError
from enrichment.jobs.handlers import register_all_handlers
from enrichment.jobs.job_types import BatchImagePrompt, JobKind
from enrichment.jobs.runner import JobRunner

MI_TABLE = "lb_market_intelligence"


def _scraper(settings, handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ScraperClient(settings, http_client=http_client)


def _product(asin):
    return {"results": [{"content": {"asin": asin, "title": f"Product {asin}"}}]}


# =============================================================================
# SCRAPER
# =============================================================================

class TestScraperErrors:

    def test_parses_product_content(self, settings):
        scraper = _scraper(settings, lambda request: httpx.Response(200, json=_product("B000000001")))

        product = asyncio.run(scraper.lookup_asin("B000000001", "com"))

        assert product["title"] == "Product B000000001"

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>Bad gateway page</html>"),
        httpx.Response(200, json=[{"content": {}}]),
        httpx.Response(200, json={"results": {"content": {}}}),
        httpx.Response(200, json={"results": ["not an object"]}),
        httpx.Response(200, json={"message": "Too many requests"}),
        httpx.Response(502, text="upstream down"),
    ])
    def test_malformed_responses_raise_service_error(self, settings, response):
        scraper = _scraper(settings, lambda request: response)

        with pytest.raises(ExternalServiceError) as exc_info:
            asyncio.run(scraper.lookup_asin("B000000001", "com"))

        assert exc_info.value.message.startswith("scraper: ")

    def test_transport_failure_raises_service_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        scraper = _scraper(settings, handler)

        with pytest.raises(ExternalServiceError):
            asyncio.run(scraper.search_keyword("yoga mat", "com"))

    def test_bad_lookup_page_only_skips_that_product(self, settings, fake_supabase, country):
        def handler(request):
            payload = json.loads(request.content)
            if payload["source"] == "amazon_search":
                return httpx.Response(200, json={"results": [{"content": {"results": {"organic": [
                    {"asin": "B000000001"}, {"asin": "B000000002"},
                ]}}}]})
            if payload["query"] == "B000000001":
                return httpx.Response(200, text="<html>captcha</html>")
            return httpx.Response(200, json=_product(payload["query"]))

        runner = JobRunner(settings, supabase=fake_supabase, scraper=_scraper(settings, handler), llm=MagicMock())
        register_all_handlers(runner)
        record = fake_supabase.seed(
            MI_TABLE, status="collecting", keywords=["yoga mat"], country_id="country-us", max_competitors=2
        )

        assert asyncio.run(runner.execute_job(JobKind.MI_COLLECT, record["id"])) is True

        saved = fake_supabase.find(MI_TABLE, record["id"])
        assert saved["status"] == "awaiting_selection"
        assert saved["competitors_data"][0]["source"] == "error"
        assert saved["competitors_data"][1]["title"] == "Product B000000002"


# =============================================================================
# IMAGE BATCH
# =============================================================================

class TestImageBatch:

    def test_runs_three_at_a_time_and_isolates_failures(self):
        state = {"in_flight": 0, "peak": 0}

        async def generate(prompt, orientation):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            state["in_flight"] -= 1
            if prompt.startswith("bad"):
                raise ExternalServiceError("image_generation", "blocked")
            return {"mime_type": "image/png", "image_base64": "AAAA", "model": "test"}

        client = MagicMock()
        client.generate = generate
        prompts = [
            BatchImagePrompt(prompt="bad" if i in (1, 5) else f"prompt {i}", label=f"image-{i}", position=i)
            for i in range(7)
        ]

        response = asyncio.run(generate_batch(client, prompts, concurrency=3))

        assert state["peak"] == 3
        assert response.succeeded == 5
        assert response.failed == 2
        assert [r.label for r in response.results] == [f"image-{i}" for i in range(7)]
        assert [r.label for r in response.results if r.error] == ["image-1", "image-5"]
        assert response.results[5].error == "image_generation: blocked"
