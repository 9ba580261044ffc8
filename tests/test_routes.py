"""
API tests for the job endpoints.

The record store is the in-memory fake, background execution is patched out,
and user auth is mocked at the token check.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from enrichment import images_routes, market_intelligence_routes, seller_pull_routes
from enrichment.config import get_settings
from enrichment.jobs.errors import ExternalServiceError
from enrichment.jobs.job_types import JobKind
from enrichment.jobs.store import JobStore
from enrichment.jobs.worker_queue import WorkerQueue, get_worker_queue
from enrichment.main import app

MI_TABLE = "lb_market_intelligence"
SP_TABLE = "lb_seller_pull_jobs"


def _ago(minutes: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def client(fake_supabase, settings, country):
    app.dependency_overrides[market_intelligence_routes.get_store] = \
        lambda: JobStore(MI_TABLE, supabase=fake_supabase)
    app.dependency_overrides[seller_pull_routes.get_store] = \
        lambda: JobStore(SP_TABLE, supabase=fake_supabase)
    app.dependency_overrides[get_worker_queue] = lambda: WorkerQueue(settings, supabase=fake_supabase)
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_auth():
    """Mock authentication for protected endpoints."""
    with patch("enrichment.auth.verify_supabase_token") as mock_verify:
        mock_verify.return_value = {"id": "test-user-id", "email": "test@example.com"}
        yield mock_verify


@pytest.fixture
def background():
    """Capture detached runs instead of starting them."""
    with patch("enrichment.market_intelligence_routes.run_job_background") as mi_run, \
            patch("enrichment.seller_pull_routes.run_job_background") as sp_run:
        yield {"mi": mi_run, "sp": sp_run}


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# =============================================================================
# MARKET INTELLIGENCE
# =============================================================================

class TestMarketIntelligenceRoutes:

    def test_requires_auth(self, client):
        response = client.post("/api/market-intelligence", json={"keyword": "mat", "country_id": "country-us"})
        assert response.status_code == 401

    def test_create_clamps_bounds(self, client, mock_auth, auth_headers):
        response = client.post("/api/market-intelligence", headers=auth_headers, json={
            "keyword": "  Yoga Mat ", "country_id": "country-us",
            "max_competitors": 50, "reviews_per_product": 1,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["keyword"] == "yoga mat"
        assert data["max_competitors"] == 20
        assert data["reviews_per_product"] == 10
        assert data["marketplace_domain"] == "amazon.com"
        assert data["created_by"] == "test-user-id"

    def test_create_requires_keyword(self, client, mock_auth, auth_headers):
        response = client.post("/api/market-intelligence", headers=auth_headers,
                               json={"keywords": ["  "], "country_id": "country-us"})
        assert response.status_code == 400
        assert response.json()["error_type"] == "validation_error"

    def test_collect_starts_background_run(self, client, mock_auth, auth_headers, background, fake_supabase):
        record = fake_supabase.seed(MI_TABLE, status="pending", keywords=["mat"])

        response = client.post(f"/api/market-intelligence/{record['id']}/collect", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "collecting"
        background["mi"].assert_called_once_with(JobKind.MI_COLLECT, record["id"])

    def test_select_from_wrong_status_is_rejected(self, client, mock_auth, auth_headers, background, fake_supabase):
        record = fake_supabase.seed(MI_TABLE, status="pending", selected_asins=None)

        response = client.post(f"/api/market-intelligence/{record['id']}/select", headers=auth_headers,
                               json={"selected_asins": ["B000000001"]})

        assert response.status_code == 409
        assert response.json()["details"] == {"current_status": "pending"}
        saved = fake_supabase.find(MI_TABLE, record["id"])
        assert saved["status"] == "pending"
        assert saved["selected_asins"] is None
        background["mi"].assert_not_called()

    def test_select_starts_analysis(self, client, mock_auth, auth_headers, background, fake_supabase):
        record = fake_supabase.seed(MI_TABLE, status="awaiting_selection")

        response = client.post(f"/api/market-intelligence/{record['id']}/select", headers=auth_headers,
                               json={"selected_asins": ["b000000001", "B000000002"]})

        assert response.json() == {
            "status": "analyzing", "selected_count": 2, "is_resume": False, "resume_step": "review_fetch",
        }
        saved = fake_supabase.find(MI_TABLE, record["id"])
        assert saved["selected_asins"] == ["B000000001", "B000000002"]
        background["mi"].assert_called_once_with(
            JobKind.MI_ANALYZE, record["id"], {"start_step": "review_fetch", "completed_phases": []}
        )

    def test_resume_uses_saved_selection_and_phases(self, client, mock_auth, auth_headers, background, fake_supabase):
        record = fake_supabase.seed(
            MI_TABLE, status="failed", error_message="llm: quota exceeded",
            selected_asins=["B000000001"],
            reviews_data={"B000000001": [{"rating": 5}]},
            phase_results={"phase_1": {}, "phase_2": {}},
            progress={"completed_phases": ["phase_1", "phase_2"]},
        )

        response = client.post(f"/api/market-intelligence/{record['id']}/select", headers=auth_headers)

        data = response.json()
        assert data["is_resume"] is True
        assert data["resume_step"] == "phase_3"
        saved = fake_supabase.find(MI_TABLE, record["id"])
        assert saved["status"] == "analyzing"
        assert saved["error_message"] is None
        assert saved["reviews_data"] == {"B000000001": [{"rating": 5}]}
        background["mi"].assert_called_once_with(
            JobKind.MI_ANALYZE, record["id"], {"start_step": "phase_3", "completed_phases": ["phase_1", "phase_2"]}
        )

    def test_select_without_any_selection_is_rejected(self, client, mock_auth, auth_headers, background, fake_supabase):
        record = fake_supabase.seed(MI_TABLE, status="awaiting_selection", selected_asins=[])

        response = client.post(f"/api/market-intelligence/{record['id']}/select", headers=auth_headers,
                               json={})

        assert response.status_code == 400
        assert fake_supabase.find(MI_TABLE, record["id"])["status"] == "awaiting_selection"

    def test_get_fails_stuck_analysis(self, client, mock_auth, auth_headers, fake_supabase):
        record = fake_supabase.seed(MI_TABLE, status="analyzing", updated_at=_ago(45))

        response = client.get(f"/api/market-intelligence/{record['id']}", headers=auth_headers)

        assert response.json()["status"] == "failed"
        assert "Timed out" in response.json()["error_message"]

    def test_list_filters_by_keyword(self, client, mock_auth, auth_headers, fake_supabase):
        fake_supabase.seed(MI_TABLE, status="pending", keyword="yoga mat", country_id="country-us")
        fake_supabase.seed(MI_TABLE, status="pending", keyword="water bottle", country_id="country-us")

        response = client.get("/api/market-intelligence?search=YOGA", headers=auth_headers)

        assert [r["keyword"] for r in response.json()] == ["yoga mat"]

    def test_unknown_record_is_404(self, client, mock_auth, auth_headers):
        response = client.get("/api/market-intelligence/missing", headers=auth_headers)
        assert response.status_code == 404


# =============================================================================
# SELLER PULL
# =============================================================================

class TestSellerPullRoutes:

    def test_create_starts_pull_once_per_country(self, client, mock_auth, auth_headers, background):
        first = client.post("/api/seller-pull", headers=auth_headers, json={"country_id": "country-us"})
        second = client.post("/api/seller-pull", headers=auth_headers, json={"country_id": "country-us"})

        assert first.json()["status"] == "pulling"
        assert first.json()["existing"] is False
        assert second.json()["existing"] is True
        assert second.json()["job_id"] == first.json()["job_id"]
        background["sp"].assert_called_once_with(JobKind.SELLER_PULL, first.json()["job_id"])

    def test_stale_active_job_does_not_block_new_pull(self, client, mock_auth, auth_headers, background, fake_supabase):
        stuck = fake_supabase.seed(SP_TABLE, status="pulling", country_id="country-us", updated_at=_ago(60))

        response = client.post("/api/seller-pull", headers=auth_headers, json={"country_id": "country-us"})

        assert response.json()["existing"] is False
        assert fake_supabase.find(SP_TABLE, stuck["id"])["status"] == "failed"

    def test_crashed_import_does_not_block_new_pull(self, client, mock_auth, auth_headers, background, fake_supabase):
        stuck = fake_supabase.seed(SP_TABLE, status="importing", country_id="country-us", updated_at=_ago(600))

        response = client.post("/api/seller-pull", headers=auth_headers, json={"country_id": "country-us"})

        assert response.json()["existing"] is False
        assert response.json()["status"] == "pulling"
        saved = fake_supabase.find(SP_TABLE, stuck["id"])
        assert saved["status"] == "failed"
        assert saved["error_message"] == "Timed out: no progress for 30 minutes"

    def test_create_without_configured_seller(self, client, mock_auth, auth_headers, background, fake_supabase):
        fake_supabase.seed("lb_countries", id="country-de", amazon_domain="amazon.de")

        response = client.post("/api/seller-pull", headers=auth_headers, json={"country_id": "country-de"})

        assert response.status_code == 400

    def test_get_fails_stuck_scrape(self, client, mock_auth, auth_headers, fake_supabase):
        job = fake_supabase.seed(SP_TABLE, status="scraping", updated_at=_ago(31))

        response = client.get(f"/api/seller-pull/{job['id']}", headers=auth_headers)

        assert response.json()["status"] == "failed"
        assert response.json()["error_message"] == "Timed out: no progress for 30 minutes"

    def test_import_requires_pulled(self, client, mock_auth, auth_headers, background, fake_supabase):
        job = fake_supabase.seed(SP_TABLE, status="scraping")

        response = client.post(f"/api/seller-pull/{job['id']}/import", headers=auth_headers,
                               json={"selected_asins": ["B000000001"]})

        assert response.status_code == 409
        background["sp"].assert_not_called()

    def test_import_starts_scrape(self, client, mock_auth, auth_headers, background, fake_supabase):
        job = fake_supabase.seed(SP_TABLE, status="pulled")

        response = client.post(f"/api/seller-pull/{job['id']}/import", headers=auth_headers, json={
            "selected_asins": ["b000000001"], "product_categories": {"B000000001": "Yoga"},
        })

        assert response.json()["status"] == "importing"
        saved = fake_supabase.find(SP_TABLE, job["id"])
        assert saved["selected_asins"] == ["B000000001"]
        assert saved["product_categories"] == {"B000000001": "Yoga"}
        background["sp"].assert_called_once_with(JobKind.SELLER_IMPORT, job["id"])

    def test_import_variations_requires_selection_state(self, client, mock_auth, auth_headers, background, fake_supabase):
        job = fake_supabase.seed(SP_TABLE, status="awaiting_variation_selection")

        response = client.post(f"/api/seller-pull/{job['id']}/import-variations", headers=auth_headers,
                               json={"selected_variations": ["B000000009"]})

        assert response.json()["status"] == "importing_variations"
        background["sp"].assert_called_once_with(JobKind.SELLER_IMPORT_VARIATIONS, job["id"])


# =============================================================================
# EXTRACTION QUEUE
# =============================================================================

class TestExtractionRoutes:

    def test_worker_calls_require_key(self, client):
        assert client.get("/api/qna-extraction/queue").status_code == 401
        response = client.get("/api/qna-extraction/queue", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error_type"] == "unauthorized"

    def test_empty_queue(self, client, worker_headers):
        response = client.get("/api/qna-extraction/queue", headers=worker_headers)
        assert response.json() == {"item": None}

    def test_claim_report_cycle(self, client, mock_auth, auth_headers, worker_headers):
        created = client.post("/api/qna-extraction/jobs", headers=auth_headers, json={
            "source": "manual", "country_id": "country-us", "asins": ["B000000001"],
        }).json()

        item = client.get("/api/qna-extraction/queue", headers=worker_headers).json()["item"]
        assert item["asin"] == "B000000001"
        assert item["job_id"] == created["job_id"]

        report = client.post("/api/qna-extraction/queue", headers=worker_headers, json={
            "item_id": item["item_id"], "status": "completed", "questions_found": 8,
        }).json()
        assert report["job_status"] == "completed"

        detail = client.get(f"/api/qna-extraction/jobs/{created['job_id']}", headers=auth_headers).json()
        assert detail["job"]["completed_items"] == 1
        assert detail["items"][0]["questions_found"] == 8

    def test_cancel(self, client, mock_auth, auth_headers):
        created = client.post("/api/qna-extraction/jobs", headers=auth_headers, json={
            "source": "manual", "country_id": "country-us", "asins": ["B000000001", "B000000002"],
        }).json()

        first = client.delete(f"/api/qna-extraction/jobs/{created['job_id']}", headers=auth_headers)
        second = client.delete(f"/api/qna-extraction/jobs/{created['job_id']}", headers=auth_headers)

        assert first.json() == {"success": True, "skipped_items": 2}
        assert second.status_code == 409


# =============================================================================
# IMAGES
# =============================================================================

class TestImageRoutes:

    def test_batch_reports_each_prompt(self, client, mock_auth, auth_headers):
        image_client = MagicMock()

        async def generate(prompt, orientation):
            if prompt == "bad":
                raise ExternalServiceError("image_generation", "blocked")
            return {"mime_type": "image/png", "image_base64": "AAAA", "model": "test"}

        image_client.generate = AsyncMock(side_effect=generate)
        app.dependency_overrides[images_routes.get_image_client] = lambda: image_client

        response = client.post("/api/images/batch", headers=auth_headers, json={
            "orientation": "portrait",
            "prompts": [
                {"prompt": "good", "label": "main"},
                {"prompt": "bad", "label": "lifestyle"},
            ],
        })

        data = response.json()
        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["results"][1] == {"label": "lifestyle", "image": None, "error": "image_generation: blocked"}

    def test_rejects_unknown_orientation(self, client, mock_auth, auth_headers):
        response = client.post("/api/images/batch", headers=auth_headers, json={
            "orientation": "diagonal", "prompts": [{"prompt": "x", "label": "y"}],
        })
        assert response.status_code == 400
