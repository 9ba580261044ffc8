"""
Market intelligence analysis over Gemini.

Four independent calls, each returning a JSON object plus token usage:
1. phase_1 - review deep-dive
2. phase_2 - Q&A analysis (sees phase 1)
3. phase_3 - market & competition (sees phases 1-2)
4. phase_4 - customer intelligence & strategy (sees phases 1-3)
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import ExternalServiceError
from enrichment.jobs.job_types import ANALYSIS_PHASES

logger = logging.getLogger(__name__)

SERVICE_NAME = "llm"

SYSTEM_PROMPT = """You are a senior e-commerce market analyst. You study marketplace
search results, competitor listings, customer reviews and customer questions and
turn them into concrete listing and positioning guidance.

### RULES:
1. Only make claims supported by the provided data.
2. Quantify wherever the data allows (mentions, percentages, counts).
3. Respond with a single valid JSON object matching the requested schema.
"""

PHASE_INSTRUCTIONS: Dict[str, str] = {
    "phase_1": """PHASE 1 - REVIEW DEEP-DIVE.
Analyze the customer reviews per product. Return JSON:
{
  "reviewSummary": {"totalReviews": 0, "averageRating": 0.0, "positivePercent": 0, "negativePercent": 0},
  "customerProfiles": [{"profile": "", "mentions": 0, "description": ""}],
  "useCases": [{"useCase": "", "frequency": 0, "priority": "CRITICAL|HIGH|MEDIUM|LOW"}],
  "strengths": [{"strength": "", "mentions": 0, "impact": ""}],
  "weaknesses": [{"weakness": "", "mentions": 0, "impact": ""}],
  "positiveLanguage": [{"word": "", "frequency": 0}]
}""",
    "phase_2": """PHASE 2 - Q&A ANALYSIS.
Analyze the customer questions and answers, using the phase 1 findings for context. Return JSON:
{
  "questionThemes": [{"theme": "", "questionCount": 0, "examples": [""]}],
  "unansweredConcerns": [{"concern": "", "severity": "HIGH|MEDIUM|LOW"}],
  "purchaseBlockers": [""],
  "contentGaps": [{"gap": "", "recommendation": ""}]
}""",
    "phase_3": """PHASE 3 - MARKET & COMPETITION.
Using search results, competitor listings, market statistics and phases 1-2. Return JSON:
{
  "marketOverview": {"priceBand": "", "competitionLevel": "", "summary": ""},
  "competitorBreakdown": [{"asin": "", "brand": "", "positioning": "", "strengths": [""], "weaknesses": [""]}],
  "pricingInsights": [""],
  "marketGaps": [""]
}""",
    "phase_4": """PHASE 4 - CUSTOMER INTELLIGENCE & STRATEGY.
Synthesize phases 1-3 into a listing strategy. Return JSON:
{
  "targetCustomer": {"primary": "", "secondary": ""},
  "positioningStatement": "",
  "titleRecommendations": [""],
  "bulletStrategy": [{"bulletNumber": 1, "focus": "", "keywords": [""]}],
  "imageRecommendations": [""],
  "actionItems": [{"action": "", "priority": "HIGH|MEDIUM|LOW"}]
}""",
}


@dataclass
class PhaseOutput:
    result: Dict[str, Any]
    model: str
    tokens_used: int


class AnalysisClient:
    """Runs one analysis phase per call."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[genai.Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    def _genai(self) -> genai.Client:
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise ExternalServiceError(SERVICE_NAME, "Gemini API key is not configured")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    async def run_phase(
        self,
        phase: str,
        data: Dict[str, Any],
        previous: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> PhaseOutput:
        """Run `phase` over the collected data and the results of earlier phases."""
        if phase not in PHASE_INSTRUCTIONS:
            raise ValueError(f"Unknown analysis phase: {phase}")

        prior = {
            p: (previous or {}).get(p, {})
            for p in ANALYSIS_PHASES[:ANALYSIS_PHASES.index(phase)]
        }
        prompt = (
            f"{PHASE_INSTRUCTIONS[phase]}\n\n"
            f"DATA:\n{json.dumps(data, default=str)}\n\n"
            f"PREVIOUS PHASES:\n{json.dumps(prior, default=str)}"
        )
        model_name = self.settings.analysis_model

        try:
            response = await self._genai().aio.models.generate_content(
                model=model_name,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_PROMPT,
                    temperature=0.2,
                    response_mime_type="application/json",
                ),
            )
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(SERVICE_NAME, f"{phase} failed: {e}") from e

        try:
            result = json.loads(response.text or "")
        except (TypeError, ValueError) as e:
            raise ExternalServiceError(SERVICE_NAME, f"{phase} returned invalid JSON") from e
        if not isinstance(result, dict):
            raise ExternalServiceError(SERVICE_NAME, f"{phase} returned a non-object result")

        usage = getattr(response, "usage_metadata", None)
        tokens = getattr(usage, "total_token_count", None) or 0
        logger.info(f"Analysis {phase} complete ({tokens} tokens)")
        return PhaseOutput(result=result, model=model_name, tokens_used=tokens)


def build_analysis_input(record: Dict[str, Any], selected_asins: List[str]) -> Dict[str, Any]:
    """
    Shape the collected record into the analysis payload: search results,
    selected competitors, reviews/Q&A per product and simple market statistics.
    """
    keyword_data = record.get("keyword_search_data") or {}
    if isinstance(keyword_data.get("keywords"), list):
        organic = [r for kw in keyword_data["keywords"] for r in (kw.get("organic_results") or [])]
    else:
        organic = keyword_data.get("organic_results") or []

    selected = set(selected_asins)
    competitors = [
        c for c in (record.get("competitors_data") or [])
        if not c.get("error") and c.get("asin") in selected
    ]
    reviews = {a: r for a, r in (record.get("reviews_data") or {}).items() if a in selected}
    questions = {a: q for a, q in (record.get("questions_data") or {}).items() if a in selected}

    prices = [c["price"] for c in competitors if isinstance(c.get("price"), (int, float)) and c["price"] > 0]
    ratings = [c["rating"] for c in competitors if isinstance(c.get("rating"), (int, float)) and c["rating"] > 0]

    return {
        "keyword": record.get("keyword"),
        "keywords": record.get("keywords"),
        "marketplace": record.get("marketplace_domain"),
        "searchResults": [
            {
                "pos": r.get("pos") or 0,
                "title": r.get("title") or "",
                "asin": r.get("asin") or "",
                "price": r.get("price"),
                "rating": r.get("rating"),
                "reviews_count": r.get("reviews_count"),
            }
            for r in organic[:20]
        ],
        "competitors": [
            {
                "asin": c.get("asin"),
                "title": c.get("title"),
                "brand": c.get("brand") or "",
                "price": c.get("price"),
                "rating": c.get("rating") or 0,
                "reviews_count": c.get("reviews_count") or 0,
                "bullet_points": c.get("bullet_points") or "",
                "description": c.get("description") or "",
            }
            for c in competitors
        ],
        "reviewsData": reviews,
        "questionsData": questions,
        "marketStats": {
            "avgPrice": sum(prices) / len(prices) if prices else 0,
            "minPrice": min(prices) if prices else 0,
            "maxPrice": max(prices) if prices else 0,
            "avgRating": sum(ratings) / len(ratings) if ratings else 0,
            "totalReviews": sum(c.get("reviews_count") or 0 for c in competitors),
            "primePercentage": (
                100 * sum(1 for c in competitors if c.get("is_prime_eligible")) / len(competitors)
                if competitors else 0
            ),
        },
    }
