"""
External collaborators: scraping API, LLM analysis and image generation.
"""

from enrichment.clients.scraper import ScraperClient, marketplace_domain
from enrichment.clients.llm import AnalysisClient, PhaseOutput, build_analysis_input
from enrichment.clients.image_generation import ImageGenerationClient, generate_batch

__all__ = [
    "ScraperClient",
    "marketplace_domain",
    "AnalysisClient",
    "PhaseOutput",
    "build_analysis_input",
    "ImageGenerationClient",
    "generate_batch",
]
