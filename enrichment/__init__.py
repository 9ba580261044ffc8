"""Listing enrichment service: background job orchestration."""

__version__ = "1.0.0"
